"""
Distillation Scheduler

Decides, per signature, when to fine-tune a student model and whether an
existing student can still be trusted.

- Trigger: once ``threshold`` training records have accumulated since the
  last attempt, an aligned (or degraded) signature moves to training and a
  fine-tuning job runs as a background task.
- Promotion: a succeeded job moves the signature to distilled and records the
  student model id.
- Monitoring: student-served outcomes feed a rolling window; a failure rate
  above the configured threshold demotes the signature to degraded at once.

Every state change goes through AlignmentStore.compare_and_set_state, so
concurrent callers (or processes) never submit the same job twice.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, Optional

from ..config.config_manager import ConfigManager
from ..errors import DistillationJobError, StorageError
from ..fine_tuning.dataset_builder import DatasetBuilder
from ..signature import FunctionSignature
from ..utils.logger import SignatureLogger, get_logger
from .alignment_store import AlignmentStore
from .state_machine import DistillationState, DistillationStateMachine

logger = get_logger(__name__)


class DistillationScheduler:
    """
    Background promotion/demotion of student models.

    The fine tuner is anything with ``async submit(dataset, suffix) -> job_id``
    and ``async get_job_status(job_id)`` returning an object with
    ``is_terminal``, ``succeeded``, ``status``, ``fine_tuned_model`` and
    ``error``.
    """

    def __init__(
        self,
        store: AlignmentStore,
        fine_tuner: Any,
        dataset_builder: Optional[DatasetBuilder] = None,
        threshold: Optional[int] = None,
        window: Optional[int] = None,
        min_calls: Optional[int] = None,
        failure_rate_threshold: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.store = store
        self.fine_tuner = fine_tuner
        self.dataset_builder = dataset_builder or DatasetBuilder()

        self.threshold = threshold or ConfigManager.get("DISTILLATION_THRESHOLD")
        self.window = window or ConfigManager.get("STUDENT_FAILURE_WINDOW")
        self.min_calls = min_calls or ConfigManager.get("STUDENT_FAILURE_MIN_CALLS")
        self.failure_rate_threshold = failure_rate_threshold or ConfigManager.get(
            "STUDENT_FAILURE_RATE_THRESHOLD"
        )
        self.poll_interval = poll_interval if poll_interval is not None else ConfigManager.get(
            "JOB_POLL_INTERVAL_SECONDS"
        )

        if self.min_calls > self.window:
            raise ValueError(f"min_calls ({self.min_calls}) cannot exceed window ({self.window})")

        self._windows: Dict[str, Deque[bool]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        # Metrics
        self.jobs_started = 0
        self.jobs_succeeded = 0
        self.jobs_failed = 0
        self.demotions = 0

        logger.info(
            f"Distillation scheduler initialized - threshold: {self.threshold}, "
            f"window: {self.window}, min calls: {self.min_calls}, "
            f"failure rate threshold: {self.failure_rate_threshold}"
        )

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def on_record_appended(self, signature: FunctionSignature) -> bool:
        """
        Re-evaluate a signature after a training record was appended.

        Returns:
            True if this call started a fine-tuning job
        """
        slog = SignatureLogger(signature.name, signature.fingerprint)

        try:
            state = self.store.get_state(signature)

            if state == DistillationState.COLD:
                if self.store.compare_and_set_state(signature, DistillationState.COLD, DistillationState.ALIGNED):
                    slog.state_changed("cold", "aligned", "first validated output")
                state = self.store.get_state(signature)

            if not DistillationStateMachine.is_eligible_for_training(state):
                return False

            row = self.store.get_signature_row(signature)
            count = self.store.count_training_records(signature)
            since_last = count - (row["records_at_last_attempt"] if row else 0)
            if since_last < self.threshold:
                return False

            started = self.store.compare_and_set_state(
                signature,
                state,
                DistillationState.TRAINING,
                records_at_last_attempt=count,
                job_id=None,
            )
        except StorageError as e:
            slog.storage_degraded("distillation trigger", str(e))
            return False

        if not started:
            # Another caller won the transition
            return False

        slog.state_changed(state.value, "training", f"{since_last} new records")
        self.jobs_started += 1
        self._launch(signature.fingerprint, self._run_training_job(signature))
        return True

    def _launch(self, fingerprint: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks[fingerprint] = task
        task.add_done_callback(lambda t: self._forget(fingerprint, t))
        return task

    def _forget(self, fingerprint: str, task: asyncio.Task) -> None:
        if self._tasks.get(fingerprint) is task:
            del self._tasks[fingerprint]

    async def _run_training_job(self, signature: FunctionSignature) -> None:
        slog = SignatureLogger(signature.name, signature.fingerprint)

        try:
            examples = self.store.get_examples(signature)
            records = [r for r in self.store.get_training_records(signature) if r.role == "teacher"]
            report = self.dataset_builder.validate_examples(
                self.dataset_builder.build(signature, examples, records)
            )
            if report["invalid"]:
                slog.warning(f"dropping {report['invalid']} incomplete dataset rows")
            rows = report["valid_examples"]
            if not rows:
                raise DistillationJobError("Training dataset is empty")

            dataset = self.dataset_builder.to_openai_format(rows)
            job_id = await self.fine_tuner.submit(dataset, suffix=signature.name)
            slog.info(f"fine-tuning job {job_id} submitted ({len(rows)} rows)")

            if not self.store.set_job_id(signature, job_id):
                slog.warning(f"state moved on before job {job_id} was recorded")
        except (DistillationJobError, StorageError) as e:
            self._fail_job(signature.fingerprint, slog, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error preparing fine-tuning job for {signature.name}")
            self._fail_job(signature.fingerprint, slog, e)
            return

        await self._await_job(signature.fingerprint, job_id, slog)

    async def _await_job(self, fingerprint: str, job_id: str, slog: SignatureLogger) -> None:
        """Poll a submitted job until it finishes, then promote or fall back."""
        try:
            while True:
                status = await self.fine_tuner.get_job_status(job_id)
                if status.is_terminal:
                    break
                slog.debug(f"job {job_id} is {status.status}")
                await asyncio.sleep(self.poll_interval)

            if not status.succeeded:
                raise DistillationJobError(
                    f"Fine-tuning job {job_id} ended as {status.status}: {status.error or 'no detail'}",
                    job_id=job_id,
                )

            promoted = self.store.compare_and_set_state(
                fingerprint,
                DistillationState.TRAINING,
                DistillationState.DISTILLED,
                student_model=status.fine_tuned_model,
                job_id=job_id,
            )
        except (DistillationJobError, StorageError) as e:
            self._fail_job(fingerprint, slog, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error while polling job {job_id}")
            self._fail_job(fingerprint, slog, e)
            return

        if promoted:
            self.jobs_succeeded += 1
            self._windows.pop(fingerprint, None)
            slog.state_changed("training", "distilled", f"student {status.fine_tuned_model}")
        else:
            slog.warning(f"job {job_id} finished but the signature is no longer training")

    def _fail_job(self, fingerprint: str, slog: SignatureLogger, error: Exception) -> None:
        self.jobs_failed += 1
        slog.error(f"distillation failed - {error}")
        try:
            if self.store.compare_and_set_state(fingerprint, DistillationState.TRAINING, DistillationState.ALIGNED):
                slog.state_changed("training", "aligned", "job failed")
        except StorageError as e:
            slog.storage_degraded("job failure rollback", str(e))

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def record_student_outcome(self, fingerprint: str, success: bool) -> bool:
        """
        Feed one student-served outcome into the rolling window.

        Returns:
            True if this outcome demoted the signature
        """
        window = self._windows.get(fingerprint)
        if window is None:
            window = self._windows[fingerprint] = deque(maxlen=self.window)
        window.append(success)

        if len(window) < self.min_calls:
            return False

        failure_rate = window.count(False) / len(window)
        if failure_rate <= self.failure_rate_threshold:
            return False

        try:
            count = self.store.count_training_records(fingerprint)
            demoted = self.store.compare_and_set_state(
                fingerprint,
                DistillationState.DISTILLED,
                DistillationState.DEGRADED,
                records_at_last_attempt=count,
            )
        except StorageError as e:
            logger.warning(f"Could not demote {fingerprint[:8]}: {e}")
            return False

        observed = len(window)
        window.clear()
        if demoted:
            self.demotions += 1
            logger.warning(
                f"Signature {fingerprint[:8]} demoted: student failure rate "
                f"{failure_rate:.0%} over {observed} calls exceeds "
                f"{self.failure_rate_threshold:.0%}"
            )
        return demoted

    def report_mismatch(self, fingerprint: str) -> bool:
        """Caller-reported wrong answer from the student; counts as a failure."""
        return self.record_student_outcome(fingerprint, False)

    def get_failure_rate(self, fingerprint: str) -> Optional[float]:
        window = self._windows.get(fingerprint)
        if not window:
            return None
        return window.count(False) / len(window)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def resume_pending_jobs(self) -> int:
        """
        Restart polling for jobs left in flight by a previous process.

        Signatures stuck in training without a job id were interrupted before
        submission and go back to aligned.

        Returns:
            Number of jobs resumed
        """
        resumed = 0
        try:
            for fingerprint, name, job_id in self.store.list_jobs_in_flight():
                if fingerprint in self._tasks:
                    continue
                slog = SignatureLogger(name, fingerprint)
                slog.info(f"resuming job {job_id}")
                self._launch(fingerprint, self._await_job(fingerprint, job_id, slog))
                resumed += 1

            for row in self.store.list_signatures():
                if row["state"] != DistillationState.TRAINING.value or row["job_id"]:
                    continue
                if row["fingerprint"] in self._tasks:
                    continue
                if self.store.compare_and_set_state(
                    row["fingerprint"], DistillationState.TRAINING, DistillationState.ALIGNED
                ):
                    SignatureLogger(row["name"], row["fingerprint"]).state_changed(
                        "training", "aligned", "interrupted before submission"
                    )
        except StorageError as e:
            logger.warning(f"Could not resume pending jobs: {e}")

        return resumed

    @property
    def pending_jobs(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight background work to finish."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight background work; jobs resume on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Distillation scheduler closed ({len(tasks)} tasks cancelled): {self.get_metrics()}")

    def get_metrics(self) -> Dict[str, Any]:
        """Job and demotion counters since this scheduler started."""
        return {
            "jobs_started": self.jobs_started,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "demotions": self.demotions,
            "pending_jobs": self.pending_jobs,
        }
