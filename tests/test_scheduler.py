"""
Tests for the distillation scheduler: training trigger, promotion, job
failure, degradation and restart recovery.
"""

import asyncio

import pytest

from alignfn.distillation.models import AlignmentExample, TrainingRecord
from alignfn.distillation.scheduler import DistillationScheduler
from alignfn.distillation.state_machine import DistillationState
from alignfn.errors import StorageError

from tests.conftest import STUDENT_MODEL, FakeFineTuner

THRESHOLD = 5


def _align(store, signature):
    store.declare_alignment(signature, [
        AlignmentExample(inputs={"text": "I love it"}, expected="positive"),
        AlignmentExample(inputs={"text": "I hate it"}, expected="negative"),
    ])


def _append(store, signature, count, role="teacher", start=0):
    for i in range(start, start + count):
        store.append_training_record(
            signature,
            TrainingRecord(inputs={"text": f"text {i}"}, output="neutral", model="gpt-4o", role=role),
        )


def _distill(store, signature):
    _align(store, signature)
    store.compare_and_set_state(signature, DistillationState.ALIGNED, DistillationState.TRAINING)
    store.compare_and_set_state(
        signature, DistillationState.TRAINING, DistillationState.DISTILLED, student_model=STUDENT_MODEL
    )


class TestTrigger:
    """Fine-tuning starts exactly at the threshold."""

    @pytest.mark.asyncio
    async def test_threshold_minus_one_does_not_submit(self, store, scheduler, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD - 1)

        assert await scheduler.on_record_appended(sentiment_signature) is False
        await scheduler.drain()

        assert fine_tuner.submissions == []
        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED

    @pytest.mark.asyncio
    async def test_threshold_submits_once_and_promotes(self, store, scheduler, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD - 1)
        await scheduler.on_record_appended(sentiment_signature)

        _append(store, sentiment_signature, 1, start=THRESHOLD)
        assert await scheduler.on_record_appended(sentiment_signature) is True
        assert store.get_state(sentiment_signature) == DistillationState.TRAINING

        await scheduler.drain()

        assert len(fine_tuner.submissions) == 1
        row = store.get_signature_row(sentiment_signature)
        assert row["state"] == "distilled"
        assert row["student_model"] == STUDENT_MODEL
        assert row["job_id"] == "ftjob-1"
        assert row["records_at_last_attempt"] == THRESHOLD

    @pytest.mark.asyncio
    async def test_concurrent_triggers_submit_once(self, store, scheduler, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)

        results = await asyncio.gather(*[scheduler.on_record_appended(sentiment_signature) for _ in range(5)])
        await scheduler.drain()

        assert results.count(True) == 1
        assert len(fine_tuner.submissions) == 1

    @pytest.mark.asyncio
    async def test_first_record_on_cold_signature_aligns(self, store, scheduler, sentiment_signature):
        store.register_signature(sentiment_signature)
        _append(store, sentiment_signature, 1)

        await scheduler.on_record_appended(sentiment_signature)

        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED

    @pytest.mark.asyncio
    async def test_training_signature_is_not_retriggered(self, store, scheduler, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        store.compare_and_set_state(sentiment_signature, DistillationState.ALIGNED, DistillationState.TRAINING)
        _append(store, sentiment_signature, THRESHOLD * 2)

        assert await scheduler.on_record_appended(sentiment_signature) is False
        assert fine_tuner.submissions == []

    @pytest.mark.asyncio
    async def test_storage_failure_is_absorbed(self, store, scheduler, sentiment_signature, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(store, "get_state", broken)

        assert await scheduler.on_record_appended(sentiment_signature) is False


class TestDataset:
    """What the fine-tuner receives."""

    @pytest.mark.asyncio
    async def test_dataset_contents(self, store, scheduler, fine_tuner, truthiness_signature):
        store.declare_alignment(truthiness_signature, [
            AlignmentExample(
                inputs={"statement": "1 < 2"},
                expected={"is_true": True, "confidence": "high", "explanation": "Arithmetic"},
            ),
            AlignmentExample(inputs={"statement": "blurps"}, expected={"confidence": "low"}, partial=True),
        ])
        output = {"is_true": False, "confidence": "high", "explanation": "No"}
        for i in range(THRESHOLD):
            store.append_training_record(
                truthiness_signature,
                TrainingRecord(inputs={"statement": "3 > 4"}, output=output, model="gpt-4o", role="teacher"),
            )

        await scheduler.on_record_appended(truthiness_signature)
        await scheduler.drain()

        submission = fine_tuner.submissions[0]
        dataset = submission["dataset"]
        # Full example + one de-duplicated record; the partial example is skipped
        assert len(dataset) == 2
        assert submission["suffix"] == "get_truthiness"
        messages = dataset[0]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert "Examples:" not in messages[0]["content"]
        assert messages[0]["content"].endswith('Input: {"statement": "1 < 2"}\nOutput:')
        assert messages[1]["content"] == '{"is_true": true, "confidence": "high", "explanation": "Arithmetic"}'

    @pytest.mark.asyncio
    async def test_student_records_are_not_training_data(self, store, scheduler, fine_tuner, sentiment_signature):
        store.register_signature(sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD, role="student")
        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        # Nothing from the teacher: the job fails before submission
        assert fine_tuner.submissions == []
        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED
        assert scheduler.jobs_failed == 1


class TestJobFailure:
    """Failed jobs fall back to aligned and wait for new records."""

    @pytest.mark.asyncio
    async def test_failed_job_returns_to_aligned(self, store, sentiment_signature):
        fine_tuner = FakeFineTuner(final_status="failed")
        scheduler = DistillationScheduler(store, fine_tuner, threshold=THRESHOLD, poll_interval=0)
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)

        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED
        assert scheduler.jobs_failed == 1

        # Not retried until another threshold of records arrives
        _append(store, sentiment_signature, THRESHOLD - 1, start=THRESHOLD)
        assert await scheduler.on_record_appended(sentiment_signature) is False
        _append(store, sentiment_signature, 1, start=THRESHOLD * 2)
        assert await scheduler.on_record_appended(sentiment_signature) is True
        await scheduler.drain()
        assert len(fine_tuner.submissions) == 2

    @pytest.mark.asyncio
    async def test_submission_error_returns_to_aligned(self, store, sentiment_signature):
        scheduler = DistillationScheduler(store, FakeFineTuner(fail_submit=True), threshold=THRESHOLD, poll_interval=0)
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)

        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED

    @pytest.mark.asyncio
    async def test_job_is_polled_until_terminal(self, store, sentiment_signature):
        fine_tuner = FakeFineTuner(polls=2)
        scheduler = DistillationScheduler(store, fine_tuner, threshold=THRESHOLD, poll_interval=0)
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)

        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        assert fine_tuner.status_checks == ["ftjob-1"] * 3
        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED


class TestDegradation:
    """Rolling student failure rate."""

    def test_below_min_calls_never_demotes(self, store, scheduler, sentiment_signature):
        _distill(store, sentiment_signature)
        fp = sentiment_signature.fingerprint

        for _ in range(3):
            assert scheduler.record_student_outcome(fp, False) is False

        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED

    def test_rate_at_threshold_does_not_demote(self, store, scheduler, sentiment_signature):
        _distill(store, sentiment_signature)
        fp = sentiment_signature.fingerprint

        for success in (True, True, True, False):
            scheduler.record_student_outcome(fp, success)

        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED
        assert scheduler.get_failure_rate(fp) == 0.25

    def test_rate_above_threshold_demotes_immediately(self, store, scheduler, sentiment_signature):
        _distill(store, sentiment_signature)
        _append(store, sentiment_signature, 7, role="student")
        fp = sentiment_signature.fingerprint

        outcomes = [scheduler.record_student_outcome(fp, s) for s in (True, True, False, False)]

        assert outcomes == [False, False, False, True]
        row = store.get_signature_row(sentiment_signature)
        assert row["state"] == "degraded"
        assert row["records_at_last_attempt"] == 7
        assert scheduler.get_failure_rate(fp) is None
        assert scheduler.demotions == 1

    def test_window_is_rolling(self, store, sentiment_signature):
        scheduler = DistillationScheduler(
            store, FakeFineTuner(), threshold=THRESHOLD, window=4, min_calls=4, failure_rate_threshold=0.5
        )
        _distill(store, sentiment_signature)
        fp = sentiment_signature.fingerprint

        # Never more than half of the last four outcomes fail
        for success in (False, False, True, True, True, True, False, False):
            scheduler.record_student_outcome(fp, success)

        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED
        assert scheduler.get_failure_rate(fp) == 0.5

    def test_mismatch_reports_count_as_failures(self, store, scheduler, sentiment_signature):
        _distill(store, sentiment_signature)
        fp = sentiment_signature.fingerprint

        scheduler.record_student_outcome(fp, True)
        scheduler.record_student_outcome(fp, True)
        scheduler.report_mismatch(fp)
        assert scheduler.report_mismatch(fp) is True

        assert store.get_state(sentiment_signature) == DistillationState.DEGRADED

    @pytest.mark.asyncio
    async def test_degraded_redistills_after_new_records(self, store, scheduler, fine_tuner, sentiment_signature):
        _distill(store, sentiment_signature)
        fp = sentiment_signature.fingerprint
        for _ in range(4):
            scheduler.record_student_outcome(fp, False)
        assert store.get_state(sentiment_signature) == DistillationState.DEGRADED

        _append(store, sentiment_signature, THRESHOLD)
        assert await scheduler.on_record_appended(sentiment_signature) is True
        await scheduler.drain()

        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED
        assert len(fine_tuner.submissions) == 1

    def test_min_calls_cannot_exceed_window(self, store):
        with pytest.raises(ValueError):
            DistillationScheduler(store, FakeFineTuner(), window=5, min_calls=10)


class TestLifecycle:
    """Restart recovery and shutdown."""

    @pytest.mark.asyncio
    async def test_resume_polls_jobs_in_flight(self, store, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        store.compare_and_set_state(sentiment_signature, DistillationState.ALIGNED, DistillationState.TRAINING)
        store.set_job_id(sentiment_signature, "ftjob-7")

        scheduler = DistillationScheduler(store, fine_tuner, threshold=THRESHOLD, poll_interval=0)
        assert await scheduler.resume_pending_jobs() == 1
        await scheduler.drain()

        assert fine_tuner.status_checks == ["ftjob-7"]
        assert store.get_state(sentiment_signature) == DistillationState.DISTILLED

    @pytest.mark.asyncio
    async def test_resume_resets_unsubmitted_training(self, store, fine_tuner, sentiment_signature):
        _align(store, sentiment_signature)
        store.compare_and_set_state(sentiment_signature, DistillationState.ALIGNED, DistillationState.TRAINING)

        scheduler = DistillationScheduler(store, fine_tuner, threshold=THRESHOLD, poll_interval=0)
        assert await scheduler.resume_pending_jobs() == 0

        assert store.get_state(sentiment_signature) == DistillationState.ALIGNED

    @pytest.mark.asyncio
    async def test_close_cancels_polling_and_keeps_training_state(self, store, sentiment_signature):
        fine_tuner = FakeFineTuner(polls=100)
        scheduler = DistillationScheduler(store, fine_tuner, threshold=THRESHOLD, poll_interval=3600)
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)

        await scheduler.on_record_appended(sentiment_signature)
        # Let the job get submitted and start polling
        for _ in range(5):
            await asyncio.sleep(0)
        assert scheduler.pending_jobs == 1

        await scheduler.close()

        assert scheduler.pending_jobs == 0
        row = store.get_signature_row(sentiment_signature)
        assert row["state"] == "training"
        assert row["job_id"] == "ftjob-1"


class TestMetrics:
    """Job and demotion counters."""

    def test_fresh_scheduler_reports_zeros(self, scheduler):
        assert scheduler.get_metrics() == {
            "jobs_started": 0,
            "jobs_succeeded": 0,
            "jobs_failed": 0,
            "demotions": 0,
            "pending_jobs": 0,
        }

    @pytest.mark.asyncio
    async def test_counts_jobs_and_demotions(self, store, scheduler, sentiment_signature):
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)
        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        for _ in range(4):
            scheduler.record_student_outcome(sentiment_signature.fingerprint, False)

        metrics = scheduler.get_metrics()
        assert metrics["jobs_started"] == 1
        assert metrics["jobs_succeeded"] == 1
        assert metrics["jobs_failed"] == 0
        assert metrics["demotions"] == 1
        assert metrics["pending_jobs"] == 0

    @pytest.mark.asyncio
    async def test_failed_job_is_counted(self, store, sentiment_signature):
        scheduler = DistillationScheduler(
            store, FakeFineTuner(final_status="failed"), threshold=THRESHOLD, poll_interval=0
        )
        _align(store, sentiment_signature)
        _append(store, sentiment_signature, THRESHOLD)
        await scheduler.on_record_appended(sentiment_signature)
        await scheduler.drain()

        assert scheduler.get_metrics()["jobs_failed"] == 1
        assert scheduler.get_metrics()["jobs_succeeded"] == 0
