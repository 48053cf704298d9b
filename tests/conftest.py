"""
Pytest configuration and shared fixtures for alignfn tests.

This module provides:
- A temporary SQLite alignment store per test
- A scripted fake model provider that records every call
- A fake fine-tuner that records submissions
- Sample signatures (sentiment literal, truthiness record)
"""

import os
import tempfile
from typing import Any, Callable, List, Optional

import pytest

# Keep log files out of the working tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp())

from alignfn.config.config_manager import ConfigManager
from alignfn.distillation.alignment_store import AlignmentStore
from alignfn.distillation.scheduler import DistillationScheduler
from alignfn.engine import InvocationEngine
from alignfn.fine_tuning.openai_fine_tuner import FineTuneJobStatus
from alignfn.signature import FunctionSignature, T
from alignfn.utils.exponential_backoff import ExponentialBackoff

STUDENT_MODEL = "ft:gpt-4o-mini-2024-07-18:alignfn:student"


# =============================================================================
# FAKES
# =============================================================================


class FakeProvider:
    """
    Scripted model provider.

    Responses are consumed in order; an Exception instance is raised instead
    of returned. Once the script is exhausted ``handler(model, prompt)`` (or
    ``default``) answers.
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        default: Optional[str] = None,
        handler: Optional[Callable[[str, str], str]] = None,
    ):
        self.responses = list(responses or [])
        self.default = default
        self.handler = handler
        self.calls: List[dict] = []

    async def complete(self, model: str, prompt: str, schema=None) -> str:
        self.calls.append({"model": model, "prompt": prompt, "schema": schema})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        if self.handler is not None:
            return self.handler(model, prompt)
        if self.default is not None:
            return self.default
        raise AssertionError(f"Unexpected provider call #{len(self.calls)} to {model}")

    @property
    def models(self) -> List[str]:
        return [call["model"] for call in self.calls]


class FakeFineTuner:
    """Records submissions; jobs finish with ``final_status`` after ``polls`` checks."""

    def __init__(self, final_status: str = "succeeded", polls: int = 0, fail_submit: bool = False):
        self.final_status = final_status
        self.polls = polls
        self.fail_submit = fail_submit
        self.submissions: List[dict] = []
        self.status_checks: List[str] = []

    async def submit(self, dataset, suffix=None) -> str:
        if self.fail_submit:
            from alignfn.errors import DistillationJobError

            raise DistillationJobError("submission rejected")
        self.submissions.append({"dataset": dataset, "suffix": suffix})
        return f"ftjob-{len(self.submissions)}"

    async def get_job_status(self, job_id: str) -> FineTuneJobStatus:
        self.status_checks.append(job_id)
        if len(self.status_checks) <= self.polls:
            return FineTuneJobStatus(job_id=job_id, status="running")
        if self.final_status == "succeeded":
            return FineTuneJobStatus(job_id=job_id, status="succeeded", fine_tuned_model=STUDENT_MODEL)
        return FineTuneJobStatus(job_id=job_id, status=self.final_status, error="training diverged")


# =============================================================================
# CONFIGURATION
# =============================================================================


@pytest.fixture(autouse=True)
def reset_config():
    """Every test starts from a clean configuration cache."""
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


# =============================================================================
# STORE / ENGINE
# =============================================================================


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'alignfn.db'}"


@pytest.fixture
def store(database_url):
    """Open alignment store on a temporary SQLite file."""
    alignment_store = AlignmentStore(database_url)
    alignment_store.open()
    yield alignment_store
    alignment_store.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def fine_tuner():
    return FakeFineTuner()


@pytest.fixture
def no_wait_backoff():
    return ExponentialBackoff(base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def scheduler(store, fine_tuner):
    return DistillationScheduler(
        store,
        fine_tuner,
        threshold=5,
        window=10,
        min_calls=4,
        failure_rate_threshold=0.25,
        poll_interval=0,
    )


@pytest.fixture
def engine(store, provider, scheduler, no_wait_backoff):
    return InvocationEngine(
        store,
        provider,
        scheduler=scheduler,
        backoff=no_wait_backoff,
        max_repair_attempts=2,
        provider_max_retries=3,
    )


# =============================================================================
# SAMPLE SIGNATURES
# =============================================================================


@pytest.fixture
def sentiment_signature():
    return FunctionSignature(
        name="classify_sentiment",
        prompt="Classify the sentiment of the given text",
        inputs=[("text", T.string())],
        output=T.literal("positive", "negative", "neutral"),
    )


@pytest.fixture
def truthiness_signature():
    return FunctionSignature(
        name="get_truthiness",
        prompt="Evaluate the given statement for truthiness and return your assessment",
        inputs=[("statement", T.string())],
        output=T.record("Truthiness", [
            T.field("is_true", T.boolean()),
            T.field("confidence", T.literal("high", "medium", "low")),
            T.field("explanation", T.string(), hint="One sentence"),
        ]),
    )
