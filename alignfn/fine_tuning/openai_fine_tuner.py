"""
OpenAI Fine-Tuning Integration

Submits student fine-tuning jobs through OpenAI's API and reports their
status. Any object with the same submit / get_job_status coroutines can be
handed to the DistillationScheduler instead.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from ..config.config_manager import ConfigManager
from ..errors import DistillationJobError
from ..utils.logger import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed", "cancelled")


@dataclass
class FineTuneJobStatus:
    """Status snapshot of a fine-tuning job."""

    job_id: str
    status: str
    fine_tuned_model: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded" and bool(self.fine_tuned_model)


class OpenAIFineTuner:
    """
    Fine-tunes student models using OpenAI's API.

    Features:
    - Upload training JSONL
    - Submit fine-tuning jobs
    - Monitor job status
    - Cancel jobs
    """

    SUPPORTED_MODELS = ["gpt-4o-mini-2024-07-18", "gpt-4o-2024-08-06", "gpt-3.5-turbo"]

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        base_model: Optional[str] = None,
        n_epochs: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize OpenAI fine-tuner.

        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY config)
            base_url: API base URL (defaults to OPENAI_BASE_URL config)
            base_model: Model to fine-tune (defaults to STUDENT_BASE_MODEL config)
            n_epochs: Training epochs (provider default when None)
            client: Pre-built client, mainly for tests
        """
        self.base_model = base_model or ConfigManager.get("STUDENT_BASE_MODEL")
        if self.base_model not in self.SUPPORTED_MODELS:
            logger.warning(
                f"Base model {self.base_model} is not in the known fine-tunable list {self.SUPPORTED_MODELS}"
            )
        self.n_epochs = n_epochs

        if client is not None:
            self.client = client
        else:
            api_key = api_key or ConfigManager.get("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable not set")
            self.client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or ConfigManager.get("OPENAI_BASE_URL"),
            )

    async def upload_training_file(self, jsonl: str, filename: str = "training.jsonl") -> str:
        """
        Upload training data to OpenAI.

        Args:
            jsonl: Training data in OpenAI chat JSONL format
            filename: Name reported to the API

        Returns:
            File ID
        """
        response = await self.client.files.create(
            file=(filename, jsonl.encode("utf-8")),
            purpose="fine-tune",
        )
        logger.info(f"Uploaded training file: {response.id}")
        return response.id

    async def submit(self, dataset: List[Dict[str, Any]], suffix: Optional[str] = None) -> str:
        """
        Upload a dataset and create a fine-tuning job.

        Args:
            dataset: Rows in OpenAI chat format ({"messages": [...]})
            suffix: Optional suffix for the fine-tuned model name

        Returns:
            Job ID

        Raises:
            DistillationJobError: If upload or job creation fails
        """
        if not dataset:
            raise DistillationJobError("Refusing to submit an empty dataset")

        jsonl = "\n".join(json.dumps(row, ensure_ascii=False) for row in dataset)

        try:
            file_id = await self.upload_training_file(jsonl)

            kwargs: Dict[str, Any] = {"model": self.base_model, "training_file": file_id}
            if suffix:
                kwargs["suffix"] = self._sanitize_suffix(suffix)
            if self.n_epochs:
                kwargs["hyperparameters"] = {"n_epochs": self.n_epochs}

            job = await self.client.fine_tuning.jobs.create(**kwargs)
        except OpenAIError as e:
            raise DistillationJobError(f"Fine-tuning submission failed: {e}", original_error=e)

        logger.info(f"Created fine-tuning job: {job.id} ({len(dataset)} rows, base {self.base_model})")
        return job.id

    async def get_job_status(self, job_id: str) -> FineTuneJobStatus:
        """
        Get fine-tuning job status.

        Raises:
            DistillationJobError: If the status cannot be retrieved
        """
        try:
            job = await self.client.fine_tuning.jobs.retrieve(job_id)
        except OpenAIError as e:
            raise DistillationJobError(f"Failed to retrieve job {job_id}: {e}", job_id=job_id, original_error=e)

        error = getattr(job, "error", None)
        return FineTuneJobStatus(
            job_id=job.id,
            status=job.status,
            fine_tuned_model=job.fine_tuned_model,
            error=getattr(error, "message", None) if error else None,
        )

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a fine-tuning job.

        Returns:
            True if cancelled successfully
        """
        try:
            await self.client.fine_tuning.jobs.cancel(job_id)
            logger.info(f"Cancelled fine-tuning job: {job_id}")
            return True
        except OpenAIError as e:
            logger.error(f"Failed to cancel job {job_id}: {e}")
            return False

    @staticmethod
    def _sanitize_suffix(suffix: str) -> str:
        return re.sub(r"[^a-zA-Z0-9-]", "-", suffix)[:40].strip("-") or "alignfn"
