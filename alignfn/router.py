"""
Model Router

Chooses the teacher or the student model for each call from the signature's
distillation state:

    cold / aligned / training / degraded  → teacher
    distilled                             → student

The router only reads state; it never changes it. When the state cannot be
read the call goes to the teacher.
"""

from dataclasses import dataclass
from typing import Optional

from .config.config_manager import ConfigManager
from .distillation.alignment_store import AlignmentStore
from .distillation.state_machine import DistillationState
from .errors import StorageError
from .utils.logger import get_logger

logger = get_logger(__name__)

ROLE_TEACHER = "teacher"
ROLE_STUDENT = "student"


@dataclass(frozen=True)
class Route:
    """Routing decision for one call."""

    model: str
    role: str
    state: DistillationState

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT


class ModelRouter:
    """Routes calls for a fingerprint to the teacher or the student model."""

    def __init__(self, store: AlignmentStore, teacher_model: Optional[str] = None):
        self.store = store
        self.teacher_model = teacher_model or ConfigManager.get("TEACHER_MODEL")

    def route(self, fingerprint: str) -> Route:
        """
        Decide which model serves the next call.

        Args:
            fingerprint: Signature fingerprint

        Returns:
            Route with the model id, its role and the state that was read
        """
        try:
            row = self.store.get_signature_row(fingerprint)
        except StorageError as e:
            logger.warning(f"State unavailable for {fingerprint[:8]}, routing to teacher: {e}")
            return Route(model=self.teacher_model, role=ROLE_TEACHER, state=DistillationState.COLD)

        if row is None:
            return Route(model=self.teacher_model, role=ROLE_TEACHER, state=DistillationState.COLD)

        state = DistillationState(row["state"])
        if state == DistillationState.DISTILLED:
            if row["student_model"]:
                return Route(model=row["student_model"], role=ROLE_STUDENT, state=state)
            logger.warning(f"Signature {fingerprint[:8]} is distilled without a student model, using teacher")

        return Route(model=self.teacher_model, role=ROLE_TEACHER, state=state)
