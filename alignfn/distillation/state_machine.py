"""
Distillation State Machine

Per-signature lifecycle:

    cold ──► aligned ──► training ──► distilled ──► degraded
               ▲            │                          │
               └────────────┘ (job failed)             │
                            ▲                          │
                            └──────────────────────────┘ (re-distillation)

Transitions are driven solely by the DistillationScheduler (plus the
cold → aligned step performed by declare_alignment).
"""

from enum import Enum
from typing import Dict, Set

from ..utils.logger import get_logger

logger = get_logger(__name__)


class DistillationState(str, Enum):
    """Distillation lifecycle of one signature."""

    COLD = "cold"  # No alignment and no validated outputs yet
    ALIGNED = "aligned"  # Has alignment examples or validated outputs; teacher-served
    TRAINING = "training"  # Fine-tuning job in flight; still teacher-served
    DISTILLED = "distilled"  # Student model trusted and serving
    DEGRADED = "degraded"  # Student demoted; teacher-served until re-distilled


class DistillationStateMachine:
    """
    Validates distillation state transitions.

    Prevents impossible transitions (e.g. cold → distilled) from being
    written even if a caller computes them.
    """

    VALID_TRANSITIONS: Dict[DistillationState, Set[DistillationState]] = {
        DistillationState.COLD: {DistillationState.ALIGNED},
        DistillationState.ALIGNED: {DistillationState.TRAINING},
        DistillationState.TRAINING: {
            DistillationState.DISTILLED,
            DistillationState.ALIGNED,  # Job failed
        },
        DistillationState.DISTILLED: {DistillationState.DEGRADED},
        DistillationState.DEGRADED: {DistillationState.TRAINING},
    }

    TEACHER_STATES: Set[DistillationState] = {
        DistillationState.COLD,
        DistillationState.ALIGNED,
        DistillationState.TRAINING,
        DistillationState.DEGRADED,
    }

    @staticmethod
    def is_valid_transition(
        current_state: DistillationState,
        new_state: DistillationState
    ) -> bool:
        """
        Check if transition is valid.

        Args:
            current_state: Current distillation state
            new_state: Desired new state

        Returns:
            True if transition is allowed
        """
        if current_state not in DistillationStateMachine.VALID_TRANSITIONS:
            return False

        return new_state in DistillationStateMachine.VALID_TRANSITIONS[current_state]

    @staticmethod
    def validate_transition(
        current_state: DistillationState,
        new_state: DistillationState
    ) -> None:
        """
        Validate transition and raise exception if invalid.

        Raises:
            ValueError: If transition is invalid
        """
        if not DistillationStateMachine.is_valid_transition(current_state, new_state):
            raise ValueError(
                f"Invalid distillation state transition: "
                f"{current_state.value} → {new_state.value}"
            )

    @staticmethod
    def is_eligible_for_training(state: DistillationState) -> bool:
        """States from which a fine-tuning job may be started."""
        return state in (DistillationState.ALIGNED, DistillationState.DEGRADED)
