"""
Distillation Module

Tracks each patched function's alignment data and decides when a
fine-tuned student model may replace the teacher:
- Alignment store (examples, training records, failures, state)
- Distillation state machine
- Scheduler for training triggers, promotion and demotion
"""

from .state_machine import DistillationState, DistillationStateMachine
from .models import AlignmentExample, TrainingRecord
from .alignment_store import AlignmentStore
from .scheduler import DistillationScheduler

__all__ = [
    "AlignmentExample",
    "AlignmentStore",
    "DistillationScheduler",
    "DistillationState",
    "DistillationStateMachine",
    "TrainingRecord",
]
