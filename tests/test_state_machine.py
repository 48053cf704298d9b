"""
Tests for the distillation state machine.
"""

import pytest

from alignfn.distillation.state_machine import DistillationState, DistillationStateMachine


class TestDistillationStateMachine:
    """Test distillation state transitions."""

    @pytest.mark.parametrize("current, new", [
        (DistillationState.COLD, DistillationState.ALIGNED),
        (DistillationState.ALIGNED, DistillationState.TRAINING),
        (DistillationState.TRAINING, DistillationState.DISTILLED),
        (DistillationState.TRAINING, DistillationState.ALIGNED),
        (DistillationState.DISTILLED, DistillationState.DEGRADED),
        (DistillationState.DEGRADED, DistillationState.TRAINING),
    ])
    def test_valid_transitions(self, current, new):
        assert DistillationStateMachine.is_valid_transition(current, new)

    @pytest.mark.parametrize("current, new", [
        (DistillationState.COLD, DistillationState.DISTILLED),
        (DistillationState.COLD, DistillationState.TRAINING),
        (DistillationState.ALIGNED, DistillationState.DISTILLED),
        (DistillationState.DISTILLED, DistillationState.TRAINING),
        (DistillationState.DISTILLED, DistillationState.ALIGNED),
        (DistillationState.DEGRADED, DistillationState.DISTILLED),
    ])
    def test_invalid_transitions(self, current, new):
        assert not DistillationStateMachine.is_valid_transition(current, new)

    def test_validate_transition_raises(self):
        with pytest.raises(ValueError, match="cold → distilled"):
            DistillationStateMachine.validate_transition(DistillationState.COLD, DistillationState.DISTILLED)

    def test_only_distilled_is_student_served(self):
        assert DistillationState.DISTILLED not in DistillationStateMachine.TEACHER_STATES
        assert len(DistillationStateMachine.TEACHER_STATES) == len(DistillationState) - 1

    def test_training_eligibility(self):
        eligible = {s for s in DistillationState if DistillationStateMachine.is_eligible_for_training(s)}
        assert eligible == {DistillationState.ALIGNED, DistillationState.DEGRADED}

    def test_states_serialize_as_strings(self):
        assert DistillationState("degraded") is DistillationState.DEGRADED
        assert DistillationState.TRAINING.value == "training"
