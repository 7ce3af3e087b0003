# test_state.py
import pytest

from viewforge.errors import InvalidTransitionError, ValidationError
from viewforge.state import GenerationState as S, can_transition, ensure_transition, parse_state


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (S.IDLE, S.GENERATING_FRONT),
        (S.GENERATING_FRONT, S.AWAITING_APPROVAL),
        (S.AWAITING_APPROVAL, S.FRONT_APPROVED),
        (S.AWAITING_APPROVAL, S.GENERATING_FRONT),
        (S.FRONT_APPROVED, S.GENERATING_REMAINING),
        (S.GENERATING_REMAINING, S.GENERATING_REMAINING),
        (S.GENERATING_REMAINING, S.CREATING_REVISION),
        (S.CREATING_REVISION, S.COMPLETED),
        (S.COMPLETED, S.GENERATING_FRONT),
        (S.ERROR, S.CREATING_REVISION),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        assert ensure_transition(current, target) is target

    @pytest.mark.parametrize("current,target", [
        (S.IDLE, S.FRONT_APPROVED),
        (S.IDLE, S.CREATING_REVISION),
        (S.AWAITING_APPROVAL, S.GENERATING_REMAINING),
        (S.FRONT_APPROVED, S.CREATING_REVISION),
        (S.COMPLETED, S.CREATING_REVISION),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as excinfo:
            ensure_transition(current, target)
        assert isinstance(excinfo.value, ValidationError)
        assert excinfo.value.message == f"Cannot move from '{current.value}' to '{target.value}'"


def test_parse_state():
    assert parse_state(None) is S.IDLE
    assert parse_state("") is S.IDLE
    assert parse_state("awaiting_approval") is S.AWAITING_APPROVAL
