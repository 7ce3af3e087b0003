# state.py
"""
Generation state machine.

Each workflow session (one product, one user, one session id) moves through
these states. Phase entry points ask `ensure_transition` before doing any
work, so a call that arrives out of order is rejected without side effects.
"""

import enum
from typing import Dict, FrozenSet, Optional

from viewforge.errors import InvalidTransitionError


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    GENERATING_FRONT = "generating_front"
    AWAITING_APPROVAL = "awaiting_approval"
    FRONT_APPROVED = "front_approved"
    # Also the resting state once the four remaining views exist.
    GENERATING_REMAINING = "generating_remaining"
    CREATING_REVISION = "creating_revision"
    COMPLETED = "completed"
    ERROR = "error"


S = GenerationState

TRANSITIONS: Dict[GenerationState, FrozenSet[GenerationState]] = {
    S.IDLE: frozenset({S.GENERATING_FRONT}),
    S.GENERATING_FRONT: frozenset({S.AWAITING_APPROVAL, S.ERROR}),
    S.AWAITING_APPROVAL: frozenset({S.FRONT_APPROVED, S.GENERATING_FRONT}),
    S.FRONT_APPROVED: frozenset({S.GENERATING_REMAINING}),
    S.GENERATING_REMAINING: frozenset({S.GENERATING_REMAINING, S.CREATING_REVISION, S.ERROR}),
    S.CREATING_REVISION: frozenset({S.COMPLETED, S.ERROR}),
    S.COMPLETED: frozenset({S.GENERATING_FRONT}),
    S.ERROR: frozenset({S.GENERATING_FRONT, S.GENERATING_REMAINING, S.CREATING_REVISION}),
}


def parse_state(value: Optional[str]) -> GenerationState:
    if not value:
        return S.IDLE
    return GenerationState(value)


def can_transition(current: GenerationState, target: GenerationState) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: GenerationState, target: GenerationState) -> GenerationState:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move from '{current.value}' to '{target.value}'"
        )
    return target
