"""
Letter status state machine.

The transition table below is the single source of truth for which status
changes are permitted. Any move outside it raises InvalidTransitionError.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from .errors import InvalidTransitionError


class LetterStatus(str, Enum):
    """All statuses a letter can hold."""
    DRAFT = "draft"
    GENERATING = "generating"
    PENDING_REVIEW = "pending_review"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS: Dict[LetterStatus, FrozenSet[LetterStatus]] = {
    LetterStatus.DRAFT: frozenset({LetterStatus.GENERATING, LetterStatus.PENDING_REVIEW}),
    LetterStatus.GENERATING: frozenset({LetterStatus.PENDING_REVIEW, LetterStatus.FAILED}),
    LetterStatus.PENDING_REVIEW: frozenset({
        LetterStatus.UNDER_REVIEW, LetterStatus.APPROVED, LetterStatus.REJECTED
    }),
    LetterStatus.UNDER_REVIEW: frozenset({
        LetterStatus.APPROVED, LetterStatus.REJECTED, LetterStatus.PENDING_REVIEW
    }),
    LetterStatus.APPROVED: frozenset({LetterStatus.COMPLETED}),
    LetterStatus.REJECTED: frozenset({LetterStatus.DRAFT, LetterStatus.PENDING_REVIEW}),
    LetterStatus.FAILED: frozenset({LetterStatus.DRAFT, LetterStatus.GENERATING}),
    LetterStatus.COMPLETED: frozenset(),
}


def _coerce(status: Union[LetterStatus, str]) -> Optional[LetterStatus]:
    try:
        return LetterStatus(status)
    except ValueError:
        return None


def allowed_transitions(status: Union[LetterStatus, str]) -> FrozenSet[LetterStatus]:
    """Return the statuses reachable from `status` in one step."""
    current = _coerce(status)
    if current is None:
        return frozenset()
    return TRANSITIONS[current]


def can_transition(current: Union[LetterStatus, str], target: Union[LetterStatus, str]) -> bool:
    """Check whether a move from `current` to `target` is permitted."""
    source = _coerce(current)
    destination = _coerce(target)
    if source is None or destination is None:
        return False
    return destination in TRANSITIONS[source]


def validate_transition(
    current: Union[LetterStatus, str],
    target: Union[LetterStatus, str],
    letter_id: Optional[str] = None
) -> LetterStatus:
    """Validate a status change against the transition table.

    Args:
        current: Status the letter holds now
        target: Requested status
        letter_id: Letter identifier for the error message

    Returns:
        The target status as a LetterStatus

    Raises:
        InvalidTransitionError: If the move is not in the table or either
            status is unknown
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            letter_id,
            getattr(current, "value", current),
            getattr(target, "value", target)
        )
    return LetterStatus(target)


def is_terminal(status: Union[LetterStatus, str]) -> bool:
    """A status is terminal when nothing can follow it."""
    current = _coerce(status)
    return current is not None and not TRANSITIONS[current]
