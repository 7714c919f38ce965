"""Feedback session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    ACTIVE ──┬──> COMPLETED   (respondent submitted)
             │
             ├──> EXPIRED     (deadline passed)
             │
             └──> ABORTED     (shutdown or caller cancelled)

Terminal states have no outgoing transitions.
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.ACTIVE: {
        SessionState.COMPLETED,
        SessionState.EXPIRED,
        SessionState.ABORTED,
    },
    SessionState.COMPLETED: set(),
    SessionState.EXPIRED: set(),
    SessionState.ABORTED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
