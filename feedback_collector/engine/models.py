"""Core data models for the feedback collector.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self is not SessionState.ACTIVE


def make_session_id() -> str:
    return f"feedback_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Attachment:
    """A decoded respondent upload."""
    name: str
    data: bytes
    mime_type: str
    size: int

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class Submission:
    """One respondent submission appended to a session."""
    session_id: str
    text: str | None = None
    attachments: tuple[Attachment, ...] = ()
    timestamp: float = field(default_factory=time.time)

    @property
    def empty(self) -> bool:
        return not (self.text and self.text.strip()) and not self.attachments


SuccessCallback = Callable[[list[Submission]], Any]
ErrorCallback = Callable[[BaseException], Any]


@dataclass
class Continuation:
    """One-shot completion pair handed to the broker by a session's creator.

    The broker guarantees at most one of the two callables runs, and
    exactly one once the session leaves ACTIVE.
    """
    on_success: SuccessCallback
    on_error: ErrorCallback


@dataclass
class FeedbackSession:
    """One outstanding feedback request."""
    session_id: str
    prompt: str
    timeout_seconds: float
    continuation: Continuation = field(repr=False)
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.ACTIVE
    responses: list[Submission] = field(default_factory=list)

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout_seconds

    def is_past_deadline(self, now: float) -> bool:
        return now >= self.deadline


@dataclass(frozen=True)
class Occupant:
    """The OS process currently bound to a TCP port."""
    pid: int
    name: str
    command: str


@dataclass(frozen=True)
class PortRecord:
    """Point-in-time view of a port. Never cached."""
    port: int
    available: bool
    occupant: Occupant | None = None
