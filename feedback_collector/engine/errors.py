"""Exception hierarchy for the feedback collector.

Specific exceptions for each failure mode. Local-call mistakes are
raised to the caller; lifecycle outcomes (timeout, shutdown) are
delivered through a session's continuation instead.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Occupant, SessionState


class FeedbackError(Exception):
    """Base exception for all feedback collector errors."""

    code = "feedback_error"


# ── Configuration ──


class ConfigurationError(FeedbackError):
    """Invalid configuration value. Raised at construction time."""

    code = "invalid_config"


class InvalidTimeoutError(ConfigurationError):
    """Session timeout outside the accepted range."""

    code = "invalid_timeout"

    def __init__(self, timeout: float, minimum: float, maximum: float):
        self.timeout = timeout
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"Invalid timeout: {timeout:g}. "
            f"Must be between {minimum:g} and {maximum:g} seconds."
        )


# ── Sessions ──


class SessionError(FeedbackError):
    """Base for session table errors."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class DuplicateSessionError(SessionError):
    code = "duplicate_session"

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session {session_id} already exists")


class SessionNotFoundError(SessionError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(
            session_id, f"Session {session_id} does not exist or has expired",
        )


class SessionAlreadyTerminalError(SessionError):
    """The session has already completed, expired or been aborted."""

    code = "session_expired"

    def __init__(self, session_id: str, state: SessionState):
        self.state = state
        super().__init__(
            session_id, f"Session {session_id} is already {state.value}",
        )


class FeedbackTimeoutError(SessionError):
    """No respondent answered before the session deadline."""

    code = "feedback_timeout"

    def __init__(self, session_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            session_id,
            f"Feedback collection timed out after {timeout_seconds:g} seconds",
        )


class ServerShutdownError(SessionError):
    code = "server_shutdown"

    def __init__(self, session_id: str):
        super().__init__(
            session_id,
            f"Server is shutting down; session {session_id} aborted",
        )


class SessionCancelledError(SessionError):
    """The caller stopped waiting before a respondent answered."""

    code = "session_cancelled"

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session {session_id} was cancelled")


class EmptySubmissionError(SessionError):
    code = "empty_submission"

    def __init__(self, session_id: str):
        super().__init__(
            session_id, "Please provide text feedback or upload images",
        )


# ── Payloads ──


class PayloadError(FeedbackError):
    """An attachment was rejected by the payload processor."""

    code = "invalid_attachment"

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Attachment {name!r} rejected: {reason}")


# ── Ports ──


class PortError(FeedbackError):
    """Base for port negotiation failures."""

    code = "port_error"

    def __init__(self, port: int | None, message: str):
        self.port = port
        super().__init__(message)


class PortOccupiedError(PortError):
    code = "port_occupied"

    def __init__(self, port: int):
        super().__init__(
            port, f"Port {port} is occupied and killing its occupant is disabled",
        )


class UnsafeKillError(PortError):
    """The occupant did not pass the safety classifier."""

    code = "unsafe_process_kill"

    def __init__(self, port: int, occupant: Occupant):
        self.occupant = occupant
        super().__init__(
            port,
            f"Unsafe process, refusing to terminate: {occupant.name} "
            f"(PID: {occupant.pid}) on port {port}",
        )


class PortStillOccupiedError(PortError):
    code = "port_still_occupied"

    def __init__(self, port: int):
        super().__init__(
            port, f"Port {port} is still occupied after terminating its occupant",
        )


class NoPortsAvailableError(PortError):
    code = "no_available_ports"

    def __init__(
        self,
        preferred: int | None,
        range_start: int,
        range_end: int,
        attempts: int,
    ):
        self.preferred = preferred
        self.range_start = range_start
        self.range_end = range_end
        self.attempts = attempts
        super().__init__(
            preferred,
            f"No available ports found (preferred={preferred}, "
            f"range={range_start}-{range_end}, random attempts={attempts})",
        )


class PortReleaseTimeoutError(PortError):
    code = "port_release_timeout"

    def __init__(self, port: int, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(
            port, f"Port {port} was not released within {timeout_ms}ms",
        )


# ── Startup ──


class StartupError(FeedbackError):
    """The respondent-facing server could not be started."""

    code = "web_server_start_error"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to start web server: {reason}")
