"""Feedback Collector: blocking human feedback for MCP tool calls."""
from .models import (
    Attachment,
    FeedbackSession,
    Occupant,
    PortRecord,
    SessionState,
    Submission,
)
from .config import FeedbackConfig, get_config, load_yaml_config
from .session_broker import SessionBroker
from .errors import (
    ConfigurationError,
    DuplicateSessionError,
    EmptySubmissionError,
    FeedbackError,
    FeedbackTimeoutError,
    InvalidTimeoutError,
    NoPortsAvailableError,
    PayloadError,
    PortError,
    PortOccupiedError,
    PortReleaseTimeoutError,
    PortStillOccupiedError,
    ServerShutdownError,
    SessionAlreadyTerminalError,
    SessionCancelledError,
    SessionError,
    SessionNotFoundError,
    StartupError,
    UnsafeKillError,
)

__version__ = "1.0.0"

__all__ = [
    # Bridge (lazy import to avoid circular deps)
    "FeedbackBridge",
    # Models
    "Attachment",
    "FeedbackSession",
    "Occupant",
    "PortRecord",
    "SessionState",
    "Submission",
    # Config
    "FeedbackConfig",
    "get_config",
    "load_yaml_config",
    # Sessions
    "SessionBroker",
    # Errors
    "ConfigurationError",
    "DuplicateSessionError",
    "EmptySubmissionError",
    "FeedbackError",
    "FeedbackTimeoutError",
    "InvalidTimeoutError",
    "NoPortsAvailableError",
    "PayloadError",
    "PortError",
    "PortOccupiedError",
    "PortReleaseTimeoutError",
    "PortStillOccupiedError",
    "ServerShutdownError",
    "SessionAlreadyTerminalError",
    "SessionCancelledError",
    "SessionError",
    "SessionNotFoundError",
    "StartupError",
    "UnsafeKillError",
]


def __getattr__(name: str):
    if name == "FeedbackBridge":
        from .bridge import FeedbackBridge
        return FeedbackBridge
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
