"""In-memory table of in-flight feedback sessions.

Every terminal transition (completed, expired, aborted) happens under
one broker-wide lock and removes the session from the table in the
same step, so exactly one path ever gets to run the continuation.
Continuations run after the lock is released.

Local-call mistakes (unknown id, finished session, bad timeout) raise.
Timeout and shutdown outcomes are delivered through the continuation.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from .config import MAX_DIALOG_TIMEOUT, MIN_DIALOG_TIMEOUT
from .errors import (
    DuplicateSessionError,
    FeedbackTimeoutError,
    InvalidTimeoutError,
    ServerShutdownError,
    SessionAlreadyTerminalError,
    SessionError,
    SessionNotFoundError,
)
from .lifecycle import validate_transition
from .models import (
    Continuation,
    ErrorCallback,
    FeedbackSession,
    SessionState,
    Submission,
    SuccessCallback,
)

logger = logging.getLogger(__name__)

# Finished ids kept to reject reuse and to tell "expired" from "unknown".
RETIRED_CAPACITY = 4096

_Pending = Callable[[], Any]


class SessionBroker:
    """Owns the session table. Safe to call from any thread."""

    def __init__(
        self,
        *,
        min_timeout: float = MIN_DIALOG_TIMEOUT,
        max_timeout: float = MAX_DIALOG_TIMEOUT,
        clock: Callable[[], float] = time.time,
        retired_capacity: int = RETIRED_CAPACITY,
    ) -> None:
        self._min_timeout = min_timeout
        self._max_timeout = max_timeout
        self._clock = clock
        self._retired_capacity = retired_capacity
        self._sessions: dict[str, FeedbackSession] = {}
        self._retired: OrderedDict[str, SessionState] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ── Creation and lookup ──

    def create(
        self,
        session_id: str,
        prompt: str,
        timeout: float,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> FeedbackSession:
        """Register a new ACTIVE session and return it."""
        if not self._min_timeout <= timeout <= self._max_timeout:
            raise InvalidTimeoutError(timeout, self._min_timeout, self._max_timeout)

        with self._lock:
            if session_id in self._sessions or session_id in self._retired:
                raise DuplicateSessionError(session_id)
            session = FeedbackSession(
                session_id=session_id,
                prompt=prompt,
                timeout_seconds=timeout,
                continuation=Continuation(on_success=on_success, on_error=on_error),
                created_at=self._clock(),
            )
            self._sessions[session_id] = session

        logger.debug("Session created: %s (timeout=%gs)", session_id, timeout)
        return session

    def get(self, session_id: str) -> FeedbackSession | None:
        """Return the ACTIVE session, or None if unknown or past its deadline.

        A session found past its deadline is expired on the spot.
        """
        with self._lock:
            session, pending = self._lookup_locked(session_id)
        self._run(pending)
        return session

    def latest_active(self) -> FeedbackSession | None:
        """The most recently created session that is still within its deadline."""
        now = self._clock()
        with self._lock:
            live = [s for s in self._sessions.values() if not s.is_past_deadline(now)]
        if not live:
            return None
        return max(live, key=lambda s: s.created_at)

    def missing_error(self, session_id: str) -> SessionError:
        """The error a lookup of a non-ACTIVE *session_id* should raise."""
        with self._lock:
            return self._missing_locked(session_id)

    # ── Mutation ──

    def append_response(self, session_id: str, submission: Submission) -> None:
        error: SessionError | None = None
        with self._lock:
            session, pending = self._lookup_locked(session_id)
            if session is None:
                error = self._missing_locked(session_id)
            else:
                session.responses.append(submission)
        self._run(pending)
        if error is not None:
            raise error
        logger.debug("Response appended to session %s", session_id)

    def resolve(self, session_id: str) -> None:
        """Complete the session and hand its responses to the caller."""
        error: SessionError | None = None
        with self._lock:
            session, pending = self._lookup_locked(session_id)
            if session is None:
                error = self._missing_locked(session_id)
            else:
                pending = self._finish_locked(session, SessionState.COMPLETED)
        self._run(pending)
        if error is not None:
            raise error
        logger.info("Session resolved: %s", session_id)

    def expire(self, session_id: str) -> bool:
        """Expire one session now (per-session timer). False if already gone."""
        with self._lock:
            session = self._sessions.get(session_id)
            pending = (
                self._finish_locked(session, SessionState.EXPIRED)
                if session is not None
                else None
            )
        self._run(pending)
        if pending is not None:
            logger.info("Session expired: %s", session_id)
        return pending is not None

    def abort(self, session_id: str, error: BaseException | None = None) -> bool:
        """Abort one session with *error* (default: shutdown). False if already gone."""
        with self._lock:
            session = self._sessions.get(session_id)
            pending = (
                self._finish_locked(session, SessionState.ABORTED, error)
                if session is not None
                else None
            )
        self._run(pending)
        return pending is not None

    def sweep(self, now: float | None = None) -> int:
        """Expire every session whose deadline is at or before *now*."""
        now = self._clock() if now is None else now
        with self._lock:
            pending = [
                self._finish_locked(session, SessionState.EXPIRED)
                for session in list(self._sessions.values())
                if session.is_past_deadline(now)
            ]
        for item in pending:
            self._run(item)
        if pending:
            logger.info("Cleaned up %d expired sessions", len(pending))
        return len(pending)

    def shutdown_all(self) -> int:
        """Abort every remaining session with a shutdown error."""
        with self._lock:
            pending = [
                self._finish_locked(session, SessionState.ABORTED)
                for session in list(self._sessions.values())
            ]
        for item in pending:
            self._run(item)
        logger.info("All sessions cleared (%d aborted)", len(pending))
        return len(pending)

    def stats(self) -> dict[str, int]:
        now = self._clock()
        with self._lock:
            total = len(self._sessions)
            expired = sum(1 for s in self._sessions.values() if s.is_past_deadline(now))
        return {
            "total_sessions": total,
            "active_sessions": total - expired,
            "expired_sessions": expired,
        }

    # ── Internals (caller holds the lock) ──

    def _lookup_locked(
        self, session_id: str,
    ) -> tuple[FeedbackSession | None, _Pending | None]:
        session = self._sessions.get(session_id)
        if session is None:
            return None, None
        if session.is_past_deadline(self._clock()):
            logger.debug("Session expired on access: %s", session_id)
            return None, self._finish_locked(session, SessionState.EXPIRED)
        return session, None

    def _missing_locked(self, session_id: str) -> SessionError:
        state = self._retired.get(session_id)
        if state is not None:
            return SessionAlreadyTerminalError(session_id, state)
        return SessionNotFoundError(session_id)

    def _finish_locked(
        self,
        session: FeedbackSession,
        target: SessionState,
        error: BaseException | None = None,
    ) -> _Pending:
        validate_transition(session.state, target)
        session.state = target
        del self._sessions[session.session_id]
        self._retired[session.session_id] = target
        while len(self._retired) > self._retired_capacity:
            self._retired.popitem(last=False)

        continuation = session.continuation
        if target is SessionState.COMPLETED:
            responses = list(session.responses)
            return lambda: continuation.on_success(responses)

        if error is None:
            if target is SessionState.EXPIRED:
                error = FeedbackTimeoutError(session.session_id, session.timeout_seconds)
            else:
                error = ServerShutdownError(session.session_id)
        failure = error
        return lambda: continuation.on_error(failure)

    @staticmethod
    def _run(pending: _Pending | None) -> None:
        if pending is None:
            return
        try:
            pending()
        except Exception:
            logger.exception("Session continuation raised")
