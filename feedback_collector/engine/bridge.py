"""Bridge between a blocking tool call and the respondent web channel.

A tool call ensures the web server is listening, registers a session
with the SessionBroker, surfaces the feedback URL and then awaits a
future that the broker completes exactly once: on submission, on
timeout (per-session timer or the periodic sweep), on shutdown, or when
the caller is cancelled.
"""
from __future__ import annotations

import asyncio
import logging
import time
import webbrowser
from collections.abc import Awaitable, Callable, Mapping, Sequence
from enum import Enum
from typing import Any, Protocol

from .config import FeedbackConfig
from .errors import (
    EmptySubmissionError,
    FeedbackError,
    PortReleaseTimeoutError,
    SessionCancelledError,
    StartupError,
)
from .models import FeedbackSession, Submission, make_session_id
from .session_broker import SessionBroker
from .sweeper import run_session_sweeper
from feedback_collector.shared.services.payload import PayloadProcessor
from feedback_collector.shared.services.port_negotiator import PortNegotiator

logger = logging.getLogger(__name__)

TEST_SESSION_TIMEOUT_SECONDS = 300
RELEASE_WAIT_MS = 3000

UrlCallback = Callable[[str], Awaitable[None]]


class PromptStatus(str, Enum):
    """Answer to a respondent's "latest prompt" poll."""
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    NONE = "none"


class RespondentServer(Protocol):
    """What the bridge needs from the respondent-facing server."""

    @property
    def running(self) -> bool: ...

    @property
    def port(self) -> int: ...

    async def start(self, port: int) -> None: ...

    async def stop(self) -> None: ...


def open_in_browser(url: str) -> bool:
    return webbrowser.open(url)


class FeedbackBridge:
    """Orchestrates one feedback round trip per tool call."""

    def __init__(
        self,
        config: FeedbackConfig,
        *,
        broker: SessionBroker | None = None,
        negotiator: PortNegotiator | None = None,
        processor: PayloadProcessor | None = None,
        web_server: RespondentServer | None = None,
        opener: Callable[[str], bool] | None = None,
    ) -> None:
        self.config = config
        self.broker = broker or SessionBroker()
        self.negotiator = negotiator or PortNegotiator(
            host=config.bind_host,
            range_start=config.port_range_start,
            range_size=config.port_range_size,
        )
        self.processor = processor or PayloadProcessor(config.max_file_size)
        self._web = web_server
        self._opener = opener or open_in_browser
        self._start_lock = asyncio.Lock()
        self._sweeper_stop = asyncio.Event()
        self._sweeper_task: asyncio.Task | None = None
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._started_at = time.time()

    @property
    def web_server(self) -> RespondentServer:
        if self._web is None:
            from feedback_collector.web.server import FeedbackWebServer

            self._web = FeedbackWebServer(self, host=self.config.bind_host)
        return self._web

    @property
    def running(self) -> bool:
        return self._web is not None and self._web.running

    @property
    def port(self) -> int | None:
        return self._web.port if self.running else None

    # ── Startup ──

    async def ensure_listening(self) -> int:
        """Start the respondent server if needed and return its port."""
        async with self._start_lock:
            server = self.web_server
            if server.running:
                return server.port
            try:
                port = await self._negotiate_port()
                await server.start(port)
            except FeedbackError as exc:
                logger.error("Web server start failed: %s", exc)
                raise StartupError(str(exc)) from exc
            except OSError as exc:
                logger.error("Web server start failed: %s", exc)
                raise StartupError(f"{type(exc).__name__}: {exc}") from exc

            self._start_sweeper()
            mode = "forced port" if self.config.force_port else "first available"
            logger.info("Web server started (%s): http://%s:%d", mode, self.config.public_host, port)
            return port

    async def _negotiate_port(self) -> int:
        cfg = self.config
        if cfg.cleanup_port_on_start:
            logger.info("Port cleanup enabled at startup, cleaning port %d", cfg.web_port)
            await self.negotiator.cleanup_port(cfg.web_port)
        if cfg.force_port:
            return await self.negotiator.force_port(
                cfg.web_port, cfg.kill_process_on_port_conflict,
            )
        return await self.negotiator.find_available(cfg.web_port)

    def _start_sweeper(self) -> None:
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_stop.clear()
        self._sweeper_task = asyncio.create_task(
            run_session_sweeper(
                self.broker,
                interval=self.config.sweep_interval_seconds,
                stop_event=self._sweeper_stop,
            ),
            name="session-sweeper",
        )

    @property
    def base_url(self) -> str:
        cfg = self.config
        port = self.port or cfg.web_port
        return (cfg.server_base_url or f"http://{cfg.public_host}:{port}").rstrip("/")

    def feedback_url(self, session_id: str) -> str:
        if self.config.use_fixed_url:
            return self.base_url
        return f"{self.base_url}/?mode=feedback&session={session_id}"

    # ── Caller side ──

    async def collect_feedback(
        self,
        prompt: str,
        on_url: UrlCallback | None = None,
    ) -> list[Submission]:
        """Block until a respondent answers *prompt*, the timeout hits, or shutdown."""
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")

        await self.ensure_listening()

        loop = asyncio.get_running_loop()
        future: asyncio.Future[list[Submission]] = loop.create_future()
        session_id = make_session_id()
        timeout = self.config.dialog_timeout
        logger.info(
            "Starting to collect feedback: session=%s prompt_chars=%d timeout=%ss",
            session_id, len(prompt), timeout,
        )

        self.broker.create(
            session_id,
            prompt,
            timeout,
            on_success=lambda responses: loop.call_soon_threadsafe(
                _settle, future, responses,
            ),
            on_error=lambda exc: loop.call_soon_threadsafe(_fail, future, exc),
        )
        self._arm_timer(session_id, timeout)

        try:
            url = self.feedback_url(session_id)
            await self._announce(url, on_url)
            responses = await future
            logger.info(
                "Feedback collection complete: session=%s items=%d",
                session_id, len(responses),
            )
            return responses
        except asyncio.CancelledError:
            if self.broker.abort(session_id, SessionCancelledError(session_id)):
                logger.info("Caller cancelled, session aborted: %s", session_id)
            raise
        finally:
            self._disarm_timer(session_id)

    def create_test_session(
        self, prompt: str, timeout: float = TEST_SESSION_TIMEOUT_SECONDS,
    ) -> tuple[FeedbackSession, str]:
        """Create a session nobody awaits; the outcome is only logged."""
        session_id = make_session_id()

        def _done(responses: list[Submission]) -> None:
            logger.info("Test session %s received %d items", session_id, len(responses))
            self._disarm_timer(session_id)

        def _failed(exc: BaseException) -> None:
            logger.info("Test session %s ended: %s", session_id, exc)
            self._disarm_timer(session_id)

        session = self.broker.create(session_id, prompt, timeout, _done, _failed)
        self._arm_timer(session_id, timeout)
        logger.info("Created test session: %s", session_id)
        return session, self.feedback_url(session_id)

    def _arm_timer(self, session_id: str, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[session_id] = loop.call_later(timeout, self.broker.expire, session_id)

    def _disarm_timer(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    async def _announce(self, url: str, on_url: UrlCallback | None) -> None:
        logger.info("Feedback page: %s", url)
        if on_url is not None:
            try:
                await on_url(url)
            except Exception as exc:
                logger.warning("Failed to report feedback URL to caller: %s", exc)
        if not self.config.open_browser:
            return
        try:
            opened = await asyncio.to_thread(self._opener, url)
        except Exception as exc:
            opened = False
            logger.warning("Unable to open browser automatically: %s", exc)
        if not opened:
            logger.info("Please open the feedback page manually: %s", url)

    # ── Respondent side ──

    def active_session(self) -> FeedbackSession | None:
        """Newest ACTIVE session wins when several are open."""
        return self.broker.latest_active()

    def latest_prompt(
        self, last_seen_session_id: str | None,
    ) -> tuple[PromptStatus, FeedbackSession | None]:
        session = self.broker.latest_active()
        if session is None:
            return PromptStatus.NONE, None
        if session.session_id == last_seen_session_id:
            return PromptStatus.UNCHANGED, session
        return PromptStatus.CHANGED, session

    def get_session(self, session_id: str) -> FeedbackSession:
        session = self.broker.get(session_id)
        if session is None:
            raise self.broker.missing_error(session_id)
        return session

    async def submit(
        self,
        session_id: str,
        text: str | None = None,
        attachments: Sequence[Mapping[str, Any]] | None = None,
    ) -> Submission:
        """Validate a respondent submission and complete its session."""
        if not (text and text.strip()) and not attachments:
            raise EmptySubmissionError(session_id)

        self.get_session(session_id)

        processed = ()
        if attachments:
            logger.info("Processing %d attachments for %s", len(attachments), session_id)
            processed = await asyncio.to_thread(self.processor.process_all, attachments)

        submission = Submission(
            session_id=session_id,
            text=text if text and text.strip() else None,
            attachments=processed,
        )
        self.broker.append_response(session_id, submission)
        self.broker.resolve(session_id)
        self._disarm_timer(session_id)
        return submission

    # ── Status / shutdown ──

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "port": self.port,
            "uptime_seconds": round(time.time() - self._started_at, 1),
            **self.broker.stats(),
        }

    async def shutdown(self) -> None:
        """Abort sessions first, then stop the server and wait for its port."""
        aborted = self.broker.shutdown_all()
        for session_id in list(self._timers):
            self._disarm_timer(session_id)
        if aborted:
            logger.info("Aborted %d sessions on shutdown", aborted)

        self._sweeper_stop.set()
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

        if not self.running:
            return
        port = self._web.port
        await self._web.stop()
        try:
            await self.negotiator.wait_for_release(port, RELEASE_WAIT_MS)
        except PortReleaseTimeoutError:
            logger.warning("Port %d release timeout, but server stopped", port)


def _settle(future: asyncio.Future, result: Any) -> None:
    if not future.done():
        future.set_result(result)


def _fail(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)
