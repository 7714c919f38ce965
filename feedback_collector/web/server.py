"""Respondent-facing HTTP + WebSocket server.

Thin adapter over FeedbackBridge: all session state lives in the
SessionBroker. This class only handles HTTP routing and the WebSocket
event protocol. Every WebSocket message is a JSON object
``{"event": str, "data": {...}}`` in both directions.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from aiohttp import WSMsgType, web

from feedback_collector.engine import __version__
from feedback_collector.engine.errors import FeedbackError, InvalidTimeoutError

if TYPE_CHECKING:
    from feedback_collector.engine.bridge import FeedbackBridge
    from feedback_collector.engine.models import FeedbackSession

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"
# Large enough for a max-size attachment after base64 inflation.
MAX_MESSAGE_SIZE = 160 * 1024 * 1024


def _session_payload(session: FeedbackSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "prompt": session.prompt,
        "timeout": session.timeout_seconds,
        "created_at": session.created_at,
        "deadline": session.deadline,
    }


class FeedbackWebServer:
    """aiohttp application serving the respondent page and event socket."""

    def __init__(self, bridge: FeedbackBridge, host: str = "127.0.0.1") -> None:
        self._bridge = bridge
        self._host = host
        self._port: int | None = None
        self._runner: web.AppRunner | None = None
        self._sockets: set[web.WebSocketResponse] = set()
        self.app = web.Application(
            middlewares=[self._request_logging_middleware],
            client_max_size=MAX_MESSAGE_SIZE,
        )
        self._setup_routes()

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def port(self) -> int | None:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/", self._handle_index)
        r.add_get("/health", self._handle_health)
        r.add_get("/api/version", self._handle_version)
        r.add_get("/api/config", self._handle_config)
        r.add_post("/api/test-session", self._handle_test_session)
        r.add_get("/ws", self._handle_websocket)

    # ── Lifecycle ──

    async def start(self, port: int) -> None:
        runner = web.AppRunner(self.app, handle_signals=False)
        await runner.setup()
        site = web.TCPSite(runner, self._host, port, reuse_address=True)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._port = self._resolve_port(site, runner) or port
        logger.info("Feedback web server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        for ws in list(self._sockets):
            await ws.close(message=b"Server shutting down")
        self._sockets.clear()
        await self._runner.cleanup()
        self._runner = None
        logger.info("Feedback web server stopped (port %s)", self._port)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── HTTP handlers ──

    async def _handle_index(self, request: web.Request) -> web.StreamResponse:
        return web.FileResponse(STATIC_DIR / "index.html")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "version": __version__,
            "connections": len(self._sockets),
            **self._bridge.status(),
        })

    async def _handle_version(self, request: web.Request) -> web.Response:
        return web.json_response({"version": __version__, "name": "feedback-collector"})

    async def _handle_config(self, request: web.Request) -> web.Response:
        cfg = self._bridge.config
        return web.json_response({
            "dialog_timeout": cfg.dialog_timeout,
            "max_file_size": cfg.max_file_size,
            "use_fixed_url": cfg.use_fixed_url,
        })

    async def _handle_test_session(self, request: web.Request) -> web.Response:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        prompt = (body or {}).get("prompt") or "Test session: please leave any feedback."
        timeout = (body or {}).get("timeout")
        try:
            if timeout is None:
                session, url = self._bridge.create_test_session(prompt)
            else:
                session, url = self._bridge.create_test_session(prompt, float(timeout))
        except (InvalidTimeoutError, TypeError, ValueError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response({**_session_payload(session), "url": url}, status=201)

    # ── WebSocket ──

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0, max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        self._sockets.add(ws)
        logger.info("WebSocket client connected (total: %d)", len(self._sockets))

        # Last prompt this client was told about, for request_latest_summary.
        conn_state: dict[str, str | None] = {"last_session_id": None}
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._dispatch(ws, msg.data, conn_state)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._sockets.discard(ws)
            logger.info("WebSocket client disconnected (total: %d)", len(self._sockets))
        return ws

    async def _dispatch(
        self,
        ws: web.WebSocketResponse,
        raw: str,
        conn_state: dict[str, str | None],
    ) -> None:
        try:
            message = json.loads(raw)
            event = message["event"]
            data = message.get("data") or {}
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            await self._send(ws, "error", {"code": "invalid_event", "message": "Malformed event"})
            return
        if not isinstance(data, dict):
            await self._send(ws, "error", {
                "code": "invalid_event", "message": "Event data must be an object",
            })
            return

        if event == "request_session":
            await self._on_request_session(ws)
        elif event == "request_latest_summary":
            await self._on_request_latest_summary(ws, data, conn_state)
        elif event == "get_work_summary":
            await self._on_get_work_summary(ws, data)
        elif event == "submit_feedback":
            await self._on_submit_feedback(ws, data)
        else:
            await self._send(ws, "error", {
                "code": "invalid_event", "message": f"Unknown event: {event}",
            })

    async def _on_request_session(self, ws: web.WebSocketResponse) -> None:
        session = self._bridge.active_session()
        if session is None:
            await self._send(ws, "no_active_session", {"message": "No active feedback session"})
            return
        await self._send(ws, "session_info", _session_payload(session))

    async def _on_request_latest_summary(
        self,
        ws: web.WebSocketResponse,
        data: dict[str, Any],
        conn_state: dict[str, str | None],
    ) -> None:
        last_seen = data.get("last_session_id") or conn_state["last_session_id"]
        status, session = self._bridge.latest_prompt(last_seen)
        payload: dict[str, Any] = {"status": status.value}
        if session is not None:
            conn_state["last_session_id"] = session.session_id
            payload.update(_session_payload(session))
        await self._send(ws, "latest_summary", payload)

    async def _on_get_work_summary(self, ws: web.WebSocketResponse, data: dict[str, Any]) -> None:
        requested = data.get("feedback_session_id") or data.get("session_id")
        if requested:
            # Per-session URLs pin the page to one session.
            try:
                session = self._bridge.get_session(str(requested))
            except FeedbackError as exc:
                await self._send(ws, "feedback_error", {"code": exc.code, "message": str(exc)})
                return
        else:
            session = self._bridge.active_session()
        if session is None:
            await self._send(ws, "no_active_session", {"message": "No active feedback session"})
            return
        await self._send(ws, "work_summary", {
            "session_id": session.session_id,
            "work_summary": session.prompt,
        })

    async def _on_submit_feedback(self, ws: web.WebSocketResponse, data: dict[str, Any]) -> None:
        session_id = data.get("session_id") or data.get("sessionId") or ""
        attachments = data.get("attachments") or data.get("images") or []
        try:
            submission = await self._bridge.submit(session_id, data.get("text"), attachments)
        except FeedbackError as exc:
            logger.info("Submission rejected for %s: %s", session_id or "(none)", exc)
            await self._send(ws, "feedback_error", {"code": exc.code, "message": str(exc)})
            return
        except Exception:
            logger.exception("Submission failed for %s", session_id)
            await self._send(ws, "feedback_error", {
                "code": "server_error", "message": "Internal error while saving feedback",
            })
            return
        await self._send(ws, "feedback_submitted", {
            "session_id": session_id,
            "attachments": len(submission.attachments),
            "timestamp": submission.timestamp,
        })

    @staticmethod
    async def _send(ws: web.WebSocketResponse, event: str, data: dict[str, Any]) -> None:
        if ws.closed:
            return
        await ws.send_json({"event": event, "data": data})
