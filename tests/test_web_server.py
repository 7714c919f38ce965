from __future__ import annotations

import base64

from aiohttp.test_utils import AioHTTPTestCase

from feedback_collector.engine import __version__
from feedback_collector.engine.bridge import FeedbackBridge
from feedback_collector.engine.config import FeedbackConfig
from feedback_collector.engine.session_broker import SessionBroker
from feedback_collector.web.server import FeedbackWebServer

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16).decode("ascii")


class _NoopNegotiator:
    async def cleanup_port(self, port: int) -> None:
        return None

    async def find_available(self, preferred: int | None = None) -> int:
        return preferred or 5000

    async def wait_for_release(self, port: int, timeout_ms: int = 10000) -> None:
        return None


class TestFeedbackWebServer(AioHTTPTestCase):
    async def get_application(self):
        config = FeedbackConfig(dialog_timeout=60, open_browser=False, use_fixed_url=False)
        self.bridge = FeedbackBridge(
            config,
            broker=SessionBroker(min_timeout=1),
            negotiator=_NoopNegotiator(),
        )
        self.web = self.bridge.web_server
        assert isinstance(self.web, FeedbackWebServer)
        return self.web.app

    async def asyncTearDown(self):
        await self.bridge.shutdown()
        await super().asyncTearDown()

    async def _ws_roundtrip(self, ws, event: str, data: dict | None = None) -> dict:
        await ws.send_json({"event": event, "data": data or {}})
        return await ws.receive_json(timeout=5)

    # ── HTTP ──

    async def test_health_reports_session_counts(self):
        self.bridge.create_test_session("p", timeout=30)
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["total_sessions"] == 1
        assert data["active_sessions"] == 1

    async def test_version(self):
        resp = await self.client.get("/api/version")
        data = await resp.json()
        assert data["version"] == __version__

    async def test_config_exposes_ui_settings_only(self):
        resp = await self.client.get("/api/config")
        data = await resp.json()
        assert data == {"dialog_timeout": 60, "max_file_size": 10 * 1024 * 1024, "use_fixed_url": False}

    async def test_index_page_served(self):
        resp = await self.client.get("/")
        assert resp.status == 200
        body = await resp.text()
        assert "/ws" in body

    async def test_create_test_session(self):
        resp = await self.client.post("/api/test-session", json={"prompt": "try me", "timeout": 30})
        assert resp.status == 201
        data = await resp.json()
        assert data["prompt"] == "try me"
        assert data["timeout"] == 30
        assert data["url"].endswith(f"session={data['session_id']}")
        assert self.bridge.broker.get(data["session_id"]) is not None

    async def test_create_test_session_rejects_bad_timeout(self):
        resp = await self.client.post("/api/test-session", json={"timeout": 999999})
        assert resp.status == 400
        assert "Invalid timeout" in (await resp.json())["error"]

    # ── WebSocket ──

    async def test_request_session_without_active_session(self):
        async with self.client.ws_connect("/ws") as ws:
            msg = await self._ws_roundtrip(ws, "request_session")
        assert msg["event"] == "no_active_session"

    async def test_request_session_returns_newest(self):
        self.bridge.create_test_session("older", timeout=30)
        newer, _ = self.bridge.create_test_session("newer", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            msg = await self._ws_roundtrip(ws, "request_session")
        assert msg["event"] == "session_info"
        assert msg["data"]["session_id"] == newer.session_id
        assert msg["data"]["prompt"] == "newer"

    async def test_latest_summary_changes_then_unchanged(self):
        session, _ = self.bridge.create_test_session("summary", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            first = await self._ws_roundtrip(ws, "request_latest_summary")
            second = await self._ws_roundtrip(ws, "request_latest_summary")
        assert first["data"]["status"] == "changed"
        assert first["data"]["session_id"] == session.session_id
        assert second["data"]["status"] == "unchanged"

    async def test_get_work_summary(self):
        self.bridge.create_test_session("implemented the parser", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            msg = await self._ws_roundtrip(ws, "get_work_summary")
        assert msg["event"] == "work_summary"
        assert msg["data"]["work_summary"] == "implemented the parser"

    async def test_get_work_summary_for_requested_session(self):
        pinned, _ = self.bridge.create_test_session("first request", timeout=30)
        self.bridge.create_test_session("second request", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            msg = await self._ws_roundtrip(ws, "get_work_summary", {
                "feedback_session_id": pinned.session_id,
            })
            missing = await self._ws_roundtrip(ws, "get_work_summary", {
                "feedback_session_id": "feedback_missing",
            })
        assert msg["event"] == "work_summary"
        assert msg["data"]["session_id"] == pinned.session_id
        assert msg["data"]["work_summary"] == "first request"
        assert missing["event"] == "feedback_error"
        assert missing["data"]["code"] == "session_not_found"

    async def test_get_work_summary_for_finished_session(self):
        session, _ = self.bridge.create_test_session("done", timeout=30)
        await self.bridge.submit(session.session_id, "ok")
        async with self.client.ws_connect("/ws") as ws:
            msg = await self._ws_roundtrip(ws, "get_work_summary", {"session_id": session.session_id})
        assert msg["event"] == "feedback_error"
        assert msg["data"]["code"] == "session_expired"

    async def test_submit_feedback_completes_session(self):
        session, _ = self.bridge.create_test_session("review", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            ok = await self._ws_roundtrip(ws, "submit_feedback", {
                "session_id": session.session_id,
                "text": "ship it",
                "attachments": [{"name": "a.png", "type": "image/png", "data": PNG_B64}],
            })
            again = await self._ws_roundtrip(ws, "submit_feedback", {
                "session_id": session.session_id, "text": "twice",
            })
        assert ok["event"] == "feedback_submitted"
        assert ok["data"]["attachments"] == 1
        assert again["event"] == "feedback_error"
        assert again["data"]["code"] == "session_expired"
        assert self.bridge.broker.get(session.session_id) is None

    async def test_submit_feedback_error_codes(self):
        session, _ = self.bridge.create_test_session("review", timeout=30)
        async with self.client.ws_connect("/ws") as ws:
            empty = await self._ws_roundtrip(ws, "submit_feedback", {
                "session_id": session.session_id, "text": "  ",
            })
            unknown = await self._ws_roundtrip(ws, "submit_feedback", {
                "session_id": "feedback_missing", "text": "hello",
            })
            bad = await self._ws_roundtrip(ws, "submit_feedback", {
                "sessionId": session.session_id,
                "images": [{"name": "a.png", "type": "image/png", "data": "!!!"}],
            })
        assert empty["data"]["code"] == "empty_submission"
        assert unknown["data"]["code"] == "session_not_found"
        assert bad["data"]["code"] == "invalid_attachment"
        assert self.bridge.broker.get(session.session_id) is not None

    async def test_malformed_and_unknown_events(self):
        async with self.client.ws_connect("/ws") as ws:
            await ws.send_str("not json")
            malformed = await ws.receive_json(timeout=5)
            unknown = await self._ws_roundtrip(ws, "dance")
            await ws.send_json({"event": "submit_feedback", "data": "oops"})
            bad_data = await ws.receive_json(timeout=5)
            still_open = await self._ws_roundtrip(ws, "request_session")
        assert malformed["data"]["code"] == "invalid_event"
        assert unknown["event"] == "error"
        assert "dance" in unknown["data"]["message"]
        assert bad_data["event"] == "error"
        assert bad_data["data"]["code"] == "invalid_event"
        assert still_open["event"] == "no_active_session"
