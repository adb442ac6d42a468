"""
Tests for linebridge/api/events.py - the CRM webhook gateway.

Whatever the body looks like, a request carrying an event type must get
200 text/plain "successfully", even when enqueue or the trigger blows up.
"""
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from sqlalchemy import select

from linebridge.api.deps import intake_session_factory, intake_worker_trigger
from linebridge.main import create_app
from linebridge.models.debug_log import DebugLogEntry
from linebridge.models.queued_event import QueuedEvent

FORM = {"Content-Type": "application/x-www-form-urlencoded"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _BrokenSession:
    async def __aenter__(self):
        raise RuntimeError("database unavailable")

    async def __aexit__(self, *args):
        return False


def _broken_factory():
    return _BrokenSession()


def _build_app(session_factory, trigger):
    app = create_app()
    app.dependency_overrides[intake_session_factory] = lambda: session_factory
    app.dependency_overrides[intake_worker_trigger] = lambda: trigger
    return app


@pytest.fixture
def trigger():
    mock = MagicMock()
    mock.fire = MagicMock()
    return mock


@pytest.fixture
def client_for(trigger):
    def _make(session_factory):
        app = _build_app(session_factory, trigger)
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return _make


async def _queued(db) -> list[QueuedEvent]:
    result = await db.execute(select(QueuedEvent))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Acknowledgement across encodings
# ---------------------------------------------------------------------------

class TestEventAck:
    async def test_form_event_acked_and_enqueued(self, client_for, session_factory, db, trigger):
        body = (
            "event=ONIMCONNECTORMESSAGEADD"
            "&data[CONNECTOR]=linebridge_whatsapp&data[LINE]=1"
            "&data[MESSAGES][0][message][text]=hi"
            "&auth[domain]=acme.bitrix24.com&auth[member_id]=m1"
        )
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content=body, headers=FORM)

        assert resp.status_code == 200
        assert resp.text == "successfully"
        assert resp.headers["content-type"].startswith("text/plain")

        rows = await _queued(db)
        assert len(rows) == 1
        assert rows[0].event_type == "ONIMCONNECTORMESSAGEADD"
        assert rows[0].status == "pending"
        assert rows[0].payload["data"]["MESSAGES"][0]["message"]["text"] == "hi"
        trigger.fire.assert_called_once_with(str(rows[0].id))

    async def test_json_event_acked(self, client_for, session_factory, db):
        payload = {"event": "ONIMCONNECTORDIALOGSTART", "auth": {"member_id": "m1"}}
        async with client_for(session_factory) as client:
            resp = await client.post("/events", json=payload)

        assert resp.status_code == 200
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].payload == payload

    async def test_text_body_parsed_as_form(self, client_for, session_factory, db):
        async with client_for(session_factory) as client:
            resp = await client.post(
                "/events",
                content="event=ONAPPTEST&auth[domain]=x.bitrix24.com&&[[",
                headers={"Content-Type": "text/plain"},
            )
        assert resp.status_code == 200
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].event_type == "ONAPPTEST"

    async def test_lowercase_event_normalized(self, client_for, session_factory, db):
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content="event=onappTest", headers=FORM)
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].event_type == "ONAPPTEST"

    async def test_unrecognized_event_enqueued_as_is(self, client_for, session_factory, db):
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content="event=ONCRMDEALUPDATE", headers=FORM)
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].event_type == "ONCRMDEALUPDATE"

    async def test_placement_enqueued_as_placement(self, client_for, session_factory, db, trigger):
        body = "PLACEMENT=SETTING_CONNECTOR&PLACEMENT_OPTIONS=" + json.dumps({"LINE": 2})
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content=body, headers=FORM)
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].event_type == "PLACEMENT"
        trigger.fire.assert_called_once()

    @pytest.mark.parametrize("body,content_type", [
        (b"\xff\xfe\x00garbage", "application/x-www-form-urlencoded"),
        (b"{broken json", "application/json"),
        (b"<xml>nope</xml>", "application/xml"),
        (b"", "application/json"),
    ])
    async def test_malformed_bodies_never_error(self, client_for, session_factory, body, content_type):
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content=body, headers={"Content-Type": content_type})
        assert resp.status_code == 200

    async def test_huge_message_index_acked_and_enqueued(self, client_for, session_factory, db):
        body = (
            "event=ONIMCONNECTORMESSAGEADD"
            "&data[MESSAGES][20000000][message][text]=hi"
            "&auth[domain]=acme.bitrix24.com&auth[member_id]=m1"
        )
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content=body, headers=FORM)
        assert resp.status_code == 200
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert rows[0].payload["data"]["MESSAGES"] == [{"message": {"text": "hi"}}]


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

class TestFailureIsolation:
    async def test_enqueue_failure_still_acks(self, client_for, trigger):
        async with client_for(_broken_factory) as client:
            resp = await client.post("/events", content="event=ONAPPTEST", headers=FORM)
        assert resp.status_code == 200
        assert resp.text == "successfully"
        trigger.fire.assert_not_called()

    async def test_trigger_failure_still_acks(self, session_factory, db):
        broken_trigger = MagicMock()
        broken_trigger.fire.side_effect = RuntimeError("no event loop capacity")
        app = _build_app(session_factory, broken_trigger)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/events", content="event=ONAPPTEST", headers=FORM)
        assert resp.status_code == 200
        assert resp.text == "successfully"
        # The row stays pending for the fallback scan / reaper
        rows = await _queued(db)
        assert rows[0].status == "pending"

    async def test_session_factory_build_failure_still_acks(self, trigger):
        app = create_app()
        app.dependency_overrides[intake_worker_trigger] = lambda: trigger
        with patch(
            "linebridge.api.deps.get_session_factory",
            side_effect=RuntimeError("DATABASE_URL is not a valid URL"),
        ):
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
                resp = await client.post("/events", content="event=ONAPPTEST", headers=FORM)
        assert resp.status_code == 200
        assert resp.text == "successfully"
        trigger.fire.assert_not_called()

    async def test_trigger_build_failure_still_acks(self, session_factory, db):
        app = create_app()
        app.dependency_overrides[intake_session_factory] = lambda: session_factory
        with patch(
            "linebridge.api.deps.get_worker_trigger",
            side_effect=RuntimeError("WORKER_URL missing"),
        ):
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
                resp = await client.post("/events", content="event=ONAPPTEST", headers=FORM)
        assert resp.status_code == 200
        assert resp.text == "successfully"
        rows = await _queued(db)
        assert len(rows) == 1
        assert rows[0].status == "pending"


# ---------------------------------------------------------------------------
# Health / diagnostics paths
# ---------------------------------------------------------------------------

class TestNoEventPaths:
    async def test_no_event_returns_health_json(self, client_for, session_factory, db, trigger):
        async with client_for(session_factory) as client:
            resp = await client.post("/events", content="foo=bar", headers=FORM)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert "timestamp" in body
        assert await _queued(db) == []
        trigger.fire.assert_not_called()

    async def test_get_returns_health_json(self, client_for, session_factory):
        async with client_for(session_factory) as client:
            resp = await client.get("/events")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_options_returns_cors_headers(self, client_for, session_factory):
        async with client_for(session_factory) as client:
            resp = await client.options("/events")
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.content == b""


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

class TestIntakeTelemetry:
    async def test_request_id_shared_by_row_and_telemetry(self, client_for, session_factory, db):
        async with client_for(session_factory) as client:
            resp = await client.post(
                "/events",
                content="event=ONAPPTEST&auth[domain]=acme.bitrix24.com",
                headers={**FORM, "X-Correlation-ID": "cid-intake-1"},
            )
        assert resp.headers["x-correlation-id"] == "cid-intake-1"

        rows = await _queued(db)
        assert rows[0].request_id == "cid-intake-1"

        result = await db.execute(select(DebugLogEntry).where(DebugLogEntry.request_id == "cid-intake-1"))
        entries = result.scalars().all()
        assert entries
        assert all(e.function_name == "crm-events" for e in entries)
