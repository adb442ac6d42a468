"""
Tests for linebridge/services/telemetry.py - per-run accumulation,
batch flush and the query/stats/prune surface.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from linebridge.models.debug_log import DebugLogEntry
from linebridge.schemas.api_responses import DebugLogFilters
from linebridge.services.telemetry import (
    TelemetryRun,
    log_stats,
    prune_logs,
    purge_workspace_logs,
    query_logs,
)

WORKSPACE = uuid.UUID("22222222-2222-2222-2222-222222222222")


async def _seed(db, count: int, **overrides) -> None:
    now = datetime.now(timezone.utc)
    rows = []
    for i in range(count):
        fields = {
            "timestamp": now - timedelta(minutes=i),
            "function_name": "crm-events",
            "level": "info",
            "message": f"entry {i}",
        }
        fields.update(overrides)
        rows.append(DebugLogEntry(**fields))
    db.add_all(rows)
    await db.commit()


# ---------------------------------------------------------------------------
# TelemetryRun
# ---------------------------------------------------------------------------

class TestTelemetryRun:
    def test_entries_carry_run_identity(self):
        run = TelemetryRun("event-worker", request_id="req-1")
        run.info("first")
        run.bind(integration_id=uuid.uuid4(), workspace_id=str(WORKSPACE))
        run.error("second", {"k": "v"}, category="queue")

        first, second = run.entries
        assert first["request_id"] == second["request_id"] == "req-1"
        assert first["workspace_id"] is None
        assert second["workspace_id"] == WORKSPACE
        assert second["level"] == "error"
        assert second["details"] == {"k": "v"}

    def test_request_id_generated(self):
        assert TelemetryRun("x").request_id

    def test_api_helpers_set_http_fields(self):
        run = TelemetryRun("x")
        run.api_call("imconnector.list", "POST", "https://acme/rest/imconnector.list")
        run.api_response("imconnector.list", 200)

        call, response = run.entries
        assert call["level"] == "api_call"
        assert call["http_method"] == "POST"
        assert response["http_status"] == 200

    async def test_flush_writes_batch_and_clears(self, session_factory):
        run = TelemetryRun("crm-events", request_id="req-2")
        run.info("a")
        run.warn("b")

        assert await run.flush(session_factory) == 2
        assert run.entries == []

        async with session_factory() as session:
            rows = (await session.execute(select(DebugLogEntry))).scalars().all()
        assert {r.message for r in rows} == {"a", "b"}

    async def test_flush_without_entries_is_noop(self, session_factory):
        assert await TelemetryRun("x").flush(session_factory) == 0

    async def test_flush_failure_is_swallowed(self):
        class _Broken:
            async def __aenter__(self):
                raise RuntimeError("db down")

            async def __aexit__(self, *args):
                return False

        run = TelemetryRun("x")
        run.info("lost")
        assert await run.flush(lambda: _Broken()) == 0


# ---------------------------------------------------------------------------
# query_logs
# ---------------------------------------------------------------------------

class TestQueryLogs:
    async def test_newest_first(self, db):
        await _seed(db, 3)

        result = await query_logs(db, DebugLogFilters())

        assert [log["message"] for log in result["logs"]] == ["entry 0", "entry 1", "entry 2"]
        assert result["count"] == 3
        assert result["has_more"] is False

    async def test_level_and_time_filters(self, db):
        now = datetime.now(timezone.utc)
        await _seed(db, 2, level="error")
        await _seed(db, 2, level="info")
        await _seed(db, 1, level="error", timestamp=now - timedelta(days=2))

        result = await query_logs(db, DebugLogFilters(
            level="error", from_timestamp=now - timedelta(hours=1),
        ))

        assert result["count"] == 2
        assert all(log["level"] == "error" for log in result["logs"])

    async def test_workspace_filter(self, db):
        await _seed(db, 2, workspace_id=WORKSPACE)
        await _seed(db, 3)

        result = await query_logs(db, DebugLogFilters(workspace_id=str(WORKSPACE)))

        assert result["count"] == 2
        assert result["logs"][0]["workspace_id"] == str(WORKSPACE)

    async def test_pagination_has_more(self, db):
        await _seed(db, 5)

        result = await query_logs(db, DebugLogFilters(limit=2))

        assert len(result["logs"]) == 2
        assert result["count"] == 5
        assert result["has_more"] is True

        tail = await query_logs(db, DebugLogFilters(limit=2, offset=4))
        assert len(tail["logs"]) == 1
        assert tail["has_more"] is False

    def test_page_size_capped(self):
        assert DebugLogFilters(limit=10_000).page_size == 500
        assert DebugLogFilters(limit=0).page_size == 100
        assert DebugLogFilters().page_size == 100


# ---------------------------------------------------------------------------
# log_stats
# ---------------------------------------------------------------------------

class TestLogStats:
    async def test_counts_and_recent_errors(self, db):
        await _seed(db, 3, level="info")
        await _seed(db, 7, level="error", function_name="event-worker")

        stats = await log_stats(db)

        assert stats["total"] == 10
        assert stats["by_level"] == {"info": 3, "error": 7}
        assert stats["by_function"] == {"crm-events": 3, "event-worker": 7}
        assert len(stats["recent_errors"]) == 5
        assert all(e["level"] == "error" for e in stats["recent_errors"])

    async def test_empty(self, db):
        stats = await log_stats(db)
        assert stats == {"total": 0, "by_level": {}, "by_function": {}, "recent_errors": []}


# ---------------------------------------------------------------------------
# prune / purge
# ---------------------------------------------------------------------------

class TestRetention:
    async def test_prune_older_than_window(self, db):
        now = datetime.now(timezone.utc)
        await _seed(db, 2, timestamp=now - timedelta(hours=30))
        await _seed(db, 1, timestamp=now)

        assert await prune_logs(db, hours=24) == 2
        await db.commit()
        assert (await query_logs(db, DebugLogFilters()))["count"] == 1

    async def test_purge_workspace(self, db):
        await _seed(db, 2, workspace_id=WORKSPACE)
        await _seed(db, 1, workspace_id=uuid.uuid4())

        assert await purge_workspace_logs(db, str(WORKSPACE)) == 2

    async def test_purge_rejects_malformed_workspace(self, db):
        await _seed(db, 2)
        await _seed(db, 1, workspace_id=WORKSPACE)

        with pytest.raises(ValueError):
            await purge_workspace_logs(db, "acme-typo")

        assert (await query_logs(db, DebugLogFilters()))["count"] == 3

    def test_malformed_filter_id_rejected(self):
        with pytest.raises(ValidationError):
            DebugLogFilters(workspace_id="acme-typo")
        with pytest.raises(ValidationError):
            DebugLogFilters(integration_id="not-a-uuid")
