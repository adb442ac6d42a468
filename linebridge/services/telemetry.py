"""
Debug telemetry - per-run accumulator flushed as one batch insert,
plus the query/stats/prune operations behind POST /debug.

A TelemetryRun is created per request or worker invocation and passed
explicitly; nothing is buffered at module level. Flush failures are
logged and swallowed so telemetry never breaks the caller.
"""
import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, delete, func

from linebridge.models.debug_log import DebugLogEntry
from linebridge.schemas.api_responses import DebugLogFilters

logger = logging.getLogger(__name__)

STATS_WINDOW = 1000
RECENT_ERRORS = 5

_PYTHON_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "api_call": logging.DEBUG,
    "api_response": logging.DEBUG,
}


def _to_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class TelemetryRun:
    """Collects debug entries for one request or worker run."""

    def __init__(
        self,
        function_name: str,
        request_id: Optional[str] = None,
        integration_id=None,
        workspace_id=None,
    ):
        self.function_name = function_name
        self.request_id = request_id or uuid.uuid4().hex
        self.integration_id = _to_uuid(integration_id)
        self.workspace_id = _to_uuid(workspace_id)
        self.entries: list[dict] = []

    def bind(self, integration_id=None, workspace_id=None) -> None:
        """Attach tenant ids once they are resolved; applies to later entries."""
        if integration_id is not None:
            self.integration_id = _to_uuid(integration_id)
        if workspace_id is not None:
            self.workspace_id = _to_uuid(workspace_id)

    def log(
        self,
        level: str,
        message: str,
        details: Optional[dict] = None,
        category: Optional[str] = None,
        http_method: Optional[str] = None,
        http_path: Optional[str] = None,
        http_status: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        self.entries.append({
            "timestamp": datetime.now(timezone.utc),
            "function_name": self.function_name,
            "integration_id": self.integration_id,
            "workspace_id": self.workspace_id,
            "level": level,
            "category": category,
            "message": message,
            "details": details or {},
            "request_id": self.request_id,
            "http_method": http_method,
            "http_path": http_path,
            "http_status": http_status,
            "duration_ms": duration_ms,
        })
        logger.log(
            _PYTHON_LEVELS.get(level, logging.INFO),
            "[%s] %s", self.function_name, message,
            extra={"request_id": self.request_id},
        )

    def debug(self, message: str, details: Optional[dict] = None, category: Optional[str] = None) -> None:
        self.log("debug", message, details, category)

    def info(self, message: str, details: Optional[dict] = None, category: Optional[str] = None) -> None:
        self.log("info", message, details, category)

    def warn(self, message: str, details: Optional[dict] = None, category: Optional[str] = None) -> None:
        self.log("warn", message, details, category)

    def error(self, message: str, details: Optional[dict] = None, category: Optional[str] = None) -> None:
        self.log("error", message, details, category)

    def api_call(self, method: str, http_method: str, url: str, details: Optional[dict] = None) -> None:
        self.log(
            "api_call", f"Calling {method}", details,
            category="crm_api", http_method=http_method, http_path=url,
        )

    def api_response(
        self, method: str, status_code: int, details: Optional[dict] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        self.log(
            "api_response", f"{method} responded {status_code}", details,
            category="crm_api", http_status=status_code, duration_ms=duration_ms,
        )

    async def flush(self, session_factory) -> int:
        """Write all accumulated entries in one insert. Returns the number written."""
        if not self.entries:
            return 0
        pending = self.entries
        self.entries = []
        try:
            async with session_factory() as db:
                db.add_all([DebugLogEntry(**entry) for entry in pending])
                await db.commit()
            return len(pending)
        except Exception as e:
            logger.warning(
                "Telemetry flush failed (%d entries dropped): %s",
                len(pending), str(e),
                extra={"request_id": self.request_id},
            )
            return 0


# ---------------------------------------------------------------------------
# Query surface
# ---------------------------------------------------------------------------

def _filtered(query, filters: DebugLogFilters):
    if filters.function_name:
        query = query.where(DebugLogEntry.function_name == filters.function_name)
    if filters.level:
        query = query.where(DebugLogEntry.level == filters.level)
    if filters.category:
        query = query.where(DebugLogEntry.category == filters.category)
    if filters.request_id:
        query = query.where(DebugLogEntry.request_id == filters.request_id)
    if filters.integration_id:
        query = query.where(DebugLogEntry.integration_id == filters.integration_id)
    if filters.workspace_id:
        query = query.where(DebugLogEntry.workspace_id == filters.workspace_id)
    if filters.from_timestamp:
        query = query.where(DebugLogEntry.timestamp >= filters.from_timestamp)
    if filters.to_timestamp:
        query = query.where(DebugLogEntry.timestamp <= filters.to_timestamp)
    return query


def serialize_entry(entry: DebugLogEntry) -> dict:
    return {
        "id": str(entry.id),
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "function_name": entry.function_name,
        "integration_id": str(entry.integration_id) if entry.integration_id else None,
        "workspace_id": str(entry.workspace_id) if entry.workspace_id else None,
        "level": entry.level,
        "category": entry.category,
        "message": entry.message,
        "details": entry.details,
        "request_id": entry.request_id,
        "http_method": entry.http_method,
        "http_path": entry.http_path,
        "http_status": entry.http_status,
        "duration_ms": entry.duration_ms,
    }


async def query_logs(db, filters: DebugLogFilters) -> dict:
    """
    Filtered page of entries, newest first.
    Returns {"logs": [...], "count": int, "has_more": bool}.
    """
    count_result = await db.execute(
        _filtered(select(func.count(DebugLogEntry.id)), filters)
    )
    total = count_result.scalar() or 0

    page_size = filters.page_size
    result = await db.execute(
        _filtered(select(DebugLogEntry), filters)
        .order_by(DebugLogEntry.timestamp.desc())
        .offset(filters.offset)
        .limit(page_size)
    )
    logs = [serialize_entry(row) for row in result.scalars().all()]

    return {
        "logs": logs,
        "count": total,
        "has_more": filters.offset + len(logs) < total,
    }


async def log_stats(db, filters: Optional[DebugLogFilters] = None) -> dict:
    """Counts by level and function over the latest entries, plus the newest errors."""
    filters = filters or DebugLogFilters()
    base = DebugLogFilters(
        function_name=filters.function_name,
        integration_id=filters.integration_id,
        workspace_id=filters.workspace_id,
        from_timestamp=filters.from_timestamp,
        to_timestamp=filters.to_timestamp,
    )

    result = await db.execute(
        _filtered(select(DebugLogEntry.level, DebugLogEntry.function_name), base)
        .order_by(DebugLogEntry.timestamp.desc())
        .limit(STATS_WINDOW)
    )
    rows = result.all()
    by_level = Counter(level for level, _ in rows)
    by_function = Counter(name for _, name in rows)

    error_filters = base.model_copy(update={"level": "error"})
    errors_result = await db.execute(
        _filtered(select(DebugLogEntry), error_filters)
        .order_by(DebugLogEntry.timestamp.desc())
        .limit(RECENT_ERRORS)
    )
    recent_errors = [serialize_entry(row) for row in errors_result.scalars().all()]

    return {
        "total": len(rows),
        "by_level": dict(by_level),
        "by_function": dict(by_function),
        "recent_errors": recent_errors,
    }


async def prune_logs(db, hours: int = 24) -> int:
    """Delete entries older than the retention window. Returns rows deleted."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    result = await db.execute(
        delete(DebugLogEntry).where(DebugLogEntry.timestamp < cutoff)
    )
    deleted = result.rowcount or 0
    logger.info("Pruned %d debug log entries older than %dh", deleted, hours)
    return deleted


async def purge_workspace_logs(db, workspace_id) -> int:
    """
    Delete every entry belonging to one workspace.
    Raises ValueError when workspace_id is not a UUID; entries without a
    workspace are never matched.
    """
    if not isinstance(workspace_id, uuid.UUID):
        workspace_id = uuid.UUID(str(workspace_id))
    result = await db.execute(
        delete(DebugLogEntry).where(DebugLogEntry.workspace_id == workspace_id)
    )
    deleted = result.rowcount or 0
    logger.info("Purged %d debug log entries for workspace %s", deleted, str(workspace_id)[:8])
    return deleted
