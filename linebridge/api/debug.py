"""
Telemetry query surface - POST /debug.

Actions:
- query      filtered page of entries, newest first
- stats      counts by level/function plus recent errors
- clear      delete entries older than `hours` (default 24)
- clear_all  delete every entry for one workspace
- log / log_batch  append entries from other services
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from linebridge.api.deps import require_service_key
from linebridge.database import get_db
from linebridge.models.debug_log import DebugLogEntry, LOG_LEVELS
from linebridge.schemas.api_responses import DebugLogInput, DebugRequest
from linebridge.services.telemetry import (
    log_stats,
    prune_logs,
    purge_workspace_logs,
    query_logs,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["debug"], dependencies=[Depends(require_service_key)])

DEFAULT_CLEAR_HOURS = 24


def _entry_from_input(item: DebugLogInput) -> DebugLogEntry:
    if item.level not in LOG_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid level: {item.level}")
    return DebugLogEntry(**item.model_dump(exclude_none=True))


@router.post("/debug")
async def debug_action(
    body: DebugRequest,
    db: AsyncSession = Depends(get_db),
):
    action = body.action

    if action == "query":
        return await query_logs(db, body.filters)

    if action == "stats":
        return await log_stats(db, body.filters)

    if action == "clear":
        hours = body.hours if body.hours is not None else DEFAULT_CLEAR_HOURS
        deleted = await prune_logs(db, hours=hours)
        return {"success": True, "deleted": deleted, "hours": hours}

    if action == "clear_all":
        workspace_id = body.workspace_id or body.filters.workspace_id
        if not workspace_id:
            raise HTTPException(status_code=400, detail="workspace_id is required for clear_all")
        deleted = await purge_workspace_logs(db, workspace_id)
        return {"success": True, "deleted": deleted}

    if action in ("log", "log_batch"):
        items = body.entries or []
        if not items:
            raise HTTPException(status_code=400, detail="entries are required")
        db.add_all([_entry_from_input(item) for item in items])
        await db.flush()
        return {"success": True, "written": len(items)}

    raise HTTPException(status_code=400, detail=f"Unknown action: {action}")
