"""
Event queue - durable hand-off between the webhook gateway and the worker.

Rows move pending -> processing -> completed | failed. Claims are
conditional updates so two workers never run the same row, and terminal
rows are never written again. There is no transactional coupling with the
worker trigger: a row that is enqueued but never triggered is picked up by
the worker's fallback scan or the reaper.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, func, or_, and_

from linebridge.config import get_settings
from linebridge.core.exceptions import EnqueueError, TerminalEventError
from linebridge.models.queued_event import (
    QueuedEvent,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from linebridge.utils.dates import as_utc

logger = logging.getLogger(__name__)

CLAIM_RACE_RETRIES = 3


def _to_uuid(event_id) -> Optional[uuid.UUID]:
    if isinstance(event_id, uuid.UUID):
        return event_id
    try:
        return uuid.UUID(str(event_id))
    except (TypeError, ValueError):
        return None


async def enqueue(db, event_type: str, payload: dict, request_id: Optional[str] = None) -> QueuedEvent:
    """Insert one pending row. The caller owns the commit."""
    event = QueuedEvent(
        event_type=event_type,
        payload=payload,
        status=STATUS_PENDING,
        attempts=0,
        max_attempts=get_settings().event_max_attempts,
        request_id=request_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    logger.info(
        "Event enqueued: type=%s id=%s", event_type, str(event.id)[:8],
        extra={"event_id": str(event.id), "event_type": event_type, "request_id": request_id},
    )
    return event


async def enqueue_event(session_factory, event_type: str, payload: dict, request_id: Optional[str] = None) -> str:
    """Enqueue in its own transaction. Raises EnqueueError on any database failure."""
    try:
        async with session_factory() as db:
            event = await enqueue(db, event_type, payload, request_id)
            await db.commit()
            return str(event.id)
    except Exception as e:
        raise EnqueueError(f"Failed to enqueue {event_type}: {e}") from e


async def get_event(db, event_id) -> Optional[QueuedEvent]:
    event_uuid = _to_uuid(event_id)
    if event_uuid is None:
        return None
    return await db.get(QueuedEvent, event_uuid, populate_existing=True)


async def claim_event(db, event_id) -> Optional[QueuedEvent]:
    """
    Move a pending row to processing and count the attempt.
    Returns None when the row is missing or no longer pending.
    """
    event_uuid = _to_uuid(event_id)
    if event_uuid is None:
        return None

    result = await db.execute(
        update(QueuedEvent)
        .where(and_(QueuedEvent.id == event_uuid, QueuedEvent.status == STATUS_PENDING))
        .values(
            status=STATUS_PROCESSING,
            attempts=QueuedEvent.attempts + 1,
            started_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        return None
    return await get_event(db, event_uuid)


async def claim_oldest_pending(db) -> Optional[QueuedEvent]:
    """Fallback scan: claim the oldest pending row, if any."""
    for _ in range(CLAIM_RACE_RETRIES):
        result = await db.execute(
            select(QueuedEvent.id)
            .where(QueuedEvent.status == STATUS_PENDING)
            .order_by(QueuedEvent.created_at)
            .limit(1)
        )
        event_id = result.scalar_one_or_none()
        if event_id is None:
            return None
        claimed = await claim_event(db, event_id)
        if claimed is not None:
            return claimed
        # Another worker won the race; look again
    return None


async def _finish(db, event: QueuedEvent, status: str, duration_ms: Optional[int], error: Optional[str]) -> None:
    """
    Conditional write: only a row that is still pending or processing in the
    database is finished. A row another session finished first raises
    TerminalEventError, whatever the in-memory copy says.
    """
    if event.is_terminal:
        raise TerminalEventError(f"Event {event.id} is already {event.status}")

    result = await db.execute(
        update(QueuedEvent)
        .where(
            and_(
                QueuedEvent.id == event.id,
                QueuedEvent.status.in_((STATUS_PENDING, STATUS_PROCESSING)),
            )
        )
        .values(
            status=status,
            processed_at=datetime.now(timezone.utc),
            duration_ms=duration_ms,
            error=error,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(event)
    if not result.rowcount:
        raise TerminalEventError(f"Event {event.id} is already {event.status}")


async def mark_completed(db, event: QueuedEvent, duration_ms: Optional[int] = None) -> None:
    await _finish(db, event, STATUS_COMPLETED, duration_ms, None)


async def mark_failed(db, event: QueuedEvent, error: str, duration_ms: Optional[int] = None) -> None:
    """Store the error verbatim. No retry is scheduled here."""
    await _finish(db, event, STATUS_FAILED, duration_ms, error)


async def find_stale_events(db, older_than_seconds: Optional[int] = None, limit: int = 50) -> list[QueuedEvent]:
    """
    Reaper query: pending rows created before the threshold, plus
    processing rows whose worker started before it and never finished.
    """
    if older_than_seconds is None:
        older_than_seconds = get_settings().reaper_stale_after_seconds
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)

    result = await db.execute(
        select(QueuedEvent)
        .where(
            or_(
                and_(QueuedEvent.status == STATUS_PENDING, QueuedEvent.created_at < cutoff),
                and_(QueuedEvent.status == STATUS_PROCESSING, QueuedEvent.started_at < cutoff),
            )
        )
        .order_by(QueuedEvent.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def release_for_retry(db, event: QueuedEvent) -> bool:
    """Return a stuck processing row to pending so it can be claimed again."""
    result = await db.execute(
        update(QueuedEvent)
        .where(and_(QueuedEvent.id == event.id, QueuedEvent.status == STATUS_PROCESSING))
        .values(status=STATUS_PENDING)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def queue_stats(db) -> dict:
    """Row counts per status and the age of the oldest pending row."""
    result = await db.execute(
        select(QueuedEvent.status, func.count(QueuedEvent.id)).group_by(QueuedEvent.status)
    )
    counts = {status: 0 for status in (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)}
    for status, count in result.all():
        counts[status] = count

    oldest_result = await db.execute(
        select(func.min(QueuedEvent.created_at)).where(QueuedEvent.status == STATUS_PENDING)
    )
    oldest = as_utc(oldest_result.scalar())
    oldest_age = (
        int((datetime.now(timezone.utc) - oldest).total_seconds()) if oldest else None
    )

    return {"counts": counts, "oldest_pending_age_seconds": oldest_age}
