"""
Event reaper - recovers queued events whose worker trigger was lost or whose worker died.
Runs every REAPER_INTERVAL_SECONDS (default 5 minutes).

Actions:
- pending longer than the stale threshold -> run through the worker
- processing longer than the threshold, attempts left -> back to pending, run again
- processing longer than the threshold, attempts exhausted -> failed (dead-letter)

Each cycle also prunes debug telemetry past its retention window.
"""
import asyncio
import logging

from linebridge.config import get_settings
from linebridge.models.queued_event import STATUS_PROCESSING
from linebridge.services.event_queue import find_stale_events, mark_failed, release_for_retry
from linebridge.services.telemetry import prune_logs
from linebridge.utils.redis import write_heartbeat
from linebridge.workers.event_worker import WorkerContext, run_worker

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_CYCLE = 50


async def run_event_reaper(session_factory=None):
    """Main reaper loop. Runs until cancelled at shutdown."""
    settings = get_settings()
    logger.info("Event reaper started (interval %ds)", settings.reaper_interval_seconds)

    while True:
        try:
            recovered = await sweep_stale_events(session_factory)
            if recovered > 0:
                logger.info("Event reaper recovered %d stale events", recovered)
            await prune_expired_telemetry(session_factory)
        except Exception as e:
            logger.error("Event reaper error: %s", str(e), exc_info=True)

        await write_heartbeat("event_reaper", ttl_seconds=settings.reaper_interval_seconds * 2)
        await asyncio.sleep(settings.reaper_interval_seconds)


def _resolve_factory(session_factory):
    if session_factory is not None:
        return session_factory
    from linebridge.database import get_session_factory
    return get_session_factory()


async def sweep_stale_events(session_factory=None) -> int:
    """Find stale events and resubmit or dead-letter them. Returns count handled."""
    session_factory = _resolve_factory(session_factory)
    to_run: list[str] = []
    exhausted = 0

    async with session_factory() as db:
        stale = await find_stale_events(db, limit=MAX_EVENTS_PER_CYCLE)
        for event in stale:
            event_id = str(event.id)
            if event.status == STATUS_PROCESSING:
                if event.attempts >= event.max_attempts:
                    await mark_failed(
                        db, event,
                        f"Exhausted after {event.attempts} attempts: worker did not finish",
                    )
                    exhausted += 1
                    logger.warning("Event dead-lettered", extra={"event_id": event_id})
                    continue
                if not await release_for_retry(db, event):
                    continue
            to_run.append(event_id)
        await db.commit()

    for event_id in to_run:
        ctx = WorkerContext.build(session_factory, function_name="event-reaper")
        try:
            await run_worker(ctx, event_id)
        except Exception as e:
            logger.error("Reaper resubmission failed: %s", str(e), extra={"event_id": event_id})

    return len(to_run) + exhausted


async def prune_expired_telemetry(session_factory=None) -> int:
    session_factory = _resolve_factory(session_factory)
    async with session_factory() as db:
        deleted = await prune_logs(db, hours=get_settings().telemetry_retention_hours)
        await db.commit()
    return deleted
