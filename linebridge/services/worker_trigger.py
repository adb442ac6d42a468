"""
Worker trigger - supervised fire-and-forget hand-off from the gateway to POST /worker.

fire() schedules the HTTP call as a tracked asyncio task and returns at once.
Failures are logged and never reach the gateway; the event simply stays
pending for the worker's fallback scan or the reaper. drain() waits (bounded)
for in-flight triggers at shutdown.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from linebridge.core.exceptions import TriggerDispatchError

logger = logging.getLogger(__name__)

TRIGGER_SOURCE = "crm-events"


class WorkerTrigger:
    """Owns the set of in-flight trigger tasks for one process."""

    def __init__(self, worker_url: str, service_key: str, timeout_seconds: float = 10.0):
        self.worker_url = worker_url
        self.service_key = service_key
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def fire(self, event_id: Optional[str]) -> asyncio.Task:
        """Schedule a trigger without waiting for it."""
        task = asyncio.create_task(self._run(event_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event_id: Optional[str]) -> bool:
        try:
            await self.send(event_id)
            return True
        except TriggerDispatchError as e:
            logger.warning(
                "Worker trigger failed, event stays pending: %s", str(e),
                extra={"event_id": event_id},
            )
            return False

    async def send(self, event_id: Optional[str]) -> None:
        """POST the trigger body. Raises TriggerDispatchError on any failure."""
        body = {
            "event_id": event_id,
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "source": TRIGGER_SOURCE,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.worker_url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.service_key}",
                        "Content-Type": "application/json",
                    },
                )
        except Exception as e:
            raise TriggerDispatchError(f"POST {self.worker_url} failed: {e}") from e

        if response.status_code >= 400:
            raise TriggerDispatchError(f"Worker responded HTTP {response.status_code}")

        logger.debug("Worker triggered", extra={"event_id": event_id})

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight triggers; cancel whatever is still running after timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d worker triggers at shutdown", len(still_running))
