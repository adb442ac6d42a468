"""
Worker endpoint - POST /worker, called by the gateway's trigger with the service credential.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends

from linebridge.api.deps import get_message_dispatcher, require_service_key
from linebridge.database import get_session_factory
from linebridge.schemas.api_responses import WorkerRunResponse, WorkerTriggerRequest
from linebridge.utils.logging import get_correlation_id
from linebridge.workers.event_worker import WorkerContext, run_worker

logger = logging.getLogger(__name__)
router = APIRouter(tags=["worker"], dependencies=[Depends(require_service_key)])


@router.post("/worker", response_model=WorkerRunResponse)
async def run_event_worker(
    body: Optional[WorkerTriggerRequest] = None,
    session_factory=Depends(get_session_factory),
    dispatcher=Depends(get_message_dispatcher),
):
    """Process the hinted event, or the oldest pending one."""
    body = body or WorkerTriggerRequest()
    logger.info(
        "Worker invoked: source=%s", body.source or "unknown",
        extra={"event_id": body.event_id, "source": body.source},
    )
    ctx = WorkerContext.build(
        session_factory,
        request_id=get_correlation_id(),
        dispatcher=dispatcher,
    )
    return await run_worker(ctx, body.event_id)
