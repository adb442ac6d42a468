"""
CRM webhook gateway - POST /events.

The CRM treats anything other than a fast 200 "successfully" as a failed
delivery and redelivers aggressively, so this endpoint acknowledges every
request that carries an event type, whatever happens inside:

1. Normalize the body (form / JSON / other) to one map
2. Parse the typed envelope and classify
3. Enqueue a pending row
4. Fire the worker trigger without waiting
5. Ack

Enqueue and trigger failures are logged and recorded in the request's
telemetry, never returned. That includes failing to build the session
factory or the trigger at all. Telemetry is flushed after the response is sent.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.background import BackgroundTask

from linebridge.api.deps import intake_session_factory, intake_worker_trigger
from linebridge.core.exceptions import EnqueueError
from linebridge.schemas.crm_events import CrmEventEnvelope, normalize_body
from linebridge.services.event_queue import enqueue_event
from linebridge.services.telemetry import TelemetryRun
from linebridge.services.worker_trigger import WorkerTrigger
from linebridge.utils.logging import get_correlation_id, generate_correlation_id

logger = logging.getLogger(__name__)
router = APIRouter(tags=["crm-events"])

ACK_BODY = "successfully"
FUNCTION_NAME = "crm-events"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-correlation-id",
}


def _ack() -> Response:
    return PlainTextResponse(ACK_BODY, headers=CORS_HEADERS)


def _health(message: str) -> Response:
    return JSONResponse(
        {
            "status": "ok",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers=CORS_HEADERS,
    )


def _with_flush(response: Response, telemetry: TelemetryRun, session_factory) -> Response:
    if telemetry.entries and session_factory is not None:
        response.background = BackgroundTask(telemetry.flush, session_factory)
    return response


@router.options("/events")
async def events_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.get("/events")
async def events_health():
    return _health("CRM events endpoint is running")


@router.post("/events")
async def receive_event(
    request: Request,
    session_factory=Depends(intake_session_factory),
    trigger: Optional[WorkerTrigger] = Depends(intake_worker_trigger),
):
    """Acknowledge a CRM event and hand it to the queue."""
    request_id = get_correlation_id() or generate_correlation_id()
    telemetry = TelemetryRun(FUNCTION_NAME, request_id=request_id)

    try:
        raw = await request.body()
        payload = normalize_body(request.headers.get("content-type"), raw)
        envelope = CrmEventEnvelope.from_payload(payload)
        event_type = envelope.queue_event_type

        if not event_type:
            telemetry.info(
                "Request without event type",
                {"keys": sorted(payload)[:20], "content_type": request.headers.get("content-type")},
                category="intake",
            )
            return _with_flush(_health("No event in request, nothing queued"), telemetry, session_factory)

        if envelope.is_placement:
            classification = "placement"
        elif envelope.is_known_event:
            classification = "known"
        else:
            classification = "unrecognized"
            logger.warning("Unrecognized CRM event type queued: %s", event_type, extra={"event_type": event_type})

        telemetry.info(
            f"Received {event_type}",
            {
                "classification": classification,
                "domain": envelope.auth.domain,
                "member_id": envelope.auth.member_id,
            },
            category="intake",
        )

        if session_factory is None:
            logger.error("No database for intake, acking anyway", extra={"event_type": event_type})
            return _ack()

        try:
            event_id = await enqueue_event(session_factory, event_type, payload, request_id)
        except EnqueueError as e:
            logger.error("Enqueue failed, acking anyway: %s", str(e), extra={"event_type": event_type})
            telemetry.error("Enqueue failed", {"error": str(e)}, category="intake")
            return _with_flush(_ack(), telemetry, session_factory)

        if trigger is None:
            telemetry.error("Worker trigger unavailable", {"event_id": event_id}, category="intake")
        else:
            trigger.fire(event_id)
            telemetry.debug("Worker trigger scheduled", {"event_id": event_id}, category="intake")
        return _with_flush(_ack(), telemetry, session_factory)

    except Exception as e:
        logger.error("CRM event intake error, acking anyway: %s", str(e), exc_info=True)
        telemetry.error("Intake error", {"error": str(e)}, category="intake")
        return _with_flush(_ack(), telemetry, session_factory)
