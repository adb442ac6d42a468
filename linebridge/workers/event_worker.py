"""
Event worker - claims one queued CRM event and runs its handler.

Invoked by POST /worker (usually from the gateway's trigger) and by the
reaper. Each invocation builds its own WorkerContext; nothing is shared
between runs. A handler exception marks the row failed with the error text
verbatim; there is no retry inside the worker.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from linebridge.config import Settings, get_settings
from linebridge.core.exceptions import (
    CrmApiError,
    DispatchError,
    HandlerError,
    IntegrationNotFoundError,
    TerminalEventError,
)
from linebridge.integrations.bitrix import BitrixRestClient
from linebridge.integrations.dispatcher_base import MessageDispatcher
from linebridge.integrations.http_dispatcher import HttpMessageDispatcher
from linebridge.models.channel_mapping import ChannelMapping
from linebridge.models.connector_message import ConnectorMessage
from linebridge.models.connector_state import ConnectorState, STATE_VERIFIED
from linebridge.models.integration import Integration
from linebridge.models.queued_event import QueuedEvent
from linebridge.schemas.crm_events import (
    AuthInfo,
    CrmEventEnvelope,
    extract_message_fields,
    parse_placement_options,
)
from linebridge.services.connector_activation import ConnectorActivationManager
from linebridge.services.event_queue import (
    claim_event,
    claim_oldest_pending,
    get_event,
    mark_completed,
    mark_failed,
)
from linebridge.services.telemetry import TelemetryRun
from linebridge.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


class WorkerContext:
    """Everything one worker invocation needs, built fresh per run."""

    def __init__(
        self,
        session_factory,
        telemetry: TelemetryRun,
        token_manager: TokenLifecycleManager,
        connector_manager: ConnectorActivationManager,
        dispatcher: MessageDispatcher,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.telemetry = telemetry
        self.token_manager = token_manager
        self.connector_manager = connector_manager
        self.dispatcher = dispatcher
        self.settings = settings

    @classmethod
    def build(
        cls,
        session_factory,
        request_id: Optional[str] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        settings: Optional[Settings] = None,
        function_name: str = "event-worker",
    ) -> "WorkerContext":
        settings = settings or get_settings()
        telemetry = TelemetryRun(function_name, request_id=request_id)
        token_manager = TokenLifecycleManager(telemetry=telemetry)
        return cls(
            session_factory=session_factory,
            telemetry=telemetry,
            token_manager=token_manager,
            connector_manager=ConnectorActivationManager(token_manager, telemetry=telemetry),
            dispatcher=dispatcher or HttpMessageDispatcher(
                settings.messaging_base_url, settings.service_role_key,
            ),
            settings=settings,
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def run_worker(ctx: WorkerContext, event_id: Optional[str] = None) -> dict:
    """Process one event and flush the run's telemetry. Returns the /worker response body."""
    try:
        result = await process_event(ctx, event_id)
    finally:
        await ctx.telemetry.flush(ctx.session_factory)
    result["timestamp"] = datetime.now(timezone.utc).isoformat()
    return result


async def process_event(ctx: WorkerContext, event_id: Optional[str] = None) -> dict:
    """
    Claim the hinted event, or the oldest pending one when the hint is
    absent or no longer claimable, and run its handler.
    """
    async with ctx.session_factory() as db:
        event = await claim_event(db, event_id) if event_id else None
        if event is None:
            if event_id:
                ctx.telemetry.info(
                    "Hinted event not claimable, scanning for pending",
                    {"event_id": event_id}, category="queue",
                )
            event = await claim_oldest_pending(db)
        await db.commit()

        if event is None:
            return {"processed": 0, "event_id": event_id, "status": None}

        return await _execute(ctx, db, event)


async def _execute(ctx: WorkerContext, db, event: QueuedEvent) -> dict:
    # Rollback expires the instance; keep what the failure path needs
    event_uuid = event.id
    event_type = event.event_type
    event_key = str(event_uuid)
    log_extra = {"event_id": event_key, "event_type": event_type}
    ctx.telemetry.info(
        f"Processing {event_type}",
        {"event_id": event_key, "attempt": event.attempts},
        category="queue",
    )
    start = time.monotonic()

    try:
        outcome = await dispatch(ctx, db, event)
        duration_ms = int((time.monotonic() - start) * 1000)
        try:
            await mark_completed(db, event, duration_ms)
        except TerminalEventError as te:
            # The reaper got there first; keep the handler's writes, not the status
            await db.commit()
            logger.warning("Event finished elsewhere: %s", str(te), extra=log_extra)
            return {"processed": 1, "event_id": event_key, "status": event.status}
        await db.commit()
        logger.info(
            "Event completed in %dms: %s", duration_ms, outcome.get("status", "ok"),
            extra=log_extra,
        )
        ctx.telemetry.log(
            "info", f"Completed {event_type}", outcome,
            category="queue", duration_ms=duration_ms,
        )
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        await db.rollback()
        error = str(e)
        logger.error("Event failed: %s", error, extra=log_extra)
        ctx.telemetry.log(
            "error", f"Failed {event_type}: {error}",
            {"event_id": event_key, "error_type": type(e).__name__},
            category="queue", duration_ms=duration_ms,
        )
        current = await get_event(db, event_uuid)
        try:
            await mark_failed(db, current, error, duration_ms)
            await db.commit()
        except TerminalEventError as te:
            logger.warning("Event finished elsewhere: %s", str(te), extra=log_extra)
        event = current

    return {"processed": 1, "event_id": event_key, "status": event.status}


async def dispatch(ctx: WorkerContext, db, event: QueuedEvent) -> dict:
    """Route the event to its handler. Unknown types complete as skipped."""
    envelope = CrmEventEnvelope.from_payload(event.payload or {})
    handler = HANDLERS.get(event.event_type)
    if handler is None:
        ctx.telemetry.info(
            f"No handler for {event.event_type}, skipped",
            {"event_type": event.event_type}, category="queue",
        )
        return {"status": "skipped", "reason": f"unknown event type: {event.event_type}"}
    return await handler(ctx, db, event, envelope)


# ---------------------------------------------------------------------------
# Shared lookups
# ---------------------------------------------------------------------------

async def resolve_integration(db, auth: AuthInfo) -> Integration:
    """Find the active integration by member_id, then by domain."""
    if auth.member_id:
        result = await db.execute(
            select(Integration)
            .where(Integration.member_id == auth.member_id, Integration.is_active.is_(True))
            .limit(1)
        )
        integration = result.scalar_one_or_none()
        if integration:
            return integration

    if auth.domain:
        result = await db.execute(
            select(Integration)
            .where(Integration.domain == auth.domain, Integration.is_active.is_(True))
            .limit(1)
        )
        integration = result.scalar_one_or_none()
        if integration:
            return integration

    raise IntegrationNotFoundError(
        f"Integration not found for member_id={auth.member_id} domain={auth.domain}"
    )


async def _bind_integration(ctx: WorkerContext, db, envelope: CrmEventEnvelope) -> Integration:
    integration = await resolve_integration(db, envelope.auth)
    ctx.telemetry.bind(integration_id=integration.id, workspace_id=integration.workspace_id)
    return integration


async def resolve_instance(db, integration: Integration, line_id: Optional[str]) -> Optional[str]:
    """Messaging instance for an Open Line; falls back to the integration default."""
    if line_id:
        result = await db.execute(
            select(ChannelMapping.instance_id)
            .where(
                ChannelMapping.integration_id == integration.id,
                ChannelMapping.line_id == str(line_id),
                ChannelMapping.is_active.is_(True),
            )
            .limit(1)
        )
        instance_id = result.scalar_one_or_none()
        if instance_id:
            return instance_id
    return integration.instance_id


async def _valid_token(ctx: WorkerContext, db, integration: Integration) -> Optional[str]:
    """Obtain a token and commit any refresh so a later handler failure cannot roll it back."""
    token = await ctx.token_manager.get_valid_token(db, integration)
    await db.commit()
    return token


def _rest_client(ctx: WorkerContext, integration: Integration, token: Optional[str]) -> BitrixRestClient:
    endpoint = integration.client_endpoint or f"https://{integration.domain}/rest/"
    return BitrixRestClient(endpoint, token, telemetry=ctx.telemetry)


def _record_message(db, integration: Integration, event: QueuedEvent, direction: str, **fields) -> ConnectorMessage:
    message = ConnectorMessage(
        integration_id=integration.id,
        queued_event_id=event.id,
        direction=direction,
        **fields,
    )
    db.add(message)
    return message


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_operator_message(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """ONIMCONNECTORMESSAGEADD: an operator replied in the Open Line; forward it to the customer."""
    fields = extract_message_fields(envelope.data)
    if not fields.text:
        ctx.telemetry.info("Operator message has no text, nothing to send", category="message")
        return {"status": "skipped", "reason": "empty text"}

    integration = await _bind_integration(ctx, db, envelope)
    token = await _valid_token(ctx, db, integration)

    instance_id = await resolve_instance(db, integration, fields.line_id)
    if not instance_id:
        raise HandlerError(f"No messaging instance for line {fields.line_id}")

    result = await ctx.dispatcher.send_message(
        instance_id,
        fields.text,
        chat_id=fields.chat_id,
        crm_user_id=fields.crm_user_id,
    )
    if not result.get("success"):
        raise DispatchError(f"Message dispatch failed: {result.get('error')}")

    provider_message_id = result.get("message_id") or f"lb_{uuid.uuid4().hex[:12]}"
    _record_message(
        db, integration, event, "outbound",
        line_id=fields.line_id,
        chat_id=fields.chat_id,
        crm_user_id=fields.crm_user_id,
        crm_message_id=fields.crm_message_id,
        text=fields.text,
        delivery_status="sent",
        provider_message_id=provider_message_id,
    )
    await db.flush()

    if fields.crm_message_id and fields.line_id and token:
        connector_id = fields.connector_id or integration.connector_id or ctx.settings.bitrix_connector_id
        try:
            await _rest_client(ctx, integration, token).send_delivery_status(
                connector_id,
                fields.line_id,
                [{
                    "im": {"chat_id": fields.chat_id, "message_id": fields.crm_message_id},
                    "message": {"id": [provider_message_id]},
                    "chat": {"id": fields.chat_id},
                }],
            )
        except CrmApiError as e:
            logger.warning("Delivery status report failed: %s", str(e), extra={"event_id": str(event.id)})
            ctx.telemetry.warn("Delivery status report failed", {"error": str(e)}, category="message")

    return {"status": "sent", "instance_id": instance_id, "provider_message_id": provider_message_id}


async def handle_client_message(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """ONIMCONNECTORMESSAGERECEIVE: record the inbound message."""
    fields = extract_message_fields(envelope.data)
    integration = await _bind_integration(ctx, db, envelope)
    await _valid_token(ctx, db, integration)
    _record_message(
        db, integration, event, "inbound",
        line_id=fields.line_id,
        chat_id=fields.chat_id,
        crm_user_id=fields.crm_user_id,
        crm_message_id=fields.crm_message_id,
        text=fields.text,
        delivery_status="received",
    )
    await db.flush()
    return {"status": "recorded"}


async def _handle_dialog(ctx, db, event, envelope, delivery_status: str) -> dict:
    fields = extract_message_fields(envelope.data)
    integration = await _bind_integration(ctx, db, envelope)
    await _valid_token(ctx, db, integration)
    _record_message(
        db, integration, event, "inbound",
        line_id=fields.line_id,
        chat_id=fields.chat_id,
        crm_user_id=fields.crm_user_id,
        delivery_status=delivery_status,
    )
    await db.flush()
    ctx.telemetry.info(f"Dialog {delivery_status}", {"chat_id": fields.chat_id}, category="dialog")
    return {"status": delivery_status, "chat_id": fields.chat_id}


async def handle_dialog_start(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    return await _handle_dialog(ctx, db, event, envelope, "dialog_started")


async def handle_dialog_finish(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    return await _handle_dialog(ctx, db, event, envelope, "dialog_finished")


async def handle_bot_join(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """ONIMBOTJOINOPEN: the bot was added to an Open Line chat."""
    integration = await _bind_integration(ctx, db, envelope)
    await _valid_token(ctx, db, integration)
    params = envelope.data.get("PARAMS") if isinstance(envelope.data.get("PARAMS"), dict) else {}
    chat_id = params.get("CHAT_ID") or params.get("DIALOG_ID")
    _record_message(
        db, integration, event, "inbound",
        chat_id=str(chat_id) if chat_id else None,
        crm_user_id=str(params["USER_ID"]) if params.get("USER_ID") else None,
        delivery_status="bot_joined",
    )
    await db.flush()
    return {"status": "bot_joined", "chat_id": chat_id}


async def handle_status_delete(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """ONIMCONNECTORSTATUSDELETE: the connector was removed from a line in the CRM."""
    integration = await _bind_integration(ctx, db, envelope)
    connector_id = envelope.data.get("CONNECTOR") or integration.connector_id
    line_id = envelope.data.get("LINE")

    query = select(ConnectorState).where(ConnectorState.integration_id == integration.id)
    if connector_id:
        query = query.where(ConnectorState.connector_id == str(connector_id))
    if line_id is not None:
        query = query.where(ConnectorState.line_id == str(line_id))
    result = await db.execute(query)
    states = result.scalars().all()

    now = datetime.now(timezone.utc)
    for state in states:
        state.state = STATE_VERIFIED
        state.active = False
        state.verified = True
        state.verified_at = now
    await db.flush()

    ctx.telemetry.info(
        f"Connector deactivated on {len(states)} line(s)",
        {"connector_id": connector_id, "line_id": line_id}, category="connector",
    )
    return {"status": "deactivated", "lines": len(states)}


async def handle_placement(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """PLACEMENT: admin opened the connector settings; activate and verify the line."""
    options = parse_placement_options(envelope.placement_options)
    integration = await _bind_integration(ctx, db, envelope)
    connector_id = options.connector_id or ctx.settings.bitrix_connector_id

    state = await ctx.connector_manager.activate(
        db,
        integration,
        connector_id,
        options.line_id,
        active=options.active,
        access_token=envelope.auth.access_token,
    )
    return {
        "status": state.state,
        "connector_id": connector_id,
        "line_id": options.line_id,
        "active": state.active,
        "last_error": state.last_error,
    }


async def handle_acknowledged(ctx: WorkerContext, db, event: QueuedEvent, envelope: CrmEventEnvelope) -> dict:
    """Events accepted for audit only."""
    ctx.telemetry.info(f"{event.event_type} acknowledged", category="queue")
    return {"status": "acknowledged"}


HANDLERS = {
    "ONIMCONNECTORMESSAGEADD": handle_operator_message,
    "ONIMCONNECTORMESSAGERECEIVE": handle_client_message,
    "ONIMCONNECTORDIALOGSTART": handle_dialog_start,
    "ONIMCONNECTORDIALOGFINISH": handle_dialog_finish,
    "ONIMBOTJOINOPEN": handle_bot_join,
    "ONIMCONNECTORSTATUSDELETE": handle_status_delete,
    "PLACEMENT": handle_placement,
    "ONAPPTEST": handle_acknowledged,
    "ONIMBOTMESSAGEADD": handle_acknowledged,
    "ONIMBOTMESSAGEDELETE": handle_acknowledged,
    "ONIMBOTMESSAGEUPDATE": handle_acknowledged,
}
