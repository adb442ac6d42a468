"""
Shared FastAPI dependencies - service-credential auth and per-process collaborators.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from linebridge.config import get_settings
from linebridge.database import get_session_factory
from linebridge.integrations.dispatcher_base import MessageDispatcher
from linebridge.services.worker_trigger import WorkerTrigger

logger = logging.getLogger(__name__)


async def require_service_key(authorization: Optional[str] = Header(default=None)) -> None:
    """Authorization: Bearer <SERVICE_ROLE_KEY>, compared in constant time."""
    expected = get_settings().service_role_key
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    if not expected or not token or not hmac.compare_digest(token, expected):
        logger.warning("Rejected internal call without valid service credential")
        raise HTTPException(status_code=401, detail="Unauthorized")


def build_worker_trigger() -> WorkerTrigger:
    settings = get_settings()
    return WorkerTrigger(
        settings.resolved_worker_url,
        settings.service_role_key,
        timeout_seconds=settings.worker_trigger_timeout_seconds,
    )


def get_worker_trigger(request: Request) -> WorkerTrigger:
    """The app-wide trigger created in lifespan; created on first use otherwise."""
    trigger = getattr(request.app.state, "worker_trigger", None)
    if trigger is None:
        trigger = build_worker_trigger()
        request.app.state.worker_trigger = trigger
    return trigger


def get_message_dispatcher() -> Optional[MessageDispatcher]:
    """None lets WorkerContext build the HTTP dispatcher from settings."""
    return None


def intake_session_factory():
    """Session factory for the webhook gateway, or None if the database layer can't be built."""
    try:
        return get_session_factory()
    except Exception as e:
        logger.error("Session factory unavailable for intake: %s", str(e), exc_info=True)
        return None


def intake_worker_trigger(request: Request) -> Optional[WorkerTrigger]:
    """Worker trigger for the webhook gateway, or None if it can't be built."""
    try:
        return get_worker_trigger(request)
    except Exception as e:
        logger.error("Worker trigger unavailable for intake: %s", str(e), exc_info=True)
        return None
