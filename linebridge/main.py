"""
LineBridge - CRM connector event pipeline.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from linebridge.config import get_settings
from linebridge.api.router import api_router
from linebridge.api.deps import build_worker_trigger
from linebridge.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("linebridge")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("LineBridge starting up (env=%s)", settings.app_env)

    if not settings.service_role_key:
        logger.warning(
            "SERVICE_ROLE_KEY not set - /worker and /debug will reject every call "
            "and queued events will wait for the reaper."
        )
    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - CRM OAuth tokens will be stored unencrypted. "
            "Generate a Fernet key for production."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    app.state.worker_trigger = build_worker_trigger()

    worker_tasks: list[asyncio.Task] = []

    from linebridge.workers.event_reaper import run_event_reaper
    worker_tasks.append(asyncio.create_task(run_event_reaper()))
    logger.info("Event reaper started")

    yield

    # Let in-flight worker triggers land before the loop goes away
    await app.state.worker_trigger.drain(timeout=5.0)

    logger.info("LineBridge shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from linebridge.database import dispose_engine
    await dispose_engine()
    logger.info("LineBridge shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="LineBridge",
        description="CRM connector event pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
