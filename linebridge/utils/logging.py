"""
Structured JSON logging with correlation IDs.

Every log line is JSON with: timestamp, level, correlation_id, module, message, extra.
Correlation IDs are generated per-request via middleware and stored in contextvars.
The same ID is used as the request_id of the telemetry run for that request, so
a gateway log line, its queued row and its debug entries all share one key.

Worker runs started by the reaper have no request context; their lines fall
back to the request_id passed in `extra`.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Correlation ID of the request being handled, set by CorrelationIdMiddleware
correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys lifted from `extra=` onto the JSON line; anything else is dropped
EXTRA_FIELDS = (
    "event_id",        # crm_event_queue row
    "event_type",      # ONIMCONNECTORMESSAGEADD, PLACEMENT, ...
    "integration_id",
    "request_id",
    "source",          # who invoked /worker, e.g. crm-events
    "error_code",
)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID in the current context."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Output format:
    {"timestamp": "...", "level": "INFO", "correlation_id": "...", "module": "...", "message": "...", ...}

    Outside a request, correlation_id is the record's request_id if one was given.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id() or getattr(record, "request_id", None),
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        # UUIDs and datetimes from extra= serialize as strings
        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Replace default logging with structured JSON logging.
    Call once at application startup before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    formatter = StructuredJsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # uvicorn installs its own handlers; one JSON stream only
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    # httpx logs every CRM and OAuth call at INFO, with tokens in the query string
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
