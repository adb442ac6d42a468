"""
CRM webhook schemas - every inbound request is normalized to one map,
then parsed into a CrmEventEnvelope before anything else reads it.

One normalizer per body encoding:
    form  -> bracket-nested form parser
    json  -> json.loads, non-object bodies wrapped as {"raw": ...}
    other -> JSON first, then form
"""
import json
import logging
from typing import Any, Optional
from urllib.parse import unquote
from pydantic import BaseModel, Field, field_validator
from linebridge.core.exceptions import IntakeParseError
from linebridge.utils.form_parsing import parse_bracket_form

logger = logging.getLogger(__name__)

PLACEMENT_EVENT_TYPE = "PLACEMENT"

ASYNC_EVENT_TYPES = frozenset({
    "ONIMCONNECTORMESSAGEADD",
    "ONIMCONNECTORMESSAGERECEIVE",
    "ONIMCONNECTORDIALOGSTART",
    "ONIMCONNECTORDIALOGFINISH",
    "ONIMCONNECTORSTATUSDELETE",
    "ONIMBOTMESSAGEADD",
    "ONIMBOTJOINOPEN",
    "ONIMBOTMESSAGEDELETE",
    "ONIMBOTMESSAGEUPDATE",
    "ONAPPTEST",
})


# ---------------------------------------------------------------------------
# Body normalizers
# ---------------------------------------------------------------------------

def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise IntakeParseError(f"Body is not UTF-8: {e}") from e


def normalize_form(text: str) -> dict:
    try:
        return parse_bracket_form(text)
    except Exception as e:
        raise IntakeParseError(f"Form body could not be parsed: {e}") from e


def normalize_json(text: str) -> dict:
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"raw": text}
    if isinstance(parsed, dict):
        return parsed
    return {"raw": parsed}


def normalize_text(text: str) -> dict:
    """Unknown content type: JSON object first, then bracket form."""
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass
    return normalize_form(text)


def normalize_body(content_type: Optional[str], raw: bytes) -> dict:
    """
    Normalize a webhook body to a plain map.
    Never raises: anything unparsable degrades to an empty map.
    """
    media_type = (content_type or "").split(";")[0].strip().lower()
    try:
        text = _decode(raw)
        if media_type == "application/x-www-form-urlencoded":
            return normalize_form(text)
        if media_type == "application/json":
            return normalize_json(text)
        return normalize_text(text)
    except IntakeParseError as e:
        logger.warning("Webhook body discarded: %s", str(e))
        return {}


# ---------------------------------------------------------------------------
# Typed envelope
# ---------------------------------------------------------------------------

class AuthInfo(BaseModel):
    """auth[...] block the CRM attaches to every event."""
    domain: Optional[str] = None
    member_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    application_token: Optional[str] = None
    client_endpoint: Optional[str] = None
    expires_in: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value)


class CrmEventEnvelope(BaseModel):
    """Typed view of one normalized webhook request."""
    event: Optional[str] = None
    event_handler_id: Optional[str] = None
    ts: Optional[str] = None
    auth: AuthInfo = Field(default_factory=AuthInfo)
    data: dict = Field(default_factory=dict)
    placement: Optional[str] = None
    placement_options: Any = None

    @field_validator("event", mode="before")
    @classmethod
    def _upper_event(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        value = str(value).strip().upper()
        return value or None

    @field_validator("event_handler_id", "ts", "placement", mode="before")
    @classmethod
    def _scalar(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value)

    @field_validator("auth", mode="before")
    @classmethod
    def _auth_map(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {}

    @field_validator("data", mode="before")
    @classmethod
    def _data_map(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {}

    @classmethod
    def from_payload(cls, payload: dict) -> "CrmEventEnvelope":
        """Build the envelope from a normalized map, tolerating any shape."""
        return cls(
            event=payload.get("event"),
            event_handler_id=payload.get("event_handler_id"),
            ts=payload.get("ts"),
            auth=payload.get("auth"),
            data=payload.get("data"),
            placement=payload.get("PLACEMENT"),
            placement_options=payload.get("PLACEMENT_OPTIONS"),
        )

    @property
    def is_placement(self) -> bool:
        return bool(self.placement) or self.placement_options is not None

    @property
    def queue_event_type(self) -> Optional[str]:
        """Event type stored on the queued row, or None for health checks."""
        if self.is_placement:
            return PLACEMENT_EVENT_TYPE
        return self.event

    @property
    def is_known_event(self) -> bool:
        return self.event in ASYNC_EVENT_TYPES


# ---------------------------------------------------------------------------
# Placement options
# ---------------------------------------------------------------------------

class PlacementOptions(BaseModel):
    """Connector settings the CRM passes when an admin opens the connector slider."""
    line_id: str = "1"
    active: bool = True
    connector_id: Optional[str] = None


def _options_map(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    for candidate in (raw, unquote(raw)):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return {}


def parse_placement_options(raw: Any) -> PlacementOptions:
    """
    Accepts a JSON string, a URL-encoded JSON string, or an already-decoded map.
    LINE defaults to 1, ACTIVE_STATUS to 1.
    """
    options = _options_map(raw)
    line = options.get("LINE")
    active_status = options.get("ACTIVE_STATUS", 1)
    connector = options.get("CONNECTOR")
    return PlacementOptions(
        line_id=str(line) if line not in (None, "") else "1",
        active=str(active_status).strip() not in ("0", "N", "false", ""),
        connector_id=str(connector) if connector else None,
    )


# ---------------------------------------------------------------------------
# Connector message fields
# ---------------------------------------------------------------------------

class ConnectorMessageFields(BaseModel):
    """The first entry of data[MESSAGES] flattened to the fields handlers need."""
    line_id: Optional[str] = None
    connector_id: Optional[str] = None
    crm_user_id: Optional[str] = None
    chat_id: Optional[str] = None
    crm_message_id: Optional[str] = None
    text: str = ""


def _nested(entry: dict, *path: str) -> Optional[str]:
    current: Any = entry
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    if current is None or isinstance(current, (dict, list)):
        return None
    return str(current)


def extract_message_fields(data: dict) -> ConnectorMessageFields:
    """Pull recipient, chat, line and text out of an imconnector event."""
    messages = data.get("MESSAGES") or data.get("DATA")
    first = messages[0] if isinstance(messages, list) and messages else data
    if not isinstance(first, dict):
        first = {}

    return ConnectorMessageFields(
        line_id=_nested(first, "line") or _nested(data, "LINE"),
        connector_id=_nested(data, "CONNECTOR"),
        crm_user_id=_nested(first, "user", "id") or _nested(first, "im", "user_id"),
        chat_id=_nested(first, "chat", "id") or _nested(first, "im", "chat_id"),
        crm_message_id=_nested(first, "message", "id") or _nested(first, "im", "message_id"),
        text=_nested(first, "message", "text") or _nested(first, "text") or "",
    )
