"""
Request/response schemas for the internal worker and debug endpoints.
"""
import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 100


class WorkerTriggerRequest(BaseModel):
    event_id: Optional[str] = None
    triggered_at: Optional[str] = None
    source: Optional[str] = None


class WorkerRunResponse(BaseModel):
    processed: int
    event_id: Optional[str] = None
    status: Optional[str] = None
    timestamp: str


class DebugLogFilters(BaseModel):
    function_name: Optional[str] = None
    level: Optional[str] = None
    category: Optional[str] = None
    request_id: Optional[str] = None
    integration_id: Optional[uuid.UUID] = None
    workspace_id: Optional[uuid.UUID] = None
    from_timestamp: Optional[datetime] = None
    to_timestamp: Optional[datetime] = None
    limit: int = Field(default=DEFAULT_PAGE_SIZE, ge=0)
    offset: int = Field(default=0, ge=0)

    @property
    def page_size(self) -> int:
        return min(self.limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)


class DebugLogInput(BaseModel):
    """One entry written by another service through the log / log_batch actions."""
    function_name: str
    level: str = "info"
    message: str
    category: Optional[str] = None
    details: Optional[dict] = None
    request_id: Optional[str] = None
    integration_id: Optional[uuid.UUID] = None
    workspace_id: Optional[uuid.UUID] = None
    http_method: Optional[str] = None
    http_path: Optional[str] = None
    http_status: Optional[int] = None
    duration_ms: Optional[int] = None


class DebugRequest(BaseModel):
    action: str
    filters: DebugLogFilters = Field(default_factory=DebugLogFilters)
    hours: Optional[int] = Field(default=None, ge=0)
    workspace_id: Optional[uuid.UUID] = None
    entries: Optional[list[DebugLogInput]] = None

