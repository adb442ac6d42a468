"""
DebugLogEntry model - append-only telemetry written in batches per request or worker run.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from linebridge.database import Base

LOG_LEVELS = ("debug", "info", "warn", "error", "api_call", "api_response")


class DebugLogEntry(Base):
    __tablename__ = "crm_debug_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    function_name = Column(String(100), nullable=False, index=True)
    integration_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    workspace_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    level = Column(String(20), nullable=False)
    category = Column(String(50), nullable=True)
    message = Column(Text, nullable=False)
    details = Column(JSONB, nullable=True)
    request_id = Column(String(64), nullable=True, index=True)
    http_method = Column(String(10), nullable=True)
    http_path = Column(String(255), nullable=True)
    http_status = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_crm_debug_logs_level_timestamp", "level", "timestamp"),
    )
