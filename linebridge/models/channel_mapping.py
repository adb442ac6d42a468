"""
ChannelMapping model - routes a CRM Open Line to the messaging instance serving it.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from linebridge.database import Base


class ChannelMapping(Base):
    __tablename__ = "channel_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    instance_id = Column(String(100), nullable=False)
    line_id = Column(String(20), nullable=False)
    line_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_channel_mappings_integration_line", "integration_id", "line_id"),
    )
