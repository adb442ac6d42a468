"""
ConnectorMessage model - messages crossing the connector, both directions.
Outbound rows are operator replies forwarded to the messaging sender;
inbound rows record messages and dialog transitions reported by the CRM.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from linebridge.database import Base


class ConnectorMessage(Base):
    __tablename__ = "connector_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, index=True
    )
    queued_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("crm_event_queue.id"), index=True
    )

    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    line_id: Mapped[Optional[str]] = mapped_column(String(20))
    chat_id: Mapped[Optional[str]] = mapped_column(String(100))
    crm_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    crm_message_id: Mapped[Optional[str]] = mapped_column(String(100))
    text: Mapped[Optional[str]] = mapped_column(Text)

    delivery_status: Mapped[Optional[str]] = mapped_column(
        String(30)
    )  # sent, failed, received, dialog_started, dialog_finished, bot_joined
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<ConnectorMessage {self.direction} ({self.delivery_status})>"
