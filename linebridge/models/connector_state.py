"""
ConnectorState model - outcome of the three-step connector activation.
UNCONFIGURED -> ACTIVATING -> DATA_SET -> VERIFIED. VERIFIED is terminal
whether the CRM reports the line active or not.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from linebridge.database import Base

STATE_UNCONFIGURED = "UNCONFIGURED"
STATE_ACTIVATING = "ACTIVATING"
STATE_DATA_SET = "DATA_SET"
STATE_VERIFIED = "VERIFIED"


class ConnectorState(Base):
    __tablename__ = "connector_states"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, index=True
    )
    connector_id: Mapped[str] = mapped_column(String(100), nullable=False)
    line_id: Mapped[str] = mapped_column(String(20), nullable=False)

    state: Mapped[str] = mapped_column(
        String(20), default=STATE_UNCONFIGURED, nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    configured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "integration_id", "connector_id", "line_id",
            name="uq_connector_states_integration_connector_line",
        ),
    )

    def __repr__(self) -> str:
        return f"<ConnectorState {self.connector_id}:{self.line_id} ({self.state})>"
