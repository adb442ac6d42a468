"""
Integration model - one CRM portal connected to a workspace.
Holds the OAuth credential set that the token manager refreshes in place.
Secrets are written through the encrypted_* helpers.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from linebridge.database import Base
from linebridge.utils.encryption import encrypt_value, decrypt_value


class Integration(Base):
    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)

    # Portal identity
    domain: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    member_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    client_endpoint: Mapped[Optional[str]] = mapped_column(String(500))

    # OAuth credential (encrypted at rest)
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_id: Mapped[Optional[str]] = mapped_column(String(255))
    client_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Default messaging instance when no channel mapping matches the line
    instance_id: Mapped[Optional[str]] = mapped_column(String(100))

    # Remembered after the placement flow configured the connector
    connector_id: Mapped[Optional[str]] = mapped_column(String(100))
    line_id: Mapped[Optional[str]] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_integrations_member_active", "member_id", "is_active"),
    )

    @property
    def access_token(self) -> Optional[str]:
        return decrypt_value(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: Optional[str]) -> None:
        self.access_token_encrypted = encrypt_value(value)

    @property
    def refresh_token(self) -> Optional[str]:
        return decrypt_value(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value: Optional[str]) -> None:
        self.refresh_token_encrypted = encrypt_value(value)

    @property
    def client_secret(self) -> Optional[str]:
        return decrypt_value(self.client_secret_encrypted)

    @client_secret.setter
    def client_secret(self, value: Optional[str]) -> None:
        self.client_secret_encrypted = encrypt_value(value)

    def __repr__(self) -> str:
        return f"<Integration {self.domain} ({self.member_id})>"
