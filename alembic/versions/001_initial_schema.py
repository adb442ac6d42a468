"""Initial schema - event queue, integrations, connector state and telemetry.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Integrations (CRM portals and their OAuth credentials)
    op.create_table(
        "integrations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True)),
        sa.Column("domain", sa.String(255)),
        sa.Column("member_id", sa.String(64)),
        sa.Column("client_endpoint", sa.String(500)),
        sa.Column("access_token_encrypted", sa.Text),
        sa.Column("refresh_token_encrypted", sa.Text),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("client_id", sa.String(255)),
        sa.Column("client_secret_encrypted", sa.Text),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("instance_id", sa.String(100)),
        sa.Column("connector_id", sa.String(100)),
        sa.Column("line_id", sa.String(20)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_integrations_workspace_id", "integrations", ["workspace_id"])
    op.create_index("ix_integrations_domain", "integrations", ["domain"])
    op.create_index("ix_integrations_member_id", "integrations", ["member_id"])
    op.create_index("ix_integrations_member_active", "integrations", ["member_id", "is_active"])

    # Event queue
    op.create_table(
        "crm_event_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("request_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("error", sa.Text),
    )
    op.create_index("ix_crm_event_queue_status_created", "crm_event_queue", ["status", "created_at"])

    # Connector activation state
    op.create_table(
        "connector_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("integration_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("connector_id", sa.String(100), nullable=False),
        sa.Column("line_id", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="UNCONFIGURED"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text),
        sa.Column("configured_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint(
            "integration_id", "connector_id", "line_id",
            name="uq_connector_states_integration_connector_line",
        ),
    )
    op.create_index("ix_connector_states_integration_id", "connector_states", ["integration_id"])

    # Open Line -> messaging instance routing
    op.create_table(
        "channel_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("integration_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True)),
        sa.Column("instance_id", sa.String(100), nullable=False),
        sa.Column("line_id", sa.String(20), nullable=False),
        sa.Column("line_name", sa.String(255)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_channel_mappings_workspace_id", "channel_mappings", ["workspace_id"])
    op.create_index("ix_channel_mappings_integration_line", "channel_mappings", ["integration_id", "line_id"])

    # Messages crossing the connector
    op.create_table(
        "connector_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("integration_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("queued_event_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crm_event_queue.id")),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("line_id", sa.String(20)),
        sa.Column("chat_id", sa.String(100)),
        sa.Column("crm_user_id", sa.String(100)),
        sa.Column("crm_message_id", sa.String(100)),
        sa.Column("text", sa.Text),
        sa.Column("delivery_status", sa.String(30)),
        sa.Column("provider_message_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_connector_messages_integration_id", "connector_messages", ["integration_id"])
    op.create_index("ix_connector_messages_queued_event_id", "connector_messages", ["queued_event_id"])

    # Debug telemetry
    op.create_table(
        "crm_debug_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("function_name", sa.String(100), nullable=False),
        sa.Column("integration_id", postgresql.UUID(as_uuid=True)),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True)),
        sa.Column("level", sa.String(20), nullable=False),
        sa.Column("category", sa.String(50)),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("details", postgresql.JSONB),
        sa.Column("request_id", sa.String(64)),
        sa.Column("http_method", sa.String(10)),
        sa.Column("http_path", sa.String(255)),
        sa.Column("http_status", sa.Integer),
        sa.Column("duration_ms", sa.Integer),
    )
    op.create_index("ix_crm_debug_logs_function_name", "crm_debug_logs", ["function_name"])
    op.create_index("ix_crm_debug_logs_integration_id", "crm_debug_logs", ["integration_id"])
    op.create_index("ix_crm_debug_logs_workspace_id", "crm_debug_logs", ["workspace_id"])
    op.create_index("ix_crm_debug_logs_request_id", "crm_debug_logs", ["request_id"])
    op.create_index("ix_crm_debug_logs_level_timestamp", "crm_debug_logs", ["level", "timestamp"])


def downgrade() -> None:
    op.drop_table("crm_debug_logs")
    op.drop_table("connector_messages")
    op.drop_table("channel_mappings")
    op.drop_table("connector_states")
    op.drop_table("crm_event_queue")
    op.drop_table("integrations")
