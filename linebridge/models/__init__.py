"""
Database models - import all models here so Alembic can discover them.
"""
from linebridge.models.queued_event import QueuedEvent
from linebridge.models.integration import Integration
from linebridge.models.connector_state import ConnectorState
from linebridge.models.channel_mapping import ChannelMapping
from linebridge.models.connector_message import ConnectorMessage
from linebridge.models.debug_log import DebugLogEntry

__all__ = [
    "QueuedEvent",
    "Integration",
    "ConnectorState",
    "ChannelMapping",
    "ConnectorMessage",
    "DebugLogEntry",
]
