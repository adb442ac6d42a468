"""
Abstract message dispatcher - the outbound channel senders implement this.
CRITICAL: dispatch never happens on the webhook ack path. Only the event worker calls it.
"""
from abc import ABC, abstractmethod
from typing import Optional


class MessageDispatcher(ABC):
    """Abstract base class for outbound message senders."""

    @abstractmethod
    async def send_message(
        self,
        instance_id: str,
        text: str,
        chat_id: Optional[str] = None,
        crm_user_id: Optional[str] = None,
        attachments: Optional[list[dict]] = None,
    ) -> dict:
        """
        Deliver an operator reply through the messaging instance.
        Returns: {"message_id": str|None, "success": bool, "error": str|None}
        """
        ...
