"""
HTTP message dispatcher - forwards operator replies to the messaging service.
POST {messaging_base_url}/send-message authenticated with the service credential.
"""
import logging
from typing import Optional
import httpx
from linebridge.integrations.dispatcher_base import MessageDispatcher

logger = logging.getLogger(__name__)

DISPATCH_TIMEOUT_SECONDS = 60.0


class HttpMessageDispatcher(MessageDispatcher):
    """Messaging service reached over HTTP."""

    def __init__(self, base_url: str, service_key: str):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key

    async def send_message(
        self,
        instance_id: str,
        text: str,
        chat_id: Optional[str] = None,
        crm_user_id: Optional[str] = None,
        attachments: Optional[list[dict]] = None,
    ) -> dict:
        """Send one message. Never raises; failures come back in the result dict."""
        payload = {
            "instance_id": instance_id,
            "text": text,
            "chat_id": chat_id,
            "crm_user_id": crm_user_id,
            "attachments": attachments or [],
        }
        try:
            async with httpx.AsyncClient(timeout=DISPATCH_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    f"{self.base_url}/send-message",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.service_key}",
                        "Content-Type": "application/json",
                    },
                )
            if response.status_code >= 400:
                logger.warning(
                    "Message dispatch rejected: instance=%s status=%d",
                    instance_id, response.status_code,
                )
                return {
                    "message_id": None,
                    "success": False,
                    "error": f"HTTP {response.status_code}: {response.text[:200]}",
                }
            data = response.json() if response.content else {}
            message_id = data.get("message_id") or data.get("id")
            return {
                "message_id": str(message_id) if message_id else None,
                "success": True,
                "error": None,
            }
        except Exception as e:
            logger.error("Message dispatch failed: instance=%s error=%s", instance_id, str(e))
            return {"message_id": None, "success": False, "error": str(e)}
