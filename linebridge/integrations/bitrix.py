"""
Bitrix24 REST client for the imconnector.* methods.
Every call is POST {client_endpoint}{method} with a JSON body carrying auth=<access_token>.
The caller obtains the token through the token manager; this client never refreshes.
"""
import logging
from typing import Optional
import httpx
from linebridge.core.exceptions import CrmApiError

logger = logging.getLogger(__name__)

CRM_REST_TIMEOUT_SECONDS = 30.0


class BitrixRestClient:
    """Thin async wrapper over one portal's REST endpoint."""

    def __init__(self, client_endpoint: str, access_token: Optional[str], telemetry=None):
        self.client_endpoint = client_endpoint if client_endpoint.endswith("/") else f"{client_endpoint}/"
        self.access_token = access_token
        self.telemetry = telemetry

    async def call(self, method: str, params: Optional[dict] = None) -> dict:
        """
        Call a REST method and return the decoded body.
        Raises CrmApiError on non-2xx, network failure or an error body.
        """
        body = {"auth": self.access_token, **(params or {})}
        url = f"{self.client_endpoint}{method}"

        if self.telemetry:
            self.telemetry.api_call(method, "POST", url, {"params": params or {}})

        try:
            async with httpx.AsyncClient(timeout=CRM_REST_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=body)
        except Exception as e:
            logger.warning("Bitrix %s request failed: %s", method, str(e))
            raise CrmApiError(method, f"request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text[:500]}
        if not isinstance(data, dict):
            data = {"result": data}

        if self.telemetry:
            self.telemetry.api_response(method, response.status_code, data)

        if response.status_code >= 400 or data.get("error"):
            error_code = data.get("error")
            message = data.get("error_description") or error_code or f"HTTP {response.status_code}"
            logger.warning(
                "Bitrix %s returned error: status=%d error=%s",
                method, response.status_code, error_code,
                extra={"error_code": error_code},
            )
            raise CrmApiError(method, message, status_code=response.status_code, error_code=error_code)

        return data

    async def activate_connector(self, connector_id: str, line_id: str, active: bool = True) -> dict:
        return await self.call("imconnector.activate", {
            "CONNECTOR": connector_id,
            "LINE": line_id,
            "ACTIVE": 1 if active else 0,
        })

    async def set_connector_data(self, connector_id: str, line_id: str, data: dict) -> dict:
        return await self.call("imconnector.connector.data.set", {
            "CONNECTOR": connector_id,
            "LINE": line_id,
            "DATA": data,
        })

    async def connector_status(self, connector_id: str, line_id: str) -> dict:
        return await self.call("imconnector.status", {
            "CONNECTOR": connector_id,
            "LINE": line_id,
        })

    async def list_connectors(self) -> dict:
        return await self.call("imconnector.list")

    async def send_delivery_status(
        self, connector_id: str, line_id: str, messages: list[dict],
    ) -> dict:
        """Report delivered operator messages back to the Open Line."""
        return await self.call("imconnector.send.status.delivery", {
            "CONNECTOR": connector_id,
            "LINE": line_id,
            "MESSAGES": messages,
        })
