"""
Tests for linebridge/integrations/bitrix.py and http_dispatcher.py.
All external HTTP calls are mocked via httpx.AsyncClient.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from linebridge.core.exceptions import CrmApiError
from linebridge.integrations.bitrix import BitrixRestClient
from linebridge.integrations.http_dispatcher import HttpMessageDispatcher
from linebridge.services.telemetry import TelemetryRun


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_mock_response(json_data, status_code: int = 200, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.text = text
    response.content = b"{}" if json_data is not None else b""
    return response


def _build_mock_client(post_response=None, post_side_effect=None) -> AsyncMock:
    mock_client = AsyncMock()
    if post_side_effect:
        mock_client.post = AsyncMock(side_effect=post_side_effect)
    else:
        mock_client.post = AsyncMock(return_value=post_response or _make_mock_response({}))
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


# ===================================================================
# BitrixRestClient
# ===================================================================

class TestBitrixRestClient:
    def _make_client(self, telemetry=None):
        return BitrixRestClient("https://acme.bitrix24.com/rest", "tok-1", telemetry=telemetry)

    def test_endpoint_gets_trailing_slash(self):
        assert self._make_client().client_endpoint == "https://acme.bitrix24.com/rest/"

    async def test_call_posts_auth_and_params(self):
        mock_client = _build_mock_client(_make_mock_response({"result": True}))
        with patch("httpx.AsyncClient", return_value=mock_client):
            result = await self._make_client().call("imconnector.status", {"CONNECTOR": "c", "LINE": "1"})

        assert result == {"result": True}
        url = mock_client.post.call_args.args[0]
        body = mock_client.post.call_args.kwargs["json"]
        assert url == "https://acme.bitrix24.com/rest/imconnector.status"
        assert body == {"auth": "tok-1", "CONNECTOR": "c", "LINE": "1"}

    async def test_error_body_raises(self):
        mock_client = _build_mock_client(_make_mock_response(
            {"error": "CONNECTOR_NOT_FOUND", "error_description": "Connector not found"},
        ))
        with patch("httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(CrmApiError) as exc_info:
                await self._make_client().list_connectors()

        assert exc_info.value.method == "imconnector.list"
        assert exc_info.value.error_code == "CONNECTOR_NOT_FOUND"
        assert "Connector not found" in str(exc_info.value)

    async def test_http_error_raises(self):
        mock_client = _build_mock_client(_make_mock_response({}, status_code=500))
        with patch("httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(CrmApiError) as exc_info:
                await self._make_client().connector_status("c", "1")
        assert exc_info.value.status_code == 500

    async def test_network_failure_raises(self):
        mock_client = _build_mock_client(post_side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(CrmApiError, match="request failed"):
                await self._make_client().activate_connector("c", "1")

    async def test_activate_sends_active_flag(self):
        mock_client = _build_mock_client(_make_mock_response({"result": True}))
        with patch("httpx.AsyncClient", return_value=mock_client):
            await self._make_client().activate_connector("c", "3", active=False)

        body = mock_client.post.call_args.kwargs["json"]
        assert body["ACTIVE"] == 0
        assert body["LINE"] == "3"

    async def test_delivery_status_payload(self):
        mock_client = _build_mock_client(_make_mock_response({"result": True}))
        messages = [{"im": {"chat_id": "5", "message_id": "77"}, "message": {"id": ["wamid.1"]}, "chat": {"id": "5"}}]
        with patch("httpx.AsyncClient", return_value=mock_client):
            await self._make_client().send_delivery_status("c", "1", messages)

        url = mock_client.post.call_args.args[0]
        body = mock_client.post.call_args.kwargs["json"]
        assert url.endswith("imconnector.send.status.delivery")
        assert body["MESSAGES"] == messages

    async def test_telemetry_records_call_and_response(self):
        telemetry = TelemetryRun("test")
        mock_client = _build_mock_client(_make_mock_response({"result": True}))
        with patch("httpx.AsyncClient", return_value=mock_client):
            await self._make_client(telemetry=telemetry).list_connectors()

        assert [e["level"] for e in telemetry.entries] == ["api_call", "api_response"]
        assert telemetry.entries[1]["http_status"] == 200


# ===================================================================
# HttpMessageDispatcher
# ===================================================================

class TestHttpMessageDispatcher:
    def _make_dispatcher(self):
        return HttpMessageDispatcher("https://messaging.example/", "svc-key")

    async def test_success_returns_message_id(self):
        mock_client = _build_mock_client(_make_mock_response({"message_id": "wamid.ABC"}))
        with patch("httpx.AsyncClient", return_value=mock_client):
            result = await self._make_dispatcher().send_message("wa-1", "hello", chat_id="9")

        assert result == {"message_id": "wamid.ABC", "success": True, "error": None}
        url = mock_client.post.call_args.args[0]
        headers = mock_client.post.call_args.kwargs["headers"]
        body = mock_client.post.call_args.kwargs["json"]
        assert url == "https://messaging.example/send-message"
        assert headers["Authorization"] == "Bearer svc-key"
        assert body["instance_id"] == "wa-1"
        assert body["attachments"] == []

    async def test_rejection_returns_failure(self):
        mock_client = _build_mock_client(_make_mock_response({}, status_code=422, text="bad number"))
        with patch("httpx.AsyncClient", return_value=mock_client):
            result = await self._make_dispatcher().send_message("wa-1", "hello")

        assert result["success"] is False
        assert "422" in result["error"]

    async def test_exception_never_raises(self):
        mock_client = _build_mock_client(post_side_effect=httpx.ReadTimeout("timed out"))
        with patch("httpx.AsyncClient", return_value=mock_client):
            result = await self._make_dispatcher().send_message("wa-1", "hello")

        assert result == {"message_id": None, "success": False, "error": "timed out"}
