"""
Tests for linebridge/services/worker_trigger.py - fire-and-forget POST /worker.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from linebridge.core.exceptions import TriggerDispatchError
from linebridge.services.worker_trigger import WorkerTrigger


def _build_mock_client(status_code: int = 200, post_side_effect=None) -> AsyncMock:
    response = MagicMock()
    response.status_code = status_code
    mock_client = AsyncMock()
    if post_side_effect:
        mock_client.post = AsyncMock(side_effect=post_side_effect)
    else:
        mock_client.post = AsyncMock(return_value=response)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


def _trigger() -> WorkerTrigger:
    return WorkerTrigger("https://app.example/worker", "svc-key", timeout_seconds=10.0)


class TestSend:
    async def test_posts_event_id_with_service_key(self):
        mock_client = _build_mock_client()
        with patch("httpx.AsyncClient", return_value=mock_client) as client_cls:
            await _trigger().send("evt-1")

        assert client_cls.call_args.kwargs["timeout"] == 10.0
        url = mock_client.post.call_args.args[0]
        body = mock_client.post.call_args.kwargs["json"]
        headers = mock_client.post.call_args.kwargs["headers"]
        assert url == "https://app.example/worker"
        assert body["event_id"] == "evt-1"
        assert body["source"] == "crm-events"
        assert body["triggered_at"]
        assert headers["Authorization"] == "Bearer svc-key"

    async def test_http_error_raises(self):
        with patch("httpx.AsyncClient", return_value=_build_mock_client(status_code=503)):
            with pytest.raises(TriggerDispatchError, match="503"):
                await _trigger().send("evt-1")

    async def test_network_error_raises(self):
        mock_client = _build_mock_client(post_side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(TriggerDispatchError, match="refused"):
                await _trigger().send("evt-1")


class TestFire:
    async def test_fire_returns_immediately_and_completes(self):
        mock_client = _build_mock_client()
        trigger = _trigger()
        with patch("httpx.AsyncClient", return_value=mock_client):
            task = trigger.fire("evt-1")
            assert trigger.pending == 1
            assert await task is True

        await asyncio.sleep(0)
        assert trigger.pending == 0

    async def test_failure_is_logged_not_raised(self, caplog):
        mock_client = _build_mock_client(post_side_effect=httpx.ConnectError("refused"))
        trigger = _trigger()
        with patch("httpx.AsyncClient", return_value=mock_client):
            result = await trigger.fire("evt-1")

        assert result is False
        assert "Worker trigger failed" in caplog.text

    async def test_drain_cancels_stragglers(self):
        trigger = _trigger()

        async def _hang(*args, **kwargs):
            await asyncio.sleep(60)

        mock_client = _build_mock_client(post_side_effect=_hang)
        with patch("httpx.AsyncClient", return_value=mock_client):
            task = trigger.fire("evt-1")
            await asyncio.sleep(0)
            await trigger.drain(timeout=0.05)

        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()

    async def test_drain_without_tasks(self):
        await _trigger().drain()
