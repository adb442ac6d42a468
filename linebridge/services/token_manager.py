"""
OAuth token lifecycle for CRM integrations.

get_valid_token() returns the stored access token while it is outside the
refresh buffer. Inside the buffer (or with no known expiry) it makes exactly
one refresh attempt; any failure falls back to the last-known token.
Concurrent refreshes are not serialized - the last write wins.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from linebridge.config import get_settings
from linebridge.core.exceptions import TokenRefreshError
from linebridge.models.integration import Integration
from linebridge.utils.dates import as_utc

logger = logging.getLogger(__name__)

TOKEN_REFRESH_TIMEOUT_SECONDS = 10.0


class TokenLifecycleManager:
    """Keeps an integration's access token usable."""

    def __init__(
        self,
        oauth_url: Optional[str] = None,
        refresh_buffer_seconds: Optional[int] = None,
        default_ttl_seconds: Optional[int] = None,
        telemetry=None,
    ):
        settings = get_settings()
        self.oauth_url = oauth_url or settings.bitrix_oauth_url
        self.refresh_buffer = timedelta(
            seconds=refresh_buffer_seconds
            if refresh_buffer_seconds is not None
            else settings.token_refresh_buffer_seconds
        )
        self.default_ttl_seconds = (
            default_ttl_seconds if default_ttl_seconds is not None
            else settings.token_default_ttl_seconds
        )
        self.telemetry = telemetry

    def needs_refresh(self, integration: Integration, now: Optional[datetime] = None) -> bool:
        expires_at = as_utc(integration.token_expires_at)
        if expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return expires_at - now <= self.refresh_buffer

    async def get_valid_token(self, db, integration: Integration) -> Optional[str]:
        """
        Return a usable access token, refreshing once if it is about to expire.
        Never raises; a failed refresh returns the stored token unchanged.
        """
        current = integration.access_token
        if not current:
            return None

        if not self.needs_refresh(integration):
            return current

        try:
            return await self._refresh(db, integration)
        except TokenRefreshError as e:
            logger.warning(
                "Token refresh failed, using stored token: %s", str(e),
                extra={"integration_id": str(integration.id)},
            )
            if self.telemetry:
                self.telemetry.warn(
                    "Token refresh failed, using stored token",
                    {"error": str(e)}, category="token",
                )
            return current

    async def _refresh(self, db, integration: Integration) -> str:
        refresh_token = integration.refresh_token
        client_id = integration.client_id or get_settings().bitrix_client_id
        client_secret = integration.client_secret or get_settings().bitrix_client_secret
        if not (refresh_token and client_id and client_secret):
            raise TokenRefreshError("Missing refresh credentials")

        params = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }

        if self.telemetry:
            self.telemetry.api_call("oauth.refresh", "GET", self.oauth_url)

        try:
            async with httpx.AsyncClient(timeout=TOKEN_REFRESH_TIMEOUT_SECONDS) as client:
                response = await client.get(self.oauth_url, params=params)
        except Exception as e:
            raise TokenRefreshError(f"Refresh request failed: {e}") from e

        if self.telemetry:
            self.telemetry.api_response("oauth.refresh", response.status_code)

        if response.status_code >= 400:
            raise TokenRefreshError(f"Refresh returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshError("Refresh response is not JSON") from e

        if not isinstance(data, dict) or data.get("error") or not data.get("access_token"):
            error = data.get("error_description") or data.get("error") if isinstance(data, dict) else None
            raise TokenRefreshError(f"Refresh rejected: {error or 'no access_token'}")

        try:
            expires_in = int(data.get("expires_in") or self.default_ttl_seconds)
        except (TypeError, ValueError):
            expires_in = self.default_ttl_seconds

        integration.access_token = data["access_token"]
        if data.get("refresh_token"):
            integration.refresh_token = data["refresh_token"]
        integration.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        await db.flush()

        logger.info(
            "Token refreshed, expires in %ds", expires_in,
            extra={"integration_id": str(integration.id)},
        )
        if self.telemetry:
            self.telemetry.info("Token refreshed", {"expires_in": expires_in}, category="token")

        return integration.access_token
