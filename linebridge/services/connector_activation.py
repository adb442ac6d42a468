"""
Connector activation - three independently fallible CRM calls:

    1. imconnector.activate            -> ACTIVATING
    2. imconnector.connector.data.set  -> DATA_SET   (skipped if step 1 hard-errored)
    3. verify via imconnector.status / imconnector.list -> VERIFIED

Activation is not transactional on the CRM side, so the persisted state is
always re-derived from what the CRM reports in step 3. Step errors land in
last_error and are never raised to the caller.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from linebridge.config import get_settings
from linebridge.core.exceptions import ConnectorStepError, CrmApiError
from linebridge.integrations.bitrix import BitrixRestClient
from linebridge.models.connector_state import (
    ConnectorState,
    STATE_ACTIVATING,
    STATE_DATA_SET,
    STATE_UNCONFIGURED,
    STATE_VERIFIED,
)
from linebridge.models.integration import Integration

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"y", "1", "true"})


def normalize_active_flag(value: Any) -> bool:
    """"Y", True, 1, "1", "true" are active; anything else, including absent, is not."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return str(value).strip().lower() in _TRUE_VALUES


def _find_line(result: Any, line_id: str) -> Optional[dict]:
    """Locate the entry for line_id in an imconnector.status / .list result."""
    if isinstance(result, dict):
        if str(result.get("LINE", result.get("line", ""))) == line_id:
            return result
        # Keyed by line id
        entry = result.get(line_id)
        if isinstance(entry, dict):
            return entry
        for value in result.values():
            if isinstance(value, (dict, list)):
                found = _find_line(value, line_id)
                if found is not None:
                    return found
    elif isinstance(result, list):
        for item in result:
            found = _find_line(item, line_id)
            if found is not None:
                return found
    return None


def line_is_active(entry: Optional[dict]) -> bool:
    if not entry:
        return False
    for key in ("STATUS", "ACTIVE", "active", "status"):
        if key in entry and normalize_active_flag(entry[key]):
            return True
    return False


class ConnectorActivationManager:
    """Drives one connector line from UNCONFIGURED to VERIFIED."""

    def __init__(self, token_manager, telemetry=None, client_factory=BitrixRestClient):
        self.token_manager = token_manager
        self.telemetry = telemetry
        self.client_factory = client_factory

    def connector_data(self, connector_id: str, line_id: str) -> dict:
        settings = get_settings()
        url = settings.public_events_url
        return {
            "id": f"{connector_id}_line_{line_id}",
            "url": url,
            "url_im": url,
            "name": settings.bitrix_connector_name,
        }

    async def _get_state(self, db, integration_id, connector_id: str, line_id: str) -> ConnectorState:
        result = await db.execute(
            select(ConnectorState).where(
                ConnectorState.integration_id == integration_id,
                ConnectorState.connector_id == connector_id,
                ConnectorState.line_id == line_id,
            )
        )
        state = result.scalar_one_or_none()
        if state is None:
            state = ConnectorState(
                integration_id=integration_id,
                connector_id=connector_id,
                line_id=line_id,
                state=STATE_UNCONFIGURED,
                active=False,
                verified=False,
                configured_at=datetime.now(timezone.utc),
            )
            db.add(state)
        return state

    async def activate(
        self,
        db,
        integration: Integration,
        connector_id: str,
        line_id,
        active: bool = True,
        access_token: Optional[str] = None,
    ) -> ConnectorState:
        """Run activate -> data.set -> verify and persist the outcome."""
        line_id = str(line_id)
        state = await self._get_state(db, integration.id, connector_id, line_id)
        errors: list[str] = []

        token = access_token or await self.token_manager.get_valid_token(db, integration)
        client = self.client_factory(
            integration.client_endpoint or f"https://{integration.domain}/rest/",
            token,
            telemetry=self.telemetry,
        )

        state.state = STATE_ACTIVATING
        step1_ok = True
        try:
            await self._step("activate", client.activate_connector(connector_id, line_id, active))
        except ConnectorStepError as e:
            step1_ok = False
            errors.append(str(e))

        if step1_ok:
            try:
                await self._step(
                    "data.set",
                    client.set_connector_data(connector_id, line_id, self.connector_data(connector_id, line_id)),
                )
                state.state = STATE_DATA_SET
            except ConnectorStepError as e:
                errors.append(str(e))

        verified_active, verify_error = await self.verify(client, connector_id, line_id)
        if verify_error:
            errors.append(verify_error)

        state.state = STATE_VERIFIED
        state.verified = verify_error is None
        state.active = verified_active
        state.verified_at = datetime.now(timezone.utc)
        state.last_error = "; ".join(errors) if errors else None

        integration.connector_id = connector_id
        integration.line_id = line_id
        await db.flush()

        logger.info(
            "Connector %s line %s verified: active=%s errors=%d",
            connector_id, line_id, state.active, len(errors),
            extra={"integration_id": str(integration.id)},
        )
        if self.telemetry:
            level = "warn" if errors or not state.active else "info"
            self.telemetry.log(
                level,
                f"Connector line {line_id} verified (active={state.active})",
                {"connector_id": connector_id, "errors": errors},
                category="connector",
            )
        return state

    async def _step(self, name: str, call) -> dict:
        try:
            return await call
        except CrmApiError as e:
            logger.warning("Connector step %s failed: %s", name, str(e))
            raise ConnectorStepError(name, e) from e

    async def verify(self, client, connector_id: str, line_id: str) -> tuple[bool, Optional[str]]:
        """
        Re-query the CRM for the line's real state.
        Returns (active, error). imconnector.list is used when status is unavailable.
        """
        try:
            status = await client.connector_status(connector_id, line_id)
            entry = _find_line(status.get("result"), line_id)
            result = status.get("result")
            if entry is None and isinstance(result, dict) and "LINE" not in result:
                # Single-line status without an explicit LINE echo
                entry = result
            return line_is_active(entry), None
        except CrmApiError as e:
            logger.info("imconnector.status unavailable, falling back to list: %s", str(e))

        try:
            listing = await client.list_connectors()
        except CrmApiError as e:
            return False, str(ConnectorStepError("verify", e))

        connector_entry = _find_connector(listing.get("result"), connector_id)
        if connector_entry is None:
            return False, None
        return line_is_active(_find_line(connector_entry, line_id)), None


def _find_connector(result: Any, connector_id: str) -> Any:
    if isinstance(result, dict):
        if connector_id in result:
            return result[connector_id]
        if str(result.get("ID", result.get("id", ""))) == connector_id:
            return result
        for value in result.values():
            found = _find_connector(value, connector_id) if isinstance(value, (dict, list)) else None
            if found is not None:
                return found
    elif isinstance(result, list):
        for item in result:
            found = _find_connector(item, connector_id)
            if found is not None:
                return found
    return None
