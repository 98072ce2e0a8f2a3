"""Diagnostics support for the Stellantis remote control integration."""

from __future__ import annotations

from typing import Any

from homeassistant.components.diagnostics import async_redact_data
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant

from .const import (
    CONF_ACCESS_TOKEN,
    CONF_CLIENT_SECRET,
    CONF_CUSTOMER_ID,
    CONF_REFRESH_TOKEN,
    CONF_VIN,
)
from .coordinator import StellantisRemoteCoordinator

TO_REDACT = {
    CONF_ACCESS_TOKEN,
    CONF_REFRESH_TOKEN,
    CONF_CLIENT_SECRET,
    CONF_CUSTOMER_ID,
    CONF_VIN,
    "vehicles",
    "pin",
    "sms_code",
    "k0",
    "k1",
    "factory_key",
    "working_key",
    "secondary_value",
    "salt",
    "challenge",
}


def _engine_state(coordinator: StellantisRemoteCoordinator) -> dict[str, Any] | None:
    engine = coordinator.credentials.engine
    if engine is None:
        return None
    return async_redact_data(engine.snapshot(), TO_REDACT)


async def async_get_config_entry_diagnostics(
    hass: HomeAssistant, entry: ConfigEntry
) -> dict[str, Any]:
    """Return diagnostics for a config entry.

    Args:
        hass: Home Assistant instance
        entry: Config entry

    Returns:
        Dictionary with diagnostic data
    """
    coordinator: StellantisRemoteCoordinator = entry.runtime_data["coordinator"]
    remote_token = coordinator.credentials.remote_token

    return {
        "config_entry": {
            "entry_id": entry.entry_id,
            "version": entry.version,
            "domain": entry.domain,
            "title": entry.title,
            "data": async_redact_data(dict(entry.data), TO_REDACT),
        },
        "coordinator": {
            "brand": coordinator.brand,
            "vehicle_count": len(coordinator.vehicles),
            "broker_connected": coordinator.control.connected,
            "pending_commands": coordinator.control.pending_count,
            "backend_token_expires_at": coordinator.token_manager.token.expires_at,
            "remote_token_expires_at": (
                remote_token.expires_at if remote_token else None
            ),
            "remote_activated": coordinator.credentials.activated,
            "last_error": coordinator.last_error,
        },
        "otp_engine": _engine_state(coordinator),
    }
