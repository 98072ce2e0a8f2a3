"""Persistent settings for token records and OTP engine snapshots."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from .const import STORAGE_KEY, STORAGE_VERSION

_LOGGER = logging.getLogger(__name__)


class SettingsStore(Protocol):
    """Key/value store for JSON serializable settings."""

    async def async_get(self, key: str) -> Any | None:
        """Return the value stored under ``key``."""

    async def async_set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``."""

    async def async_unset(self, key: str) -> None:
        """Remove ``key``."""


class HomeAssistantSettingsStore:
    """SettingsStore kept in one Home Assistant storage document."""

    def __init__(self, hass: HomeAssistant, key: str = STORAGE_KEY) -> None:
        """Initialize the store."""
        self._store: Store[dict[str, Any]] = Store(hass, STORAGE_VERSION, key)
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def _async_data(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await self._store.async_load() or {}
            _LOGGER.debug("Loaded %d stored settings", len(self._data))
        return self._data

    async def async_get(self, key: str) -> Any | None:
        """Return the value stored under ``key``."""
        async with self._lock:
            return (await self._async_data()).get(key)

    async def async_set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` and save the document."""
        async with self._lock:
            data = await self._async_data()
            data[key] = value
            await self._store.async_save(data)

    async def async_unset(self, key: str) -> None:
        """Remove ``key`` and save the document."""
        async with self._lock:
            data = await self._async_data()
            if data.pop(key, None) is not None:
                await self._store.async_save(data)
