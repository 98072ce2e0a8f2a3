"""Stellantis remote control coordinator.

This module ties one brand's credentials to its broker connection:
- Keeps the backend token fresh with a background recheck
- Obtains broker credentials (refresh grant first, OTP as fallback)
- Reconnects the broker when the credentials change or the connection dropped
- Sends commands and fires vehicle events on the Home Assistant bus
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from homeassistant.core import HomeAssistant

from .commands import RemoteCommand
from .const import DEFAULT_TOKEN_CHECK_INTERVAL, DOMAIN
from .control import StellantisRemoteControl
from .exceptions import (
    CommandError,
    CommandTimeoutError,
    OtpIssueError,
    OtpStateError,
    StellantisAuthenticationError,
    StellantisConnectionError,
    StellantisError,
)
from .remote import RemoteCredentialManager
from .tokens import BackendTokenManager

_LOGGER = logging.getLogger(__name__)

EVENT_VEHICLE = f"{DOMAIN}_event"


class StellantisRemoteCoordinator:
    """Coordinate credentials and command dispatch for one brand account."""

    def __init__(
        self,
        hass: HomeAssistant,
        token_manager: BackendTokenManager,
        credentials: RemoteCredentialManager,
        customer_id: str,
        vehicles: dict[str, str],
        token_check_interval: int = DEFAULT_TOKEN_CHECK_INTERVAL,
    ) -> None:
        """Initialize coordinator.

        Args:
            hass: Home Assistant instance
            token_manager: Backend token manager of the brand
            credentials: Broker credential manager of the brand
            customer_id: Customer id owning the vehicles
            vehicles: Mapping of VIN to display name
            token_check_interval: Seconds between background token rechecks
        """
        self.hass = hass
        self.token_manager = token_manager
        self.credentials = credentials
        self.customer_id = customer_id
        self.vehicles = vehicles
        self.token_check_interval = token_check_interval
        self.events: dict[str, dict[str, Any]] = {}
        self.last_error: str | None = None
        self._connection_lock = asyncio.Lock()
        self.control = StellantisRemoteControl(
            customer_id, vehicles, on_event=self._handle_event
        )

    @property
    def brand(self) -> str:
        """Brand of the account."""
        return self.token_manager.brand

    async def async_start(self) -> None:
        """Restore the OTP installation and start the token recheck."""
        try:
            if not await self.credentials.async_load():
                _LOGGER.warning(
                    "Remote control for %s is not activated; call %s.activate_remote",
                    self.brand,
                    DOMAIN,
                )
        except StellantisError as err:
            _LOGGER.error("Cannot restore OTP state for %s: %s", self.brand, err)
        self.token_manager.start(self.token_check_interval)

    async def async_shutdown(self) -> None:
        """Stop background work and close the broker connection."""
        await self.control.disconnect()
        await self.token_manager.stop()

    def _handle_event(self, vin: str, payload: dict[str, Any]) -> None:
        self.events[vin] = payload
        self.hass.bus.async_fire(
            EVENT_VEHICLE, {"brand": self.brand, "vin": vin, "data": payload}
        )

    def vin_for(self, vin: str | None) -> str | None:
        """Resolve the target VIN, defaulting to the only configured vehicle."""
        if vin:
            return vin if vin in self.vehicles else None
        if len(self.vehicles) == 1:
            return next(iter(self.vehicles))
        return None

    async def async_send_command(self, vin: str, command: RemoteCommand) -> bool:
        """Send a command to a vehicle.

        Ensures the broker connection uses current credentials, then waits for
        the correlated response. Commands are not retried.

        Args:
            vin: Target vehicle
            command: Command to send

        Returns:
            True if the backend acknowledged the command successfully
        """
        _LOGGER.info("Sending %s to %s", command.service, vin)

        if not await self._ensure_connection():
            _LOGGER.error("Cannot establish broker connection for %s", self.brand)
            return False

        try:
            response = await self.control.send_command(vin, command)
        except CommandTimeoutError as err:
            self.last_error = str(err)
            _LOGGER.error("Command %s timed out: %s", command.service, err)
            return False
        except CommandError as err:
            self.last_error = str(err)
            _LOGGER.error(
                "Command %s rejected with code %s: %s",
                command.service,
                err.return_code,
                err.response,
            )
            return False
        except StellantisConnectionError as err:
            self.last_error = str(err)
            _LOGGER.error("Connection error sending %s: %s", command.service, err)
            # Connection is dead - will reconnect on next attempt
            await self.control.disconnect()
            return False

        self.last_error = None
        _LOGGER.info(
            "Command %s succeeded (correlation id %s)",
            command.service,
            response.correlation_id,
        )
        return True

    async def _ensure_connection(self) -> bool:
        """Ensure the broker connection is up with a current token.

        Callers are serialized so that concurrent commands reuse one connection.

        Returns:
            True if connected
        """
        async with self._connection_lock:
            return await self._async_connect_current()

    async def _async_connect_current(self) -> bool:
        try:
            access_token = await self.credentials.async_get_remote_token()
        except (OtpStateError, OtpIssueError) as err:
            self.last_error = str(err)
            _LOGGER.error("Cannot obtain broker credentials: %s", err)
            return False
        except StellantisError as err:
            self.last_error = str(err)
            _LOGGER.error("Credential exchange failed: %s", err)
            return False

        if self.control.connected and self.control.access_token == access_token:
            return True

        _LOGGER.info("Connecting broker for %s", self.brand)
        try:
            await self.control.disconnect()
            await self.control.connect(access_token)
        except StellantisAuthenticationError as err:
            self.credentials.invalidate()
            self.last_error = str(err)
            _LOGGER.error("Broker rejected credentials: %s", err)
            return False
        except StellantisConnectionError as err:
            self.last_error = str(err)
            _LOGGER.error("Failed to connect broker: %s", err)
            return False
        return True

    async def async_request_sms_code(self) -> bool:
        """Request the activation SMS."""
        try:
            await self.credentials.async_request_sms_code()
        except StellantisError as err:
            self.last_error = str(err)
            _LOGGER.error("SMS code request for %s failed: %s", self.brand, err)
            return False
        return True

    async def async_activate(self, sms_code: str, pin: str) -> bool:
        """Activate remote control with the SMS code and PIN."""
        try:
            await self.credentials.async_activate(sms_code, pin)
        except StellantisError as err:
            self.last_error = str(err)
            _LOGGER.error("Activation for %s failed: %s", self.brand, err)
            return False
        await self.control.disconnect()
        return True
