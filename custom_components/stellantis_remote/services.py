"""Services for the Stellantis remote control integration.

Vehicle commands, activation of remote control and the SMS code request are
exposed as services; there are no entity platforms.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any

import voluptuous as vol

from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.helpers import config_validation as cv

from .commands import RemoteCommand, RemoteCommandBuilder
from .const import BRANDS, CONF_BRAND, CONF_VIN, DOMAIN
from .coordinator import StellantisRemoteCoordinator

_LOGGER = logging.getLogger(__name__)

# Service names
SERVICE_SEND_COMMAND = "send_command"
SERVICE_LOCK_DOORS = "lock_doors"
SERVICE_UNLOCK_DOORS = "unlock_doors"
SERVICE_START_PRECONDITIONING = "start_preconditioning"
SERVICE_STOP_PRECONDITIONING = "stop_preconditioning"
SERVICE_START_CHARGE = "start_charge"
SERVICE_STOP_CHARGE = "stop_charge"
SERVICE_SET_CHARGE_LIMIT = "set_charge_limit"
SERVICE_HORN = "horn"
SERVICE_FLASH_LIGHTS = "flash_lights"
SERVICE_WAKE_UP = "wake_up"
SERVICE_REQUEST_SMS_CODE = "request_sms_code"
SERVICE_ACTIVATE_REMOTE = "activate_remote"

ATTR_SERVICE = "service"
ATTR_PARAMETERS = "parameters"
ATTR_CHARGE_LEVEL = "charge_level"
ATTR_COUNT = "count"
ATTR_SMS_CODE = "sms_code"
ATTR_PIN = "pin"

# Service schemas
VEHICLE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_BRAND): vol.In(BRANDS),
        vol.Optional(CONF_VIN): cv.string,
    }
)

SEND_COMMAND_SCHEMA = VEHICLE_SCHEMA.extend(
    {
        vol.Required(ATTR_SERVICE): cv.string,
        vol.Optional(ATTR_PARAMETERS, default={}): dict,
    }
)

SET_CHARGE_LIMIT_SCHEMA = VEHICLE_SCHEMA.extend(
    {
        vol.Required(ATTR_CHARGE_LEVEL): vol.All(
            vol.Coerce(int), vol.Range(min=0, max=100)
        ),
    }
)

SIGNAL_SCHEMA = VEHICLE_SCHEMA.extend(
    {
        vol.Optional(ATTR_COUNT, default=3): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=10)
        ),
    }
)

BRAND_SCHEMA = vol.Schema({vol.Optional(CONF_BRAND): vol.In(BRANDS)})

ACTIVATE_REMOTE_SCHEMA = BRAND_SCHEMA.extend(
    {
        vol.Required(ATTR_SMS_CODE): cv.string,
        vol.Required(ATTR_PIN): vol.All(cv.string, vol.Match(r"^\d{4}$")),
    }
)

CommandFactory = Callable[[dict[str, Any]], RemoteCommand]

COMMAND_SERVICES: dict[str, tuple[vol.Schema, CommandFactory]] = {
    SERVICE_SEND_COMMAND: (
        SEND_COMMAND_SCHEMA,
        lambda data: RemoteCommandBuilder.build_command(
            data[ATTR_SERVICE], **data[ATTR_PARAMETERS]
        ),
    ),
    SERVICE_LOCK_DOORS: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.lock_doors(),
    ),
    SERVICE_UNLOCK_DOORS: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.unlock_doors(),
    ),
    SERVICE_START_PRECONDITIONING: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.start_preconditioning(),
    ),
    SERVICE_STOP_PRECONDITIONING: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.stop_preconditioning(),
    ),
    SERVICE_START_CHARGE: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.start_charge(),
    ),
    SERVICE_STOP_CHARGE: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.stop_charge(),
    ),
    SERVICE_SET_CHARGE_LIMIT: (
        SET_CHARGE_LIMIT_SCHEMA,
        lambda data: RemoteCommandBuilder.set_charge_limit(data[ATTR_CHARGE_LEVEL]),
    ),
    SERVICE_HORN: (
        SIGNAL_SCHEMA,
        lambda data: RemoteCommandBuilder.horn(data[ATTR_COUNT]),
    ),
    SERVICE_FLASH_LIGHTS: (
        SIGNAL_SCHEMA,
        lambda data: RemoteCommandBuilder.flash_lights(data[ATTR_COUNT]),
    ),
    SERVICE_WAKE_UP: (
        VEHICLE_SCHEMA,
        lambda data: RemoteCommandBuilder.wake_up(),
    ),
}


def _get_coordinator(
    hass: HomeAssistant, brand: str | None
) -> StellantisRemoteCoordinator | None:
    """Get the coordinator of a brand, or the only one when no brand is given."""
    coordinators: dict[str, StellantisRemoteCoordinator] = hass.data.get(DOMAIN, {})
    if brand:
        return coordinators.get(brand)
    if len(coordinators) == 1:
        return next(iter(coordinators.values()))
    return None


async def async_handle_command(
    hass: HomeAssistant, call: ServiceCall, factory: CommandFactory
) -> None:
    """Handle a vehicle command service call.

    Args:
        hass: Home Assistant instance
        call: Service call data with optional brand and VIN
        factory: Builds the command from the call data
    """
    brand = call.data.get(CONF_BRAND)
    coordinator = _get_coordinator(hass, brand)
    if not coordinator:
        _LOGGER.error("No Stellantis account found for brand %s", brand)
        return

    vin = coordinator.vin_for(call.data.get(CONF_VIN))
    if not vin:
        _LOGGER.error(
            "Vehicle %s not found for %s", call.data.get(CONF_VIN), coordinator.brand
        )
        return

    command = factory(dict(call.data))
    if not await coordinator.async_send_command(vin, command):
        _LOGGER.error("Service %s failed for %s", call.service, vin)


async def async_request_sms_code(hass: HomeAssistant, call: ServiceCall) -> None:
    """Handle request_sms_code service call."""
    coordinator = _get_coordinator(hass, call.data.get(CONF_BRAND))
    if not coordinator:
        _LOGGER.error("No Stellantis account found for brand %s", call.data.get(CONF_BRAND))
        return
    await coordinator.async_request_sms_code()


async def async_activate_remote(hass: HomeAssistant, call: ServiceCall) -> None:
    """Handle activate_remote service call.

    Activation consumes the SMS code sent by ``request_sms_code`` and binds the
    account PIN to this installation.
    """
    coordinator = _get_coordinator(hass, call.data.get(CONF_BRAND))
    if not coordinator:
        _LOGGER.error("No Stellantis account found for brand %s", call.data.get(CONF_BRAND))
        return
    if await coordinator.async_activate(call.data[ATTR_SMS_CODE], call.data[ATTR_PIN]):
        _LOGGER.info("Remote control activated for %s", coordinator.brand)


def _command_handler(
    hass: HomeAssistant, factory: CommandFactory
) -> Callable[[ServiceCall], Any]:
    return lambda call: async_handle_command(hass, call, factory)


async def async_setup_services(hass: HomeAssistant) -> None:
    """Set up Stellantis remote services."""
    for service, (schema, factory) in COMMAND_SERVICES.items():
        hass.services.async_register(
            DOMAIN, service, _command_handler(hass, factory), schema=schema
        )

    hass.services.async_register(
        DOMAIN,
        SERVICE_REQUEST_SMS_CODE,
        lambda call: async_request_sms_code(hass, call),
        schema=BRAND_SCHEMA,
    )

    hass.services.async_register(
        DOMAIN,
        SERVICE_ACTIVATE_REMOTE,
        lambda call: async_activate_remote(hass, call),
        schema=ACTIVATE_REMOTE_SCHEMA,
    )

    _LOGGER.info("Stellantis remote services registered")


async def async_unload_services(hass: HomeAssistant) -> None:
    """Unload Stellantis remote services."""
    services = [*COMMAND_SERVICES, SERVICE_REQUEST_SMS_CODE, SERVICE_ACTIVATE_REMOTE]

    for service in services:
        hass.services.async_remove(DOMAIN, service)
