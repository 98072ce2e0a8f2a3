"""Stellantis remote control Home Assistant integration.

This integration sends remote commands (door locks, preconditioning,
charging, horn, lights, wake-up) to Peugeot, Citroen, DS, Opel and Vauxhall
vehicles. Commands travel over the Stellantis MQTT broker, authorized by a
token obtained with a one-time password from the backend's OTP service.

Configuration via configuration.yaml:
    stellantis_remote:
      brands:
        - brand: MyPeugeot
          country: FR
          client_id: your_client_id
          client_secret: your_client_secret
          oauth_url: https://idpcvs.peugeot.com
          customer_id: your_customer_id
          access_token: current_access_token
          refresh_token: current_refresh_token
          vehicles:
            - vin: VR3XXXXXXXXXXXXXX
              name: My Vehicle

Remote control is activated once with the ``request_sms_code`` and
``activate_remote`` services.
"""

from __future__ import annotations

import logging
import time

import voluptuous as vol

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import CONF_NAME
from homeassistant.core import HomeAssistant
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.typing import ConfigType

from .api import StellantisApiClient
from .const import (
    BRANDS,
    CONF_ACCESS_TOKEN,
    CONF_BRAND,
    CONF_BRANDS,
    CONF_CLIENT_ID,
    CONF_CLIENT_SECRET,
    CONF_COUNTRY,
    CONF_CUSTOMER_ID,
    CONF_EXPIRES_IN,
    CONF_OAUTH_URL,
    CONF_REFRESH_TOKEN,
    CONF_REMOTE_CLIENT_ID,
    CONF_TOKEN_CHECK_INTERVAL,
    CONF_VEHICLES,
    CONF_VIN,
    DEFAULT_EXPIRES_IN,
    DEFAULT_TOKEN_CHECK_INTERVAL,
    DOMAIN,
    STORAGE_KEY,
    TOKEN_STORE_PREFIX,
)
from .coordinator import StellantisRemoteCoordinator
from .exceptions import StellantisConfigError
from .remote import RemoteCredentialManager
from .services import async_setup_services, async_unload_services
from .store import HomeAssistantSettingsStore
from .tokens import BackendToken, BackendTokenManager

_LOGGER = logging.getLogger(__name__)

BRAND_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_BRAND): vol.In(BRANDS),
        vol.Required(CONF_COUNTRY): cv.string,
        vol.Required(CONF_CLIENT_ID): cv.string,
        vol.Required(CONF_CLIENT_SECRET): cv.string,
        vol.Required(CONF_OAUTH_URL): cv.url,
        vol.Required(CONF_CUSTOMER_ID): cv.string,
        vol.Required(CONF_ACCESS_TOKEN): cv.string,
        vol.Required(CONF_REFRESH_TOKEN): cv.string,
        vol.Optional(CONF_EXPIRES_IN, default=DEFAULT_EXPIRES_IN): cv.positive_int,
        vol.Optional(CONF_REMOTE_CLIENT_ID): cv.string,
        vol.Optional(CONF_VEHICLES, default=[]): [
            {
                vol.Required(CONF_VIN): cv.string,
                vol.Optional(CONF_NAME): cv.string,
            }
        ],
        vol.Optional(
            CONF_TOKEN_CHECK_INTERVAL, default=DEFAULT_TOKEN_CHECK_INTERVAL
        ): vol.All(vol.Coerce(int), vol.Range(min=60)),
    }
)

CONFIG_SCHEMA = vol.Schema(
    {
        DOMAIN: vol.Schema(
            {
                vol.Required(CONF_BRANDS): vol.All(
                    cv.ensure_list, [BRAND_SCHEMA], vol.Length(min=1)
                ),
            }
        )
    },
    extra=vol.ALLOW_EXTRA,
)


async def async_setup(hass: HomeAssistant, config: ConfigType) -> bool:
    """Set up the integration from configuration.yaml.

    Every brand entry is imported as a config entry; the actual setup happens
    in async_setup_entry.

    Args:
        hass: Home Assistant instance
        config: Configuration dictionary

    Returns:
        True if setup was successful
    """
    hass.data.setdefault(DOMAIN, {})

    if DOMAIN not in config:
        return True

    for brand_config in config[DOMAIN][CONF_BRANDS]:
        hass.async_create_task(
            hass.config_entries.flow.async_init(
                DOMAIN,
                context={"source": "import"},
                data=dict(brand_config),
            )
        )

    return True


async def _async_load_token(
    store: HomeAssistantSettingsStore, data: dict
) -> BackendToken:
    """Return the persisted token record, or seed one from the configuration."""
    brand = data[CONF_BRAND]
    stored = await store.async_get(f"{TOKEN_STORE_PREFIX}{brand}")
    if stored:
        try:
            token = BackendToken.from_dict(stored)
        except StellantisConfigError as err:
            _LOGGER.warning("Ignoring stored token for %s: %s", brand, err)
        else:
            _LOGGER.debug("Using stored backend token for %s", brand)
            return token

    return BackendToken(
        brand=brand,
        country=data[CONF_COUNTRY],
        client_id=data[CONF_CLIENT_ID],
        client_secret=data[CONF_CLIENT_SECRET],
        oauth_url=data[CONF_OAUTH_URL],
        access_token=data[CONF_ACCESS_TOKEN],
        refresh_token=data[CONF_REFRESH_TOKEN],
        expires_at=time.time() + data.get(CONF_EXPIRES_IN, DEFAULT_EXPIRES_IN),
    )


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up one brand account from a config entry.

    Args:
        hass: Home Assistant instance
        entry: Config entry

    Returns:
        True if setup was successful
    """
    session = async_get_clientsession(hass)
    # One storage document per brand so entries never write the same file
    store = HomeAssistantSettingsStore(hass, f"{STORAGE_KEY}.{entry.data[CONF_BRAND]}")
    api = StellantisApiClient(session)

    token = await _async_load_token(store, dict(entry.data))
    token_manager = BackendTokenManager(api, token, store)
    credentials = RemoteCredentialManager(
        session,
        api,
        token_manager,
        store,
        remote_client_id=entry.data.get(CONF_REMOTE_CLIENT_ID),
    )
    vehicles = {
        vehicle[CONF_VIN]: vehicle.get(CONF_NAME, vehicle[CONF_VIN])
        for vehicle in entry.data.get(CONF_VEHICLES, [])
    }
    coordinator = StellantisRemoteCoordinator(
        hass,
        token_manager,
        credentials,
        entry.data[CONF_CUSTOMER_ID],
        vehicles,
        token_check_interval=entry.data.get(
            CONF_TOKEN_CHECK_INTERVAL, DEFAULT_TOKEN_CHECK_INTERVAL
        ),
    )
    await coordinator.async_start()

    entry.runtime_data = {"coordinator": coordinator}
    hass.data.setdefault(DOMAIN, {})[token.brand] = coordinator

    # Register services (only once, check if already registered)
    if not hass.services.has_service(DOMAIN, "send_command"):
        await async_setup_services(hass)

    _LOGGER.info(
        "Stellantis account %s set up with %d vehicles", token.brand, len(vehicles)
    )
    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry.

    Args:
        hass: Home Assistant instance
        entry: Config entry to unload

    Returns:
        True if unload was successful
    """
    coordinator: StellantisRemoteCoordinator = entry.runtime_data["coordinator"]
    await coordinator.async_shutdown()

    coordinators = hass.data.get(DOMAIN, {})
    coordinators.pop(coordinator.brand, None)
    if not coordinators:
        await async_unload_services(hass)

    return True
