"""Config flow for the Stellantis remote control integration.

Accounts are configured in configuration.yaml; every brand entry is imported
as one config entry.
"""

from __future__ import annotations

import logging
from typing import Any

from homeassistant import config_entries
from homeassistant.config_entries import ConfigFlowResult

from .const import CONF_BRAND, DOMAIN

_LOGGER = logging.getLogger(__name__)


class StellantisRemoteConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Stellantis remote control."""

    VERSION = 1

    async def async_step_import(
        self, import_data: dict[str, Any]
    ) -> ConfigFlowResult:
        """Handle import from configuration.yaml.

        Args:
            import_data: One brand entry from the YAML configuration

        Returns:
            Configuration flow result
        """
        brand = import_data[CONF_BRAND]
        _LOGGER.info("Importing Stellantis configuration for %s", brand)

        # Entries from an earlier import are refreshed with the current YAML
        await self.async_set_unique_id(brand)
        self._abort_if_unique_id_configured(updates=import_data)

        return self.async_create_entry(title=brand, data=import_data)
