"""Stellantis backend REST API client.

This module wraps the HTTP endpoints used around remote control:
- OAuth refresh of the backend (customer) access token
- Exchange of an OTP code for a remote-control token, and its refresh
- Request of an SMS activation code

The OTP challenge endpoint itself speaks XML and lives in ``otp.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import json
import logging
import time
from typing import Any, TypeVar, get_args, get_type_hints

import aiohttp
from yarl import URL

from .const import (
    HTTP_TIMEOUT,
    OAUTH_TOKEN_PATH,
    REMOTE_TOKEN_URL,
    SMS_CODE_URL,
)
from .exceptions import (
    StellantisAuthenticationError,
    StellantisConfigError,
    StellantisConnectionError,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _convert_value(value: Any, target_type: type) -> Any:
    """Convert a value to the target type.

    Raises:
        ValueError: If conversion fails
    """
    if isinstance(value, target_type):
        return value
    if target_type is int:
        # Some gateways send numbers as decimal strings ("3600.0")
        return int(float(value))
    if target_type is float:
        return float(value)
    if target_type is str:
        return str(value)
    return value


def _from_dict_with_type_conversion(cls: type[T], data: dict) -> T:
    """Create a dataclass instance from a token payload, converting known fields.

    Unknown keys and ``None`` values are ignored; fields that cannot be
    converted keep their default.
    """
    hints = get_type_hints(cls)
    supported_fields = {item.name: hints[item.name] for item in fields(cls)}  # type: ignore[arg-type]
    filtered_data = {}

    for key, value in data.items():
        if key not in supported_fields or value is None:
            continue

        field_type = supported_fields[key]
        type_args = get_args(field_type)
        actual_type = next((t for t in type_args if t is not type(None)), None)
        if actual_type is None and isinstance(field_type, type):
            actual_type = field_type

        if actual_type is None:
            filtered_data[key] = value
            continue
        try:
            filtered_data[key] = _convert_value(value, actual_type)
        except (ValueError, TypeError) as err:
            _LOGGER.debug("Failed to convert %s to %s: %s", key, actual_type, err)

    return cls(**filtered_data)


@dataclass
class TokenGrant:
    """Token pair returned by an OAuth style endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict) -> TokenGrant:
        """Create a TokenGrant from a response body.

        Raises:
            StellantisConfigError: If the body carries no access token
        """
        if not data.get("access_token"):
            raise StellantisConfigError("Token response without access_token", data)
        return _from_dict_with_type_conversion(cls, data)

    @property
    def expires_at(self) -> float | None:
        """Epoch seconds at which the access token expires, if known."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in


class StellantisApiClient:
    """Async REST client for the Stellantis token and SMS endpoints.

    The caller owns the aiohttp session; the client never closes it.
    """

    def __init__(
        self, session: aiohttp.ClientSession, timeout: int = HTTP_TIMEOUT
    ) -> None:
        """Initialize the API client.

        Args:
            session: Shared aiohttp session
            timeout: Request timeout in seconds
        """
        self.session = session
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        url: URL,
        json_data: dict | None = None,
        data: dict | None = None,
        headers: dict | None = None,
        auth: aiohttp.BasicAuth | None = None,
        expected_status: tuple[int, ...] = (200,),
    ) -> dict:
        """Make an HTTP request and decode the JSON reply.

        Args:
            method: HTTP method
            url: Absolute request URL, including query parameters
            json_data: JSON body
            data: Form body
            headers: Extra request headers
            auth: Basic credentials
            expected_status: Statuses treated as success

        Returns:
            Parsed JSON response, or ``{"text": ...}`` when not JSON

        Raises:
            StellantisAuthenticationError: On HTTP 400/401/403
            StellantisConnectionError: On transport failures and other errors
        """
        _LOGGER.debug("Making %s request to %s", method, url.with_query(None))

        try:
            async with self.session.request(
                method,
                url,
                json=json_data,
                data=data,
                headers=headers,
                auth=auth,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = await response.text()

                _LOGGER.debug("Response status: %d", response.status)

                if response.status in (400, 401, 403):
                    raise StellantisAuthenticationError(
                        f"Request rejected with HTTP {response.status}: {text}"
                    )
                if response.status not in expected_status:
                    raise StellantisConnectionError(f"HTTP {response.status}: {text}")

                if not text:
                    return {}
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    return {"text": text}

        except TimeoutError as err:
            raise StellantisConnectionError(f"Request timeout: {err}") from err
        except aiohttp.ClientError as err:
            raise StellantisConnectionError(f"Connection error: {err}") from err

    async def refresh_access_token(
        self,
        oauth_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> TokenGrant:
        """Refresh the backend access token with the OAuth refresh grant.

        Raises:
            StellantisAuthenticationError: If the refresh token is rejected
            StellantisConnectionError: If the endpoint is unreachable
        """
        url = URL(oauth_url) / OAUTH_TOKEN_PATH
        body = await self._request(
            "POST",
            url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=aiohttp.BasicAuth(client_id, client_secret),
        )
        return TokenGrant.from_dict(body)

    async def exchange_otp(
        self, otp_code: str, client_id: str, realm: str
    ) -> TokenGrant:
        """Exchange an OTP code for a remote-control token pair.

        Args:
            otp_code: Freshly issued OTP code
            client_id: Brand client id
            realm: Brand realm sent in ``x-introspect-realm``
        """
        url = URL(REMOTE_TOKEN_URL).with_query(client_id=client_id)
        body = await self._request(
            "POST",
            url,
            json_data={"grant_type": "password", "password": otp_code},
            headers={"x-introspect-realm": realm},
        )
        return TokenGrant.from_dict(body)

    async def refresh_remote_token(
        self, refresh_token: str, client_id: str, realm: str
    ) -> TokenGrant:
        """Refresh the remote-control token without spending an OTP code."""
        url = URL(REMOTE_TOKEN_URL).with_query(client_id=client_id)
        body = await self._request(
            "POST",
            url,
            json_data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            headers={"x-introspect-realm": realm},
        )
        return TokenGrant.from_dict(body)

    async def request_sms_code(self, access_token: str, client_id: str) -> None:
        """Ask the backend to text an activation code to the account's phone.

        Raises:
            StellantisAuthenticationError: If the access token is rejected
            StellantisConnectionError: If the endpoint does not accept the request
        """
        url = URL(SMS_CODE_URL).with_query(client_id=client_id)
        await self._request(
            "POST",
            url,
            json_data={},
            headers={"Authorization": f"Bearer {access_token}"},
            expected_status=(202,),
        )
        _LOGGER.info("SMS activation code requested")
