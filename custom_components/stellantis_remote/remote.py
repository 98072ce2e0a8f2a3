"""Remote-control credentials: OTP activation and broker token acquisition."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import Any

import aiohttp

from .api import StellantisApiClient, TokenGrant
from .const import MAC_ID, OTP_STORE_PREFIX, TOKEN_REFRESH_MARGIN, build_realm
from .exceptions import OtpStateError, StellantisError
from .otp import DeviceIdentity, OtpEngine
from .store import SettingsStore
from .tokens import BackendTokenManager

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteToken:
    """Short-lived broker credentials."""

    access_token: str
    refresh_token: str | None
    expires_at: float

    @classmethod
    def from_grant(cls, grant: TokenGrant, now: float) -> RemoteToken:
        """Build the token from a grant received at ``now``."""
        return cls(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=now + (grant.expires_in or 0),
        )


class RemoteCredentialManager:
    """Obtain broker credentials for one brand.

    A cached token is reused until it nears expiry; then the refresh grant is
    tried first so that no OTP code is spent, and only if that fails a new OTP
    code is issued and traded with the password grant.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api: StellantisApiClient,
        token_manager: BackendTokenManager,
        store: SettingsStore,
        remote_client_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            session: aiohttp session used by the OTP engine
            api: REST client
            token_manager: Backend token of the same brand
            store: Store holding the OTP engine snapshot
            remote_client_id: Client id for the credential exchange, defaults to
                the brand client id
            clock: Source of the current epoch time
        """
        self._session = session
        self.api = api
        self.token_manager = token_manager
        self._store = store
        self._clock = clock
        self.brand = token_manager.brand
        self.realm = build_realm(self.brand)
        self.client_id = remote_client_id or token_manager.token.client_id
        self.engine: OtpEngine | None = None
        self.remote_token: RemoteToken | None = None
        self._lock = asyncio.Lock()

    @property
    def store_key(self) -> str:
        """Settings key of the OTP engine snapshot."""
        return f"{OTP_STORE_PREFIX}{self.brand}"

    async def _async_persist(self, snapshot: dict[str, Any]) -> None:
        await self._store.async_set(self.store_key, snapshot)

    async def async_load(self) -> bool:
        """Restore the OTP engine from the store.

        Returns:
            True when an activated engine is available
        """
        if self.engine is not None:
            return True
        snapshot = await self._store.async_get(self.store_key)
        if not snapshot:
            return False
        self.engine = OtpEngine.from_snapshot(
            self._session, snapshot, self._async_persist
        )
        _LOGGER.debug("Restored OTP engine for %s: %r", self.brand, self.engine)
        return True

    @property
    def activated(self) -> bool:
        """True once an activated OTP engine is loaded."""
        return self.engine is not None

    async def async_request_sms_code(self) -> None:
        """Ask the backend to send the activation SMS."""
        token = await self.token_manager.async_ensure_valid()
        await self.api.request_sms_code(token.access_token, token.client_id)

    async def async_activate(self, sms_code: str, pin: str) -> None:
        """Activate a fresh OTP installation with the SMS code and PIN.

        Any previous installation and cached broker token are replaced.
        """
        async with self._lock:
            engine = OtpEngine(
                self._session, DeviceIdentity.create(MAC_ID), self._async_persist
            )
            await engine.activate(sms_code, pin)
            self.engine = engine
            self.remote_token = None
            _LOGGER.info("Remote control activated for %s", self.brand)

    async def async_get_remote_token(self) -> str:
        """Return a valid broker access token.

        Raises:
            OtpStateError: If no activated OTP engine is available
            OtpIssueError: If a new OTP code is needed and cannot be issued
            StellantisConnectionError: If the credential exchange fails
        """
        async with self._lock:
            now = self._clock()
            if (
                self.remote_token is not None
                and now < self.remote_token.expires_at - TOKEN_REFRESH_MARGIN
            ):
                return self.remote_token.access_token

            if self.remote_token is not None and self.remote_token.refresh_token:
                try:
                    grant = await self.api.refresh_remote_token(
                        self.remote_token.refresh_token, self.client_id, self.realm
                    )
                except StellantisError as err:
                    _LOGGER.warning(
                        "Remote token refresh for %s failed, issuing a new OTP: %s",
                        self.brand,
                        err,
                    )
                else:
                    self.remote_token = RemoteToken.from_grant(grant, self._clock())
                    _LOGGER.debug("Remote token for %s refreshed", self.brand)
                    return self.remote_token.access_token

            if not await self.async_load() or self.engine is None:
                raise OtpStateError(
                    f"Remote control for {self.brand} is not activated"
                )
            otp_code = await self.engine.issue_otp()
            grant = await self.api.exchange_otp(otp_code, self.client_id, self.realm)
            self.remote_token = RemoteToken.from_grant(grant, self._clock())
            _LOGGER.info(
                "Remote token for %s obtained with OTP (%d issued)",
                self.brand,
                self.engine.otp_count,
            )
            return self.remote_token.access_token

    def invalidate(self) -> None:
        """Drop the cached broker access token, keeping its refresh token."""
        if self.remote_token is not None:
            self.remote_token = RemoteToken(
                access_token=self.remote_token.access_token,
                refresh_token=self.remote_token.refresh_token,
                expires_at=0,
            )
