"""Backend OAuth token lifecycle for one brand.

Each brand owns one ``BackendTokenManager``; managers share nothing, so
brands refresh independently and in parallel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass, replace
import logging
import time
from typing import Any, Self

from .api import StellantisApiClient
from .const import DEFAULT_TOKEN_CHECK_INTERVAL, TOKEN_REFRESH_MARGIN, TOKEN_STORE_PREFIX
from .exceptions import StellantisConfigError, StellantisError
from .store import SettingsStore

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendToken:
    """OAuth token record of a brand account."""

    brand: str
    country: str
    client_id: str
    client_secret: str
    oauth_url: str
    access_token: str
    refresh_token: str
    expires_at: float

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON serializable copy."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create a record from ``to_dict()`` output.

        Raises:
            StellantisConfigError: If a field is missing
        """
        try:
            return cls(
                brand=data["brand"],
                country=data["country"],
                client_id=data["client_id"],
                client_secret=data["client_secret"],
                oauth_url=data["oauth_url"],
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_at=float(data["expires_at"]),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise StellantisConfigError(f"Malformed token record: {err}") from err


class BackendTokenManager:
    """Keep a brand's backend access token valid.

    ``async_ensure_valid`` refreshes on demand when the token expires within
    the refresh margin; a background loop performs the same check on a fixed
    interval. Concurrent refreshes are coalesced into one request.
    """

    def __init__(
        self,
        api: StellantisApiClient,
        token: BackendToken,
        store: SettingsStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            api: REST client used for the refresh grant
            token: Current token record
            store: Store the refreshed record is written to
            clock: Source of the current epoch time
        """
        self.api = api
        self.token = token
        self._store = store
        self._clock = clock
        self._refresh_task: asyncio.Future[BackendToken] | None = None
        self._recheck_task: asyncio.Task | None = None

    @property
    def brand(self) -> str:
        """Brand the token belongs to."""
        return self.token.brand

    @property
    def store_key(self) -> str:
        """Settings key of the persisted token record."""
        return f"{TOKEN_STORE_PREFIX}{self.brand}"

    def needs_refresh(self) -> bool:
        """Return True when the token expires within the refresh margin."""
        return self._clock() > self.token.expires_at - TOKEN_REFRESH_MARGIN

    async def async_ensure_valid(self) -> BackendToken:
        """Return a token that is valid for at least the refresh margin.

        On failure the previous token is kept and the error is raised.

        Raises:
            StellantisAuthenticationError: If the refresh token is rejected
            StellantisConnectionError: If the endpoint is unreachable
        """
        if self.needs_refresh():
            await self.async_refresh()
        return self.token

    async def async_refresh(self) -> BackendToken:
        """Refresh the token, joining a refresh that is already in flight."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._async_do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _async_do_refresh(self) -> BackendToken:
        _LOGGER.debug("Refreshing backend token for %s", self.brand)
        grant = await self.api.refresh_access_token(
            self.token.oauth_url,
            self.token.client_id,
            self.token.client_secret,
            self.token.refresh_token,
        )
        self.token = replace(
            self.token,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or self.token.refresh_token,
            expires_at=self._clock() + (grant.expires_in or 0),
        )
        if self._store is not None:
            await self._store.async_set(self.store_key, self.token.to_dict())
        _LOGGER.info(
            "Backend token for %s refreshed (%s...)",
            self.brand,
            self.token.access_token[:8],
        )
        return self.token

    async def async_recheck(self) -> None:
        """Refresh if needed, logging failures instead of raising."""
        try:
            await self.async_ensure_valid()
        except StellantisError as err:
            _LOGGER.warning("Backend token recheck for %s failed: %s", self.brand, err)

    def start(self, interval: float = DEFAULT_TOKEN_CHECK_INTERVAL) -> None:
        """Start the background recheck loop."""
        if self._recheck_task is None or self._recheck_task.done():
            self._recheck_task = asyncio.ensure_future(self._recheck_loop(interval))
            _LOGGER.debug(
                "Token recheck for %s started (interval: %ss)", self.brand, interval
            )

    async def _recheck_loop(self, interval: float) -> None:
        try:
            while True:
                await self.async_recheck()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            _LOGGER.debug("Token recheck loop for %s cancelled", self.brand)

    async def stop(self) -> None:
        """Stop the background loop and any in-flight refresh."""
        if self._recheck_task and not self._recheck_task.done():
            self._recheck_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._recheck_task
        self._recheck_task = None

        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
        self._refresh_task = None
