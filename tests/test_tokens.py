"""Tests for the backend token lifecycle manager."""

from __future__ import annotations

import asyncio
import logging

import pytest

from custom_components.stellantis_remote.api import TokenGrant
from custom_components.stellantis_remote.exceptions import (
    StellantisConfigError,
    StellantisConnectionError,
)
from custom_components.stellantis_remote.tokens import BackendToken, BackendTokenManager

NOW = 1_700_000_000.0


class FakeApi:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def refresh_access_token(self, oauth_url, client_id, client_secret, refresh_token):
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"access{len(self.calls)}",
            refresh_token=f"refresh{len(self.calls)}",
            expires_in=3600,
        )


def make_token(expires_at: float) -> BackendToken:
    return BackendToken(
        brand="MyPeugeot",
        country="FR",
        client_id="client",
        client_secret="secret",
        oauth_url="https://idpcvs.peugeot.com/",
        access_token="access0",
        refresh_token="refresh0",
        expires_at=expires_at,
    )


@pytest.fixture
def api():
    return FakeApi()


def test_needs_refresh_inside_margin(api):
    assert BackendTokenManager(api, make_token(NOW + 1), clock=lambda: NOW).needs_refresh()
    assert BackendTokenManager(
        api, make_token(NOW + 299), clock=lambda: NOW
    ).needs_refresh()
    assert not BackendTokenManager(
        api, make_token(NOW + 301), clock=lambda: NOW
    ).needs_refresh()


@pytest.mark.anyio
async def test_ensure_valid_refreshes_token_about_to_expire(api, memory_store):
    manager = BackendTokenManager(api, make_token(NOW + 1), memory_store, clock=lambda: NOW)

    token = await manager.async_ensure_valid()

    assert api.calls == ["refresh0"]
    assert token.access_token == "access1"
    assert token.expires_at == NOW + 3600
    assert manager.token.access_token == "access1"
    assert memory_store.data["stellantis_tokens_MyPeugeot"]["access_token"] == "access1"

    assert (await manager.async_ensure_valid()).access_token == "access1"
    assert api.calls == ["refresh0"]


@pytest.mark.anyio
async def test_valid_token_is_not_refreshed(api):
    manager = BackendTokenManager(api, make_token(NOW + 3600), clock=lambda: NOW)

    assert (await manager.async_ensure_valid()).access_token == "access0"
    assert api.calls == []


@pytest.mark.anyio
async def test_concurrent_refreshes_are_coalesced(api):
    api.gate = asyncio.Event()
    manager = BackendTokenManager(api, make_token(NOW), clock=lambda: NOW)

    first = asyncio.ensure_future(manager.async_ensure_valid())
    second = asyncio.ensure_future(manager.async_ensure_valid())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    api.gate.set()

    assert (await first).access_token == "access1"
    assert (await second).access_token == "access1"
    assert api.calls == ["refresh0"]


@pytest.mark.anyio
async def test_failed_refresh_keeps_stale_token(api):
    api.error = StellantisConnectionError("down")
    manager = BackendTokenManager(api, make_token(NOW), clock=lambda: NOW)

    with pytest.raises(StellantisConnectionError):
        await manager.async_ensure_valid()

    assert manager.token.access_token == "access0"
    assert manager.token.refresh_token == "refresh0"


@pytest.mark.anyio
async def test_recheck_logs_instead_of_raising(api, caplog):
    api.error = StellantisConnectionError("down")
    manager = BackendTokenManager(api, make_token(NOW), clock=lambda: NOW)

    with caplog.at_level(logging.WARNING):
        await manager.async_recheck()

    assert "recheck for MyPeugeot failed" in caplog.text


@pytest.mark.anyio
async def test_background_loop_refreshes_and_stops(api):
    manager = BackendTokenManager(api, make_token(NOW), clock=lambda: NOW)

    manager.start(interval=3600)
    for _ in range(10):
        await asyncio.sleep(0)
    await manager.stop()

    assert api.calls == ["refresh0"]
    assert manager.token.access_token == "access1"


def test_token_record_round_trip():
    token = make_token(NOW)

    assert BackendToken.from_dict(token.to_dict()) == token


def test_malformed_token_record_is_rejected():
    with pytest.raises(StellantisConfigError):
        BackendToken.from_dict({"brand": "MyPeugeot"})
