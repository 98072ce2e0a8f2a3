"""Shared fixtures: RSA keys with exponent 0x11, fake HTTP session and store."""

from __future__ import annotations

import asyncio
from math import gcd, lcm
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from cryptography.hazmat.primitives.asymmetric import rsa
import pytest

from custom_components.stellantis_remote.const import OAEP_BLOCK_SIZE, PUBLIC_EXPONENT
from custom_components.stellantis_remote.crypto import oaep_decode, oaep_encode

# Largest payload one 1024 bit OAEP-SHA256 block carries
OAEP_CHUNK = OAEP_BLOCK_SIZE - 2 * 32 - 2


@pytest.fixture
def anyio_backend():
    return "asyncio"


class ServerKey:
    """1024 bit RSA key whose public exponent is 0x11.

    The backend wraps key material by applying its private exponent, so the
    client can unwrap it with the public one.
    """

    def __init__(self) -> None:
        while True:
            numbers = rsa.generate_private_key(
                public_exponent=65537, key_size=1024
            ).private_numbers()
            p, q = numbers.p, numbers.q
            carmichael = lcm(p - 1, q - 1)
            if gcd(PUBLIC_EXPONENT, carmichael) == 1:
                break
        self.modulus = p * q
        self.private_exponent = pow(PUBLIC_EXPONENT, -1, carmichael)

    @property
    def modulus_hex(self) -> str:
        return format(self.modulus, "x")

    @property
    def modulus_bytes(self) -> bytes:
        return self.modulus.to_bytes(OAEP_BLOCK_SIZE, "big")

    def wrap(self, payload: bytes) -> str:
        """Wrap ``payload`` the way the backend does, one block per chunk."""
        blocks = []
        for offset in range(0, len(payload), OAEP_CHUNK):
            encoded = oaep_encode(payload[offset : offset + OAEP_CHUNK], OAEP_BLOCK_SIZE)
            value = pow(
                int.from_bytes(encoded, "big"), self.private_exponent, self.modulus
            )
            blocks.append(value.to_bytes(OAEP_BLOCK_SIZE, "big"))
        return b"".join(blocks).hex()

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Decrypt a client OAEP ciphertext."""
        value = pow(int.from_bytes(ciphertext, "big"), self.private_exponent, self.modulus)
        return oaep_decode(value.to_bytes(OAEP_BLOCK_SIZE, "big"), OAEP_BLOCK_SIZE)


@pytest.fixture(scope="session")
def factory_key() -> ServerKey:
    return ServerKey()


@pytest.fixture(scope="session")
def working_key() -> ServerKey:
    return ServerKey()


@pytest.fixture(scope="session")
def exchange_key() -> ServerKey:
    return ServerKey()


class FakeResponse:
    def __init__(self, status: int, text: str) -> None:
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None


class FakeSession:
    """Stand-in for aiohttp.ClientSession.

    ``handler`` receives a request dict and returns (status, body) or raises.
    """

    def __init__(self, handler) -> None:
        self.handler = handler
        self.requests: list[dict[str, Any]] = []

    def request(self, method: str, url: Any, **kwargs: Any) -> FakeResponse:
        split = urlsplit(str(url))
        request = {
            "method": method,
            "url": f"{split.scheme}://{split.netloc}{split.path}",
            "query": dict(parse_qsl(split.query)),
            **kwargs,
        }
        if kwargs.get("params"):
            request["query"].update(kwargs["params"])
        self.requests.append(request)
        status, body = self.handler(request)
        return FakeResponse(status, body)

    def get(self, url: Any, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)


class MemoryStore:
    """In-memory SettingsStore."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.writes = 0

    async def async_get(self, key: str) -> Any | None:
        return self.data.get(key)

    async def async_set(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.writes += 1

    async def async_unset(self, key: str) -> None:
        self.data.pop(key, None)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)
