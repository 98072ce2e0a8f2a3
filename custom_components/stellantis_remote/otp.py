"""OTP session engine for Stellantis remote control authorization.

Remote commands are authorized with a one-time password derived through the
backend's challenge-response protocol. The engine is an explicit state
machine; every transition is one round trip to the OTP endpoint:

    UNINITIALIZED -> AWAITING_SETUP -> AWAITING_FINALIZE -> READY -> OTP_ISSUED

Activation runs once per installation (SMS code + PIN), after which each
``issue_otp()`` call performs a Setup/Finalize round in ``otp`` mode and
derives the code from the synchronized session keys.

Engines are not safe for concurrent use; callers serialize access.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from enum import StrEnum
from functools import cached_property
import hashlib
import logging
import secrets
from typing import Any, Self
import xml.etree.ElementTree as ET

import aiohttp

from .const import (
    CLIENT_NAME,
    GENERATOR_VERSION,
    OTP_HOST,
    OTP_TIMEOUT,
    OTP_URL,
    OTP_USER_AGENT,
    PROTOCOL_VERSION,
)
from .crypto import (
    OaepCipher,
    aes_ecb_encrypt,
    number_to_base36,
    random_hex,
    sha256_hex,
)
from .exceptions import (
    OtpIssueError,
    OtpStateError,
    StellantisConfigError,
    StellantisConnectionError,
    StellantisError,
)

_LOGGER = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
STATUS_OK = "OK"


class OtpMode(StrEnum):
    """Request mode sent with every round."""

    ACTIVATE = "activate"
    OTP = "otp"
    MS = "ms"


class OtpAction(StrEnum):
    """Key selection for the challenge digests."""

    PLAIN = ""
    UPGRADE = "upgrade"
    SYNCHRO = "synchro"


class EngineStep(StrEnum):
    """Next call the engine accepts."""

    UNINITIALIZED = "uninitialized"
    AWAITING_SETUP = "awaiting_setup"
    AWAITING_FINALIZE = "awaiting_finalize"
    READY = "ready"
    OTP_ISSUED = "otp_issued"


class FinalizeResult(StrEnum):
    """Outcome of a successful Finalize round."""

    OK = "ok"
    RECHALLENGE = "rechallenge"


@dataclass(frozen=True)
class DeviceIdentity:
    """Installation identity, created once and never modified."""

    device_id: str
    salt: str
    mac_id: str
    version: str = PROTOCOL_VERSION

    @classmethod
    def create(cls, mac_id: str, device_id: str | None = None) -> Self:
        """Create a fresh identity with a random salt."""
        return cls(
            device_id=device_id or random_hex(8),
            salt=random_hex(16),
            mac_id=mac_id,
        )

    @property
    def serial(self) -> str:
        """Device serial sent to the backend and mixed into the seed key."""
        return f"{self.device_id}/_/{self.salt}"


@dataclass(frozen=True)
class SessionKeys:
    """Server synchronized session key material.

    ``k0`` and ``k1`` are populated exactly once; later synchronizations
    only refresh the session id and sync timestamp.
    """

    session_id: str = ""
    tsync: str = "0"
    k0: str = ""
    k1: str = ""
    secondary_id: str = ""
    secondary_value: str = ""
    secondary_count: int = 0

    @property
    def activated(self) -> bool:
        """True once the seed key has been installed."""
        return bool(self.k0 and self.k1)

    def synchronized(self, payload: dict[str, Any], kma: str) -> SessionKeys:
        """Return the keys after applying a Finalize reply."""
        return replace(
            self,
            tsync=str(payload.get("tsync") or self.tsync),
            session_id=str(payload.get("id") or self.session_id),
            k0=self.k0 or kma,
            k1=self.k1 or kma,
        )


@dataclass
class CryptoMaterial:
    """Factory key and working key handed out during activation."""

    factory_key: str
    working_key: str
    pin_mode: str | None = None

    @classmethod
    def unwrap(cls, factory_key: str, wrapped_key: str, pin_mode: str | None) -> Self:
        """Decrypt the working key the server wrapped with the factory key."""
        working_key = OaepCipher(factory_key).unwrap(wrapped_key)
        return cls(factory_key=factory_key, working_key=working_key, pin_mode=pin_mode)

    @cached_property
    def cipher(self) -> OaepCipher:
        """OAEP cipher bound to the working key."""
        return OaepCipher(self.working_key)


def derive_kma(pin: str, serial: str) -> str:
    """Derive the 128-bit seed key from the PIN and device serial."""
    return sha256_hex(f"{pin};{serial}")[:32]


def compute_challenge_digests(
    challenge: str,
    keys: SessionKeys,
    action: OtpAction,
    serial: str,
    pin: str | None,
) -> dict[str, str]:
    """Compute the R0/R1/R2 digests authenticating a Finalize request."""
    active_key = keys.k1 if action is OtpAction.UPGRADE else keys.k0
    if action is OtpAction.SYNCHRO:
        suffix = pin or ""
    else:
        suffix = ""

    return {
        "R0": sha256_hex(f"{challenge};{active_key};{serial}"),
        "R1": sha256_hex(f"{challenge};{active_key};{keys.k1}"),
        "R2": sha256_hex(f"{challenge};{active_key};{suffix}"),
    }


def compute_otp_code(k1: str, defi: int, secondary_value: str) -> str:
    """Derive the OTP code from the session key, challenge counter and secondary value."""
    digest = hashlib.sha256(f"{k1}:{defi}:{secondary_value}".encode()).digest()
    high = int.from_bytes(digest[0:4], "big")
    low = int.from_bytes(digest[4:8], "big")
    return number_to_base36((high & 0x0FFFFFFF) * 1024 + (low & 1023))


def _element_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children and not element.attrib:
        return (element.text or "").strip()
    value: dict[str, Any] = {f"@{key}": item for key, item in element.attrib.items()}
    for child in children:
        value[child.tag] = _element_to_value(child)
    if not children and element.text and element.text.strip():
        value["#text"] = element.text.strip()
    return value


def parse_response(raw: str, element: str) -> dict[str, Any]:
    """Extract the Setup or Finalize element from an OTP endpoint reply.

    The endpoint prefixes the document with non-XML noise, so everything up to
    the end of the XML declaration is dropped before parsing.

    Raises:
        StellantisConfigError: If the document is not parseable or lacks ``element``
    """
    start = raw.find("?>")
    document = raw[start + 2 :] if start != -1 else raw

    try:
        root = ET.fromstring(document.strip())
    except ET.ParseError as err:
        raise StellantisConfigError("Bad response from server", raw) from err

    result = root if root.tag == element else root.find(f".//{element}")
    if result is None:
        raise StellantisConfigError("Bad response from server", raw)

    value = _element_to_value(result)
    if not isinstance(value, dict):
        raise StellantisConfigError("Bad response from server", raw)
    return value


class OtpEngine:
    """Challenge-response OTP state machine.

    The engine keeps all session state needed to resume between processes;
    ``snapshot()`` and ``from_snapshot()`` convert it to and from plain dicts.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        identity: DeviceIdentity,
        persist: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize a not yet activated engine.

        Args:
            session: aiohttp session used for the OTP endpoint
            identity: Installation identity
            persist: Coroutine called with a fresh snapshot after every successful round
        """
        self._session = session
        self._persist_callback = persist
        self.identity = identity
        self.keys = SessionKeys()
        self.material: CryptoMaterial | None = None
        self.step = EngineStep.UNINITIALIZED
        self.mode = OtpMode.ACTIVATE
        self.action = OtpAction.PLAIN
        self.challenge = ""
        self._pin: str | None = None
        self._sms_code: str | None = None
        self.defi = 0
        self.otp_count = 0

    def __repr__(self) -> str:
        """Return a representation without secrets."""
        return (
            f"OtpEngine(device_id={self.identity.device_id!r}, step={self.step}, "
            f"mode={self.mode}, otp_count={self.otp_count})"
        )

    def _expect(self, *steps: EngineStep) -> None:
        if self.step not in steps:
            raise OtpStateError(
                f"Invalid transition: engine is {self.step}, expected "
                + " or ".join(str(step) for step in steps)
            )

    async def _persist(self) -> None:
        if self._persist_callback is not None:
            await self._persist_callback(self.snapshot())

    async def _request(self, params: dict[str, Any], element: str) -> dict[str, Any]:
        """Send one round to the OTP endpoint and return the parsed result element.

        Raises:
            StellantisConnectionError: If the endpoint is unreachable or errors
            StellantisConfigError: If the reply is malformed
        """
        _LOGGER.debug(
            "OTP request %s (mode=%s)", params.get("action"), params.get("mode")
        )
        query = {key: str(value) for key, value in params.items()}

        try:
            async with self._session.get(
                OTP_URL,
                params=query,
                headers={
                    "Connection": "Keep-Alive",
                    "Host": OTP_HOST,
                    "User-Agent": OTP_USER_AGENT,
                },
                timeout=aiohttp.ClientTimeout(total=OTP_TIMEOUT),
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    raise StellantisConnectionError(
                        f"OTP endpoint returned HTTP {response.status}"
                    )
        except TimeoutError as err:
            raise StellantisConnectionError(f"OTP request timeout: {err}") from err
        except aiohttp.ClientError as err:
            raise StellantisConnectionError(f"OTP connection error: {err}") from err

        return parse_response(text, element)

    def _base_params(self, action: str, mode: OtpMode) -> dict[str, Any]:
        return {
            "action": action,
            "mode": mode,
            "id": self.keys.session_id,
            "lastsync": self.keys.tsync,
            "version": GENERATOR_VERSION,
            "macid": self.identity.mac_id,
        }

    def _kma(self) -> str:
        if self._pin is None:
            raise OtpStateError("PIN is not set")
        return derive_kma(self._pin, self.identity.serial)

    def _digests(self) -> dict[str, str]:
        return compute_challenge_digests(
            self.challenge, self.keys, self.action, self.identity.serial, self._pin
        )

    def start_activation(self, sms_code: str, pin: str) -> None:
        """Arm the engine for first activation with the SMS code and PIN."""
        self._expect(EngineStep.UNINITIALIZED)
        self._sms_code = sms_code
        self._pin = pin
        self.mode = OtpMode.ACTIVATE
        self.step = EngineStep.AWAITING_SETUP

    async def setup(self) -> None:
        """Run the Setup round.

        In activate mode this installs the crypto material and seeds K0/K1; in
        otp mode it captures the server challenge.

        Raises:
            OtpStateError: If Setup is not the expected call
            StellantisConfigError: If the server rejects the request
        """
        self._expect(EngineStep.AWAITING_SETUP)
        params = self._base_params("ActionSetup", self.mode)
        if self.mode is OtpMode.ACTIVATE:
            params["code"] = self._sms_code
        elif self.mode is OtpMode.OTP:
            params["sid"] = self.keys.secondary_id
        else:
            raise OtpStateError(f"Invalid transition: cannot run Setup in {self.mode} mode")

        payload = await self._request(params, "ActionSetup")
        if payload.get("err") != STATUS_OK:
            raise StellantisConfigError("Setup rejected", payload)

        if self.mode is OtpMode.ACTIVATE:
            try:
                self.material = CryptoMaterial.unwrap(
                    payload["Kfact"], payload["Kiw"], payload.get("pinmode")
                )
            except KeyError as err:
                raise StellantisConfigError(f"Missing {err} in setup", payload) from err
            kma = self._kma()
            self.keys = replace(self.keys, k0=kma, k1=kma)
            _LOGGER.debug("Seed key installed for device %s", self.identity.device_id)
        else:
            challenge = payload.get("challenge")
            if not challenge:
                raise StellantisConfigError("Missing challenge in setup", payload)
            self.challenge = str(challenge)

        self.step = EngineStep.AWAITING_FINALIZE
        await self._persist()

    async def finalize(self) -> FinalizeResult:
        """Run the Finalize round, including a secondary exchange when requested.

        Returns:
            ``RECHALLENGE`` when the server forces another Setup/Finalize round
            before an OTP may be issued, ``OK`` otherwise

        Raises:
            OtpStateError: If Finalize is not the expected call
            StellantisConfigError: If the server rejects or garbles the reply
        """
        self._expect(EngineStep.AWAITING_FINALIZE)
        params = self._base_params("ActionFinalize", self.mode)
        params.update(lang="fr", ack="")
        params.update(self._digests())

        if self.mode is OtpMode.OTP:
            params.update(keytype="0", sid=self.keys.secondary_id)
        elif self.mode is OtpMode.ACTIVATE:
            if self.material is None or self._pin is None:
                raise OtpStateError("Crypto material or PIN not initialized")
            cipher = self.material.cipher
            params.update(
                serial=self.identity.serial,
                code=self._sms_code,
                Kma=cipher.encrypt(bytes.fromhex(self._kma())).hex(),
                pin=cipher.encrypt(self._pin.encode("utf-8")).hex(),
                name=CLIENT_NAME,
            )
        else:
            raise OtpStateError(f"Invalid transition: cannot run Finalize in {self.mode} mode")

        payload = await self._request(params, "ActionFinalize")
        if payload.get("err") != STATUS_OK:
            raise StellantisConfigError("Finalize rejected", payload)

        kma = self._kma()
        self.keys = self.keys.synchronized(payload, kma)

        if self.mode is OtpMode.OTP:
            defi = payload.get("defi")
            if defi in (None, ""):
                raise StellantisConfigError("Missing defi in finalize", payload)
            try:
                self.defi = int(defi)
            except (TypeError, ValueError) as err:
                raise StellantisConfigError("Malformed defi in finalize", payload) from err
            if payload.get("J"):
                _LOGGER.debug("Server requested another challenge round")
                self.step = EngineStep.AWAITING_SETUP
                await self._persist()
                return FinalizeResult.RECHALLENGE
        else:
            try:
                exchanges = int(payload.get("ms_n") or 0)
            except (TypeError, ValueError) as err:
                raise StellantisConfigError("Malformed ms_n in finalize", payload) from err
            if exchanges > 1:
                raise StellantisConfigError(
                    "Multiple secondary exchanges are not supported", payload
                )
            if exchanges == 1:
                await self._secondary_exchange(payload, kma)

        self.step = EngineStep.READY
        await self._persist()
        return FinalizeResult.OK

    async def _secondary_exchange(self, payload: dict[str, Any], kma: str) -> None:
        """Run the synchro round that installs the secondary secret."""
        if self.material is None:
            raise OtpStateError("Crypto material not initialized")
        try:
            session_key = OaepCipher(self.material.factory_key).unwrap(payload["ms_key"])
            secondary_id = str(payload["s_id"])
            exchange_id = payload["ms_id"]
        except KeyError as err:
            raise StellantisConfigError(f"Missing {err} in synchro request", payload) from err

        self.challenge = str(payload.get("challenge") or "")
        self.action = OtpAction.SYNCHRO

        secret = secrets.token_bytes(16)
        wrapped = OaepCipher(session_key).encrypt(secret).hex()
        self.keys = replace(
            self.keys,
            secondary_id=secondary_id,
            secondary_value=aes_ecb_encrypt(bytes.fromhex(kma), secret).hex(),
            secondary_count=1,
        )

        params = self._base_params("ActionFinalize", OtpMode.MS)
        params.update(ms_id0=exchange_id, ms_val0=wrapped, ms_n=1)
        params.update(self._digests())
        del params["version"]

        reply = await self._request(params, "ActionFinalize")
        if reply.get("err") != STATUS_OK:
            raise StellantisConfigError("Synchro rejected", reply)
        self.keys = self.keys.synchronized(reply, kma)
        _LOGGER.debug("Secondary exchange completed")

    async def activate(self, sms_code: str, pin: str) -> None:
        """Run the complete first activation."""
        self.start_activation(sms_code, pin)
        await self.setup()
        await self.finalize()

    def otp_code(self) -> str:
        """Compute the OTP code for the current session state."""
        return compute_otp_code(self.keys.k1, self.defi, self.keys.secondary_value)

    async def issue_otp(self) -> str:
        """Run Setup/Finalize in otp mode and return a fresh OTP code.

        A forced re-challenge is honoured once. The backend allows about six
        codes per rolling 24 hours; the engine does not enforce this.

        Raises:
            OtpStateError: If the engine was never activated
            OtpIssueError: If any round fails
        """
        if not self.keys.activated:
            raise OtpStateError("Invalid transition: engine was never activated")
        if self.mode is not OtpMode.OTP:
            self._expect(EngineStep.READY, EngineStep.OTP_ISSUED)

        self.mode = OtpMode.OTP
        self.step = EngineStep.AWAITING_SETUP
        try:
            for _ in range(2):
                await self.setup()
                if await self.finalize() is FinalizeResult.OK:
                    break
            else:
                raise StellantisConfigError("Server kept requesting a new challenge")
            code = self.otp_code()
        except StellantisError as err:
            raise OtpIssueError(f"Cannot issue OTP code: {err}") from err

        self.otp_count += 1
        self.step = EngineStep.OTP_ISSUED
        await self._persist()
        _LOGGER.debug("OTP code issued (%d so far)", self.otp_count)
        return code

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON serializable snapshot of the engine state."""
        return {
            "version": SNAPSHOT_VERSION,
            "identity": asdict(self.identity),
            "keys": asdict(self.keys),
            "material": asdict(self.material) if self.material else None,
            "step": str(self.step),
            "mode": str(self.mode),
            "action": str(self.action),
            "challenge": self.challenge,
            "pin": self._pin,
            "sms_code": self._sms_code,
            "defi": self.defi,
            "otp_count": self.otp_count,
        }

    @classmethod
    def from_snapshot(
        cls,
        session: aiohttp.ClientSession,
        snapshot: dict[str, Any],
        persist: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
    ) -> Self:
        """Restore an engine from ``snapshot()`` output.

        Raises:
            StellantisConfigError: If the snapshot is malformed or was taken
                before activation completed
        """
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise StellantisConfigError(
                f"Unsupported OTP snapshot version {snapshot.get('version')!r}"
            )
        try:
            engine = cls(session, DeviceIdentity(**snapshot["identity"]), persist)
            engine.keys = SessionKeys(**snapshot["keys"])
            material = snapshot.get("material")
            engine.material = CryptoMaterial(**material) if material else None
            engine.step = EngineStep(snapshot["step"])
            engine.mode = OtpMode(snapshot["mode"])
            engine.action = OtpAction(snapshot["action"])
        except (KeyError, TypeError, ValueError) as err:
            raise StellantisConfigError(f"Malformed OTP snapshot: {err}") from err

        if not engine.keys.activated:
            raise StellantisConfigError("OTP snapshot was taken before activation")

        engine.challenge = snapshot.get("challenge", "")
        engine._pin = snapshot.get("pin")
        engine._sms_code = snapshot.get("sms_code")
        engine.defi = int(snapshot.get("defi", 0))
        engine.otp_count = int(snapshot.get("otp_count", 0))
        return engine
