"""Tests for the OTP session engine against a canned OTP endpoint."""

from __future__ import annotations

from typing import Any

import pytest

from conftest import FakeSession
from custom_components.stellantis_remote.crypto import aes_ecb_encrypt, sha256_hex
from custom_components.stellantis_remote.exceptions import (
    OtpIssueError,
    OtpStateError,
    StellantisConfigError,
)
from custom_components.stellantis_remote.otp import (
    DeviceIdentity,
    EngineStep,
    OtpAction,
    OtpEngine,
    OtpMode,
    SessionKeys,
    compute_challenge_digests,
    compute_otp_code,
    derive_kma,
    parse_response,
)

PIN = "5678"
SMS_CODE = "1234"


def _xml(element: str, **fields: Any) -> str:
    body = "".join(f"<{key}>{value}</{key}>" for key, value in fields.items())
    return (
        'HTTP junk\r\n<?xml version="1.0" encoding="UTF-8"?>'
        f"<{element}>{body}</{element}>"
    )


class FakeOtpServer:
    """Canned OTP endpoint implementing the activation and OTP rounds."""

    def __init__(self, factory_key, working_key, exchange_key=None) -> None:
        self.factory_key = factory_key
        self.working_key = working_key
        self.exchange_key = exchange_key
        self.secondary_exchanges = 0
        self.rechallenges = 0
        self.setup_error: str | None = None
        self.received_kma: bytes | None = None
        self.received_pin: bytes | None = None
        self.received_secret: bytes | None = None
        self.defi = 40
        self.defi_value: str | None = None
        self.sessions = 0
        self.log: list[dict[str, str]] = []

    def __call__(self, request: dict[str, Any]) -> tuple[int, str]:
        params = request["query"]
        self.log.append(params)
        self.sessions += 1
        if params["action"] == "ActionSetup":
            return 200, self._setup(params)
        return 200, self._finalize(params)

    def _setup(self, params: dict[str, str]) -> str:
        if self.setup_error:
            return _xml("ActionSetup", err=self.setup_error)
        if params["mode"] == "activate":
            return _xml(
                "ActionSetup",
                err="OK",
                Kfact=self.factory_key.modulus_hex,
                Kiw=self.factory_key.wrap(self.working_key.modulus_bytes),
                pinmode="1",
            )
        return _xml("ActionSetup", err="OK", challenge=f"challenge{self.sessions}")

    def _finalize(self, params: dict[str, str]) -> str:
        session = {"id": f"session{self.sessions}", "tsync": str(1000 + self.sessions)}
        mode = params["mode"]
        if mode == "activate":
            self.received_kma = self.working_key.decrypt(bytes.fromhex(params["Kma"]))
            self.received_pin = self.working_key.decrypt(bytes.fromhex(params["pin"]))
            if self.secondary_exchanges:
                return _xml(
                    "ActionFinalize",
                    err="OK",
                    ms_n=self.secondary_exchanges,
                    ms_key=self.factory_key.wrap(self.exchange_key.modulus_bytes),
                    ms_id="exchange1",
                    s_id="secondary1",
                    challenge="synchro-challenge",
                    **session,
                )
            return _xml("ActionFinalize", err="OK", **session)
        if mode == "ms":
            self.received_secret = self.exchange_key.decrypt(
                bytes.fromhex(params["ms_val0"])
            )
            return _xml("ActionFinalize", err="OK", **session)

        self.defi += 1
        defi = self.defi if self.defi_value is None else self.defi_value
        if self.rechallenges:
            self.rechallenges -= 1
            return _xml("ActionFinalize", err="OK", defi=defi, J="1", **session)
        return _xml("ActionFinalize", err="OK", defi=defi, **session)

    def requests(self, action: str, mode: str) -> list[dict[str, str]]:
        return [p for p in self.log if p["action"] == action and p["mode"] == mode]


@pytest.fixture
def server(factory_key, working_key, exchange_key):
    return FakeOtpServer(factory_key, working_key, exchange_key)


@pytest.fixture
def snapshots():
    return []


@pytest.fixture
def engine(server, snapshots):
    async def persist(snapshot):
        snapshots.append(snapshot)

    return OtpEngine(
        FakeSession(server),
        DeviceIdentity.create("mac", device_id="device1"),
        persist,
    )


@pytest.mark.anyio
async def test_activation_without_synchro_seeds_both_keys(engine, server):
    await engine.activate(SMS_CODE, PIN)

    kma = derive_kma(PIN, engine.identity.serial)
    assert engine.keys.k0 == kma
    assert engine.keys.k1 == kma
    assert engine.step is EngineStep.READY
    assert engine.keys.session_id == "session2"
    assert server.requests("ActionFinalize", "ms") == []
    assert server.received_kma == bytes.fromhex(kma)
    assert server.received_pin == PIN.encode()


@pytest.mark.anyio
async def test_activation_requests_carry_code_and_device(engine, server):
    await engine.activate(SMS_CODE, PIN)

    setup = server.requests("ActionSetup", "activate")[0]
    finalize = server.requests("ActionFinalize", "activate")[0]
    assert setup["code"] == SMS_CODE
    assert setup["version"] == "Generator-1.0/0.2.11"
    assert setup["macid"] == "mac"
    assert finalize["serial"] == engine.identity.serial
    assert finalize["code"] == SMS_CODE
    assert {"R0", "R1", "R2"} <= finalize.keys()


@pytest.mark.anyio
async def test_activation_with_one_secondary_exchange(engine, server):
    server.secondary_exchanges = 1

    await engine.activate(SMS_CODE, PIN)

    kma = derive_kma(PIN, engine.identity.serial)
    assert len(server.requests("ActionFinalize", "ms")) == 1
    assert engine.step is EngineStep.READY
    assert engine.keys.secondary_id == "secondary1"
    assert engine.keys.secondary_count == 1
    assert len(server.received_secret) == 16
    assert engine.keys.secondary_value == aes_ecb_encrypt(
        bytes.fromhex(kma), server.received_secret
    ).hex()
    synchro = server.requests("ActionFinalize", "ms")[0]
    assert synchro["ms_id0"] == "exchange1"
    assert synchro["ms_n"] == "1"
    assert engine.keys.k0 == engine.keys.k1 == kma


@pytest.mark.anyio
async def test_multiple_secondary_exchanges_are_unsupported(engine, server):
    server.secondary_exchanges = 2

    with pytest.raises(StellantisConfigError, match="not supported"):
        await engine.activate(SMS_CODE, PIN)
    assert server.requests("ActionFinalize", "ms") == []


@pytest.mark.anyio
async def test_malformed_secondary_count_is_a_config_error(engine, server):
    server.secondary_exchanges = "two"

    with pytest.raises(StellantisConfigError, match="ms_n"):
        await engine.activate(SMS_CODE, PIN)


@pytest.mark.anyio
async def test_malformed_defi_is_wrapped_as_issue_error(engine, server):
    await engine.activate(SMS_CODE, PIN)
    server.defi_value = "x"

    with pytest.raises(OtpIssueError) as excinfo:
        await engine.issue_otp()

    assert isinstance(excinfo.value.__cause__, StellantisConfigError)
    assert excinfo.value.__cause__.payload["defi"] == "x"
    assert engine.otp_count == 0


@pytest.mark.anyio
async def test_issue_otp_after_activation(engine, server):
    server.secondary_exchanges = 1
    await engine.activate(SMS_CODE, PIN)

    code = await engine.issue_otp()

    assert code == compute_otp_code(engine.keys.k1, 41, engine.keys.secondary_value)
    assert engine.defi == 41
    assert engine.otp_count == 1
    assert engine.step is EngineStep.OTP_ISSUED
    otp_setup = server.requests("ActionSetup", "otp")[0]
    assert otp_setup["sid"] == "secondary1"
    otp_finalize = server.requests("ActionFinalize", "otp")[0]
    assert otp_finalize["keytype"] == "0"


@pytest.mark.anyio
async def test_issue_otp_repeats_on_forced_rechallenge(engine, server):
    await engine.activate(SMS_CODE, PIN)
    server.rechallenges = 1

    code = await engine.issue_otp()

    assert len(server.requests("ActionSetup", "otp")) == 2
    assert engine.defi == 42
    assert code == compute_otp_code(engine.keys.k1, 42, engine.keys.secondary_value)


@pytest.mark.anyio
async def test_issue_otp_gives_up_after_second_rechallenge(engine, server):
    await engine.activate(SMS_CODE, PIN)
    server.rechallenges = 2

    with pytest.raises(OtpIssueError):
        await engine.issue_otp()
    assert engine.otp_count == 0


@pytest.mark.anyio
async def test_issue_otp_wraps_setup_rejection(engine, server):
    await engine.activate(SMS_CODE, PIN)
    server.setup_error = "NOK_QUOTA"

    with pytest.raises(OtpIssueError) as excinfo:
        await engine.issue_otp()

    cause = excinfo.value.__cause__
    assert isinstance(cause, StellantisConfigError)
    assert cause.payload == {"err": "NOK_QUOTA"}


@pytest.mark.anyio
async def test_engine_can_issue_again_after_failure(engine, server):
    await engine.activate(SMS_CODE, PIN)
    server.setup_error = "NOK"
    with pytest.raises(OtpIssueError):
        await engine.issue_otp()

    server.setup_error = None
    assert await engine.issue_otp()


@pytest.mark.anyio
async def test_out_of_order_calls_are_rejected(engine):
    with pytest.raises(OtpStateError):
        await engine.setup()
    with pytest.raises(OtpStateError):
        await engine.finalize()
    with pytest.raises(OtpStateError):
        await engine.issue_otp()

    engine.start_activation(SMS_CODE, PIN)
    with pytest.raises(OtpStateError):
        await engine.finalize()
    with pytest.raises(OtpStateError):
        engine.start_activation(SMS_CODE, PIN)


@pytest.mark.anyio
async def test_state_is_persisted_after_every_round(engine, server, snapshots):
    await engine.activate(SMS_CODE, PIN)
    assert [s["step"] for s in snapshots] == ["awaiting_finalize", "ready"]

    await engine.issue_otp()
    assert snapshots[-1]["step"] == "otp_issued"
    assert snapshots[-1]["otp_count"] == 1


@pytest.mark.anyio
async def test_snapshot_round_trip(engine, server):
    server.secondary_exchanges = 1
    await engine.activate(SMS_CODE, PIN)

    restored = OtpEngine.from_snapshot(FakeSession(server), engine.snapshot())

    assert restored.keys == engine.keys
    assert restored.identity == engine.identity
    assert restored.material == engine.material
    assert restored.step is EngineStep.READY
    assert restored.mode is OtpMode.ACTIVATE
    assert restored.snapshot() == engine.snapshot()
    assert await restored.issue_otp()


def test_snapshot_before_activation_is_rejected(engine):
    with pytest.raises(StellantisConfigError, match="before activation"):
        OtpEngine.from_snapshot(None, engine.snapshot())


def test_snapshot_with_unknown_version_is_rejected(engine):
    snapshot = engine.snapshot()
    snapshot["version"] = 99

    with pytest.raises(StellantisConfigError, match="version"):
        OtpEngine.from_snapshot(None, snapshot)


def test_repr_hides_pin(engine):
    engine.start_activation(SMS_CODE, PIN)

    assert PIN not in repr(engine)
    assert SMS_CODE not in repr(engine)


def test_keys_are_set_only_once():
    keys = SessionKeys().synchronized({"id": "a", "tsync": "1"}, "first")
    keys = keys.synchronized({"id": "b", "tsync": "2"}, "second")
    keys = keys.synchronized({}, "third")

    assert keys.k0 == "first"
    assert keys.k1 == "first"
    assert keys.session_id == "b"
    assert keys.tsync == "2"


def test_otp_code_is_pure():
    first = compute_otp_code("k1", 7, "secret")

    assert first == compute_otp_code("k1", 7, "secret")
    assert first != compute_otp_code("k1", 8, "secret")
    assert set(first) <= set("0123456789abcdefghijklmnopqrstuvwxyz")


def test_otp_code_known_value():
    # sha256("k1:7:secret") folded to 38 bits, least significant digit first
    assert compute_otp_code("k1", 7, "secret") == "ydk1n9vc"


def test_challenge_digests_follow_action():
    keys = SessionKeys(k0="zero", k1="one")

    plain = compute_challenge_digests("c", keys, OtpAction.PLAIN, "serial", "5678")
    upgrade = compute_challenge_digests("c", keys, OtpAction.UPGRADE, "serial", "5678")
    synchro = compute_challenge_digests("c", keys, OtpAction.SYNCHRO, "serial", "5678")

    assert plain["R0"] == sha256_hex("c;zero;serial")
    assert plain["R1"] == sha256_hex("c;zero;one")
    assert plain["R2"] == sha256_hex("c;zero;")
    assert upgrade["R0"] == sha256_hex("c;one;serial")
    assert synchro["R2"] == sha256_hex("c;zero;5678")


def test_parse_response_strips_prefix():
    raw = _xml("ActionSetup", err="OK", challenge="abc")

    assert parse_response(raw, "ActionSetup") == {"err": "OK", "challenge": "abc"}


def test_parse_response_finds_nested_element():
    raw = '<?xml version="1.0"?><Reply><ActionFinalize><err>OK</err></ActionFinalize></Reply>'

    assert parse_response(raw, "ActionFinalize") == {"err": "OK"}


@pytest.mark.parametrize("raw", ["not xml at all", _xml("Other", err="OK")])
def test_parse_response_rejects_bad_documents(raw):
    with pytest.raises(StellantisConfigError):
        parse_response(raw, "ActionSetup")


def test_derive_kma_is_truncated_sha256():
    assert derive_kma("5678", "dev/_/salt") == sha256_hex("5678;dev/_/salt")[:32]
