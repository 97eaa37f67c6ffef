"""Tests for the authentication session gate."""

import pyotp
import pytest
from pathlib import Path

from pvault.errors import AuthRequiredError, ConfigError
from pvault.security.otp import OTPEngine
from pvault.security.session import SESSION_TTL, AuthSessionGate, GateState

NOW = 1_760_000_020.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gate(tmp_path: Path, clock: FakeClock) -> AuthSessionGate:
    return AuthSessionGate(OTPEngine(tmp_path, clock=clock), True, "master-secret", clock=clock)


def _verify(gate: AuthSessionGate, clock: FakeClock, secret: str, user_id=None):
    return gate.verify(pyotp.TOTP(secret).at(int(clock.now)), user_id=user_id)


class TestStates:
    def test_encryption_off(self, tmp_path: Path, clock: FakeClock):
        gate = AuthSessionGate(OTPEngine(tmp_path, clock=clock), False, None, clock=clock)
        assert gate.state is GateState.NO_ENCRYPTION
        assert gate.key_material() is None

    def test_requires_setup(self, gate: AuthSessionGate):
        assert gate.state is GateState.REQUIRES_OTP_SETUP
        with pytest.raises(AuthRequiredError, match="not set up"):
            gate.key_material("get")

    def test_requires_verification(self, gate: AuthSessionGate):
        gate.setup()
        assert gate.state is GateState.REQUIRES_VERIFICATION
        with pytest.raises(AuthRequiredError, match="verification required"):
            gate.key_material("get")

    def test_session_active(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        assert _verify(gate, clock, secret, user_id="me").valid
        assert gate.state is GateState.SESSION_ACTIVE
        key = gate.key_material()
        assert key.secret == "master-secret"
        assert key.user_id == "me"
        assert key.token == pyotp.TOTP(secret).at(int(NOW))

    def test_session_without_encryption_key(self, tmp_path: Path, clock: FakeClock):
        gate = AuthSessionGate(OTPEngine(tmp_path, clock=clock), True, None, clock=clock)
        secret = gate.setup().secret
        assert _verify(gate, clock, secret).valid
        with pytest.raises(ConfigError, match="no encryption key"):
            gate.key_material("get")

    def test_failed_verify_creates_no_session(self, gate: AuthSessionGate):
        gate.setup()
        assert not gate.verify("000000x").valid
        assert gate.state is GateState.REQUIRES_VERIFICATION

    def test_verify_before_setup(self, gate: AuthSessionGate):
        with pytest.raises(AuthRequiredError):
            gate.verify("123456")


class TestLifecycle:
    def test_expires_after_five_minutes(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        _verify(gate, clock, secret)
        clock.now = NOW + SESSION_TTL - 1
        assert gate.key_material() is not None
        assert gate.session_info()["seconds_remaining"] == 1
        clock.now = NOW + SESSION_TTL
        with pytest.raises(AuthRequiredError):
            gate.key_material()
        assert gate.session_info() == {"active": False, "seconds_remaining": 0, "user_id": None}

    def test_lock_is_immediate(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        _verify(gate, clock, secret)
        assert gate.lock() is True
        with pytest.raises(AuthRequiredError):
            gate.key_material()
        assert gate.lock() is False

    def test_disable_clears_session(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        _verify(gate, clock, secret)
        gate.disable()
        assert gate.state is GateState.REQUIRES_OTP_SETUP
        with pytest.raises(AuthRequiredError):
            gate.key_material()

        gate.enable()
        assert gate.state is GateState.REQUIRES_VERIFICATION

    def test_reverify_replaces_session(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        _verify(gate, clock, secret, user_id="a")
        clock.now = NOW + 200
        _verify(gate, clock, secret, user_id="b")
        assert gate.session_info()["user_id"] == "b"
        clock.now = NOW + SESSION_TTL + 100
        assert gate.state is GateState.SESSION_ACTIVE

    def test_new_setup_clears_session(self, gate: AuthSessionGate, clock: FakeClock):
        secret = gate.setup().secret
        _verify(gate, clock, secret)
        gate.setup()
        assert gate.state is GateState.REQUIRES_VERIFICATION

    def test_backup_code_opens_session(self, gate: AuthSessionGate):
        code = gate.setup().backup_codes[0]
        assert gate.verify(code, use_backup_code=True).valid
        assert gate.key_material().token == code
