"""Authentication session gate — the single choke point for key material.

States::

    NO_ENCRYPTION            encryption off; every call proceeds without a key
    REQUIRES_OTP_SETUP       encryption on, OTP not configured (or disabled)
    REQUIRES_VERIFICATION    OTP on, no live session
    SESSION_ACTIVE           verified within the last SESSION_TTL seconds

The session is process-wide, in memory only, and replaced wholesale on every
transition. Nothing outside this module reads or writes it.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from pvault.errors import AuthRequiredError, ConfigError
from pvault.security.encryption import KeyMaterial
from pvault.security.otp import OTPEngine, SetupResult, VerificationResult

logger = logging.getLogger(__name__)

SESSION_TTL = 5 * 60  # seconds, independent of the TOTP period


class GateState(enum.Enum):
    NO_ENCRYPTION = "no_encryption"
    REQUIRES_OTP_SETUP = "requires_otp_setup"
    REQUIRES_VERIFICATION = "requires_verification"
    SESSION_ACTIVE = "session_active"


@dataclass(frozen=True)
class AuthSession:
    verified_token: str
    expires_at: float
    user_id: str | None = None

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class AuthSessionGate:
    """Decides whether a record-touching call may proceed, and with which key."""

    def __init__(
        self,
        otp: OTPEngine,
        encryption_enabled: bool,
        secret: str | None,
        clock: Callable[[], float] = time.time,
        session_ttl: float = SESSION_TTL,
    ) -> None:
        self.otp = otp
        self.encryption_enabled = encryption_enabled
        self._secret = secret
        self._clock = clock
        self._session_ttl = session_ttl
        self._session: AuthSession | None = None

    # ── State ─────────────────────────────────────────────────

    def _live_session(self) -> AuthSession | None:
        session = self._session
        if session is not None and session.is_valid(self._clock()):
            return session
        return None

    @property
    def state(self) -> GateState:
        if not self.encryption_enabled:
            return GateState.NO_ENCRYPTION
        if not self.otp.is_enabled():
            return GateState.REQUIRES_OTP_SETUP
        if self._live_session() is None:
            return GateState.REQUIRES_VERIFICATION
        return GateState.SESSION_ACTIVE

    def key_material(self, operation: str | None = None) -> KeyMaterial | None:
        """Key material for an encrypted read or write; None when encryption is off.

        Must run before every record-touching call, listing and search included.
        """
        state = self.state
        if state is GateState.NO_ENCRYPTION:
            return None
        if state is GateState.REQUIRES_OTP_SETUP:
            raise AuthRequiredError(
                "Encryption is enabled but OTP is not set up. Run OTP setup first.",
                operation=operation,
            )
        session = self._live_session()
        if session is None:
            raise AuthRequiredError(
                "OTP verification required. Verify a token to access encrypted data.",
                operation=operation,
            )
        if self._secret is None:
            raise ConfigError(
                "Encryption is enabled but no encryption key is configured",
                operation=operation,
            )
        return KeyMaterial(
            secret=self._secret,
            user_id=session.user_id,
            token=session.verified_token,
        )

    def session_info(self) -> dict:
        session = self._live_session()
        if session is None:
            return {"active": False, "seconds_remaining": 0, "user_id": None}
        return {
            "active": True,
            "seconds_remaining": int(session.expires_at - self._clock()),
            "user_id": session.user_id,
        }

    # ── Transitions ───────────────────────────────────────────

    def setup(self, **options) -> SetupResult:
        """Configure OTP. A new secret invalidates any existing session."""
        result = self.otp.setup(**options)
        self._clear("setup")
        return result

    def verify(
        self,
        token: str,
        use_backup_code: bool = False,
        user_id: str | None = None,
    ) -> VerificationResult:
        if not self.otp.is_enabled():
            raise AuthRequiredError("OTP is not enabled. Run OTP setup first.", operation="verify")
        result = self.otp.verify(token, use_backup_code=use_backup_code)
        if result.valid:
            self._session = AuthSession(
                verified_token=result.token or "",
                expires_at=self._clock() + self._session_ttl,
                user_id=user_id,
            )
            logger.info("OTP session created (valid %ds)", int(self._session_ttl))
        else:
            logger.warning("OTP verification failed")
        return result

    def lock(self) -> bool:
        """End the session now. Returns whether a live session was ended."""
        had_session = self._live_session() is not None
        self._clear("lock")
        return had_session

    def disable(self) -> None:
        self.otp.disable()
        self._clear("disable")

    def enable(self) -> None:
        self.otp.enable()

    def _clear(self, reason: str) -> None:
        if self._session is not None:
            logger.info("OTP session cleared (%s)", reason)
        self._session = None
