"""Time-based one-time passwords and single-use backup codes.

State lives in ``<data_dir>/.security/otp-config.json``::

    {"config": {"secret", "issuer", "label", "digits", "period", "window",
                "algorithm", "enabled"},
     "backupCodes": [{"code", "used", "usedAt"?, "created"}],
     "created": <ISO-8601>, "updated": <ISO-8601>}

Every change rewrites the whole document atomically.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import pyotp

from pvault.errors import AuthRequiredError, ValidationError
from pvault.fsutil import atomic_write_text

logger = logging.getLogger(__name__)

SECURITY_DIRNAME = ".security"
OTP_FILENAME = "otp-config.json"

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits

# Wider comparison used only for diagnostics, never for acceptance.
DIAGNOSTIC_WINDOW = 5

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class OTPConfig:
    secret: str
    issuer: str = "Personal Vault"
    label: str = "Personal Data Access"
    digits: int = 6
    period: int = 30
    window: int = 1
    algorithm: str = "sha1"
    enabled: bool = False

    def validate(self) -> None:
        if not self.secret:
            raise ValidationError("OTP secret is required")
        if not 4 <= self.digits <= 8:
            raise ValidationError("OTP digits must be between 4 and 8")
        if not 15 <= self.period <= 300:
            raise ValidationError("OTP period must be between 15 and 300 seconds")
        if not 0 <= self.window <= 10:
            raise ValidationError("OTP window must be between 0 and 10")
        if self.algorithm not in _DIGESTS:
            raise ValidationError(f"Unsupported OTP algorithm: {self.algorithm}")

    @classmethod
    def from_dict(cls, data: dict) -> OTPConfig:
        config = cls(
            secret=str(data.get("secret", "")),
            issuer=data.get("issuer", cls.issuer),
            label=data.get("label", cls.label),
            digits=int(data.get("digits", cls.digits)),
            period=int(data.get("period", cls.period)),
            window=int(data.get("window", cls.window)),
            algorithm=str(data.get("algorithm", cls.algorithm)).lower(),
            enabled=bool(data.get("enabled", False)),
        )
        config.validate()
        return config

    def public_dict(self) -> dict:
        """Config without the secret."""
        data = asdict(self)
        data.pop("secret")
        return data


@dataclass
class BackupCode:
    code: str
    used: bool = False
    used_at: str | None = None
    created: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        data: dict = {"code": self.code, "used": self.used}
        if self.used_at:
            data["usedAt"] = self.used_at
        data["created"] = self.created
        return data

    @classmethod
    def from_dict(cls, data: dict) -> BackupCode:
        return cls(
            code=str(data["code"]).upper(),
            used=bool(data.get("used", False)),
            used_at=data.get("usedAt"),
            created=data.get("created") or _now_iso(),
        )


@dataclass
class VerificationResult:
    valid: bool
    time_remaining: int | None = None  # seconds left in the current TOTP step
    token: str | None = None
    used_backup_code: bool = False
    near_miss: bool = False  # matched only within DIAGNOSTIC_WINDOW


@dataclass
class SetupResult:
    secret: str
    provisioning_uri: str
    backup_codes: list[str]


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [
        "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


class OTPEngine:
    """Owns the shared TOTP secret, its settings and the backup codes."""

    def __init__(self, data_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self.path = data_dir / SECURITY_DIRNAME / OTP_FILENAME
        self._clock = clock
        self.config: OTPConfig | None = None
        self._backup_codes: list[BackupCode] = []
        self._created: str | None = None
        self.load()

    # ── Persistence ───────────────────────────────────────────

    def load(self) -> None:
        self.config = None
        self._backup_codes = []
        self._created = None
        if not self.path.exists():
            return
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
            self.config = OTPConfig.from_dict(doc["config"])
            self._backup_codes = [BackupCode.from_dict(c) for c in doc.get("backupCodes", [])]
            self._created = doc.get("created")
            logger.info("OTP configuration loaded (enabled=%s)", self.config.enabled)
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning("Failed to load OTP configuration from %s: %s", self.path, e)
            self.config = None
            self._backup_codes = []

    def _require_config(self) -> OTPConfig:
        if self.config is None:
            raise AuthRequiredError("OTP is not configured. Run setup first.")
        return self.config

    def _save(self) -> None:
        config = self._require_config()
        now = _now_iso()
        doc = {
            "config": asdict(config),
            "backupCodes": [c.to_dict() for c in self._backup_codes],
            "created": self._created or now,
            "updated": now,
        }
        atomic_write_text(self.path, json.dumps(doc, indent=2) + "\n")
        self._created = doc["created"]

    # ── Setup & lifecycle ─────────────────────────────────────

    def setup(
        self,
        secret: str | None = None,
        issuer: str | None = None,
        label: str | None = None,
        digits: int | None = None,
        period: int | None = None,
        window: int | None = None,
        algorithm: str | None = None,
    ) -> SetupResult:
        """Create (or replace) the OTP configuration and a fresh set of backup codes."""
        config = OTPConfig(
            secret=secret or pyotp.random_base32(),
            issuer=issuer or OTPConfig.issuer,
            label=label or OTPConfig.label,
            digits=digits if digits is not None else OTPConfig.digits,
            period=period if period is not None else OTPConfig.period,
            window=window if window is not None else OTPConfig.window,
            algorithm=(algorithm or OTPConfig.algorithm).lower(),
            enabled=True,
        )
        config.validate()

        codes = generate_backup_codes()
        self.config = config
        self._backup_codes = [BackupCode(code) for code in codes]
        self._created = None
        self._save()
        logger.info("OTP setup completed (issuer=%s, digits=%d)", config.issuer, config.digits)
        return SetupResult(
            secret=config.secret,
            provisioning_uri=self.provisioning_uri(),
            backup_codes=codes,
        )

    def is_configured(self) -> bool:
        return self.config is not None

    def is_enabled(self) -> bool:
        return self.config is not None and self.config.enabled

    def disable(self) -> None:
        """Turn OTP off but keep the secret and codes on disk."""
        if self.config is None:
            return
        self.config.enabled = False
        self._save()
        logger.info("OTP disabled")

    def enable(self) -> None:
        self._require_config().enabled = True
        self._save()
        logger.info("OTP re-enabled")

    def regenerate_backup_codes(self) -> list[str]:
        self._require_config()
        codes = generate_backup_codes()
        self._backup_codes = [BackupCode(code) for code in codes]
        self._save()
        logger.info("Regenerated %d backup codes; previous codes invalidated", len(codes))
        return codes

    # ── TOTP ──────────────────────────────────────────────────

    def _totp(self) -> pyotp.TOTP:
        config = self._require_config()
        return pyotp.TOTP(
            config.secret,
            digits=config.digits,
            digest=_DIGESTS[config.algorithm],
            interval=config.period,
            name=config.label,
            issuer=config.issuer,
        )

    def provisioning_uri(self) -> str:
        config = self._require_config()
        return self._totp().provisioning_uri(name=config.label, issuer_name=config.issuer)

    def time_remaining(self) -> int:
        """Seconds left in the current step, from the clock rather than a library counter."""
        period = self.config.period if self.config else OTPConfig.period
        return period - (int(self._clock()) % period)

    def current_token(self) -> str:
        if not self.is_enabled():
            raise AuthRequiredError("OTP is not enabled")
        return self._totp().at(int(self._clock()))

    def verify(self, token: str, use_backup_code: bool = False) -> VerificationResult:
        """Check a TOTP token or consume a backup code. Fails closed when disabled."""
        if not self.is_enabled():
            logger.warning("OTP verification attempted while OTP is disabled")
            return VerificationResult(valid=False)

        clean = re.sub(r"\s", "", token or "")
        if not clean:
            return VerificationResult(valid=False)

        if use_backup_code:
            return self._verify_backup_code(clean)

        config = self._require_config()
        now = int(self._clock())
        totp = self._totp()
        if totp.verify(clean, for_time=now, valid_window=config.window):
            return VerificationResult(
                valid=True, time_remaining=self.time_remaining(), token=clean
            )

        near_miss = totp.verify(clean, for_time=now, valid_window=DIAGNOSTIC_WINDOW)
        logger.debug(
            "OTP rejected (window=%d); within ±%d steps: %s",
            config.window,
            DIAGNOSTIC_WINDOW,
            near_miss,
        )
        return VerificationResult(valid=False, near_miss=near_miss)

    def _verify_backup_code(self, code: str) -> VerificationResult:
        wanted = code.upper()
        for backup in self._backup_codes:
            if not backup.used and secrets.compare_digest(backup.code.encode(), wanted.encode()):
                backup.used = True
                backup.used_at = _now_iso()
                self._save()
                logger.info(
                    "Backup code consumed; %d remaining", self.remaining_backup_codes()
                )
                return VerificationResult(valid=True, token=wanted, used_backup_code=True)
        return VerificationResult(valid=False)

    # ── Introspection ─────────────────────────────────────────

    def remaining_backup_codes(self) -> int:
        return sum(1 for c in self._backup_codes if not c.used)

    def status(self) -> dict:
        return {
            "configured": self.is_configured(),
            "enabled": self.is_enabled(),
            "config": self.config.public_dict() if self.config else None,
            "backup_codes_remaining": self.remaining_backup_codes(),
        }

    def debug_info(self) -> dict:
        now = int(self._clock())
        if not self.is_enabled():
            return {"enabled": False, "timestamp": now}
        config = self._require_config()
        totp = self._totp()
        return {
            "enabled": True,
            "timestamp": now,
            "current_token": totp.at(now),
            "next_token": totp.at(now + config.period),
            "time_remaining": self.time_remaining(),
            "config": config.public_dict(),
            "secret_preview": config.secret[:4] + "...",
        }
