"""Versioned symmetric encryption of record text.

Keys are derived with PBKDF2-SHA256 and data is sealed with AES-CBC/PKCS7.
The on-disk form is a JSON document::

    {"data": <base64 ciphertext>, "iv": <hex>, "salt": <hex>, "algorithm": "AES",
     "keySize": 256, "iterations": 10000, "timestamp": <ISO-8601>,
     "encryptionVersion": 2}

``encryptionVersion`` selects the key-derivation rule:

- v2 (current): key material is ``secret + user_id``. Stable; decrypts at any
  time with the secret alone.
- v1 (legacy, also anything unversioned): key material is
  ``secret + otp_token + user_id``. Only recoverable with the exact token that
  was live at write time, so in practice only inside its ~30 s window. Such
  payloads are read best-effort and never written.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import ClassVar, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pvault.config import DEFAULT_ITERATIONS, DEFAULT_KEY_SIZE
from pvault.errors import DecryptionError, ValidationError

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2
ALGORITHM = "AES"
SALT_BYTES = 16
IV_BYTES = 16

_ENVELOPE_KEYS = ("data", "iv", "salt", "algorithm")


@dataclass(frozen=True)
class KeyMaterial:
    """Everything a caller may contribute to key derivation."""

    secret: str
    user_id: str | None = None
    token: str | None = None  # only consulted for legacy payloads


@dataclass(frozen=True)
class _Payload:
    ciphertext: str
    iv: str
    salt: str
    algorithm: str = ALGORITHM
    key_size: int = DEFAULT_KEY_SIZE
    iterations: int = DEFAULT_ITERATIONS
    timestamp: str = ""

    version: ClassVar[int]

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "data": data["ciphertext"],
            "iv": data["iv"],
            "salt": data["salt"],
            "algorithm": data["algorithm"],
            "keySize": data["key_size"],
            "iterations": data["iterations"],
            "timestamp": data["timestamp"],
            "encryptionVersion": self.version,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass(frozen=True)
class EncryptedPayloadV1(_Payload):
    """Legacy payload: key folded in the OTP token live at write time."""

    version: ClassVar[int] = 1


@dataclass(frozen=True)
class EncryptedPayloadV2(_Payload):
    """Current payload: token-independent key."""

    version: ClassVar[int] = 2


EncryptedPayload = Union[EncryptedPayloadV1, EncryptedPayloadV2]


def payload_from_dict(data: dict) -> EncryptedPayload:
    """Build the tagged payload variant from its JSON form."""
    if not isinstance(data, dict) or not all(data.get(k) for k in ("data", "iv", "salt")):
        raise DecryptionError("Not an encrypted payload: missing data/iv/salt")
    try:
        fields = {
            "ciphertext": str(data["data"]),
            "iv": str(data["iv"]),
            "salt": str(data["salt"]),
            "algorithm": str(data.get("algorithm") or ALGORITHM),
            "key_size": int(data.get("keySize") or DEFAULT_KEY_SIZE),
            "iterations": int(data.get("iterations") or DEFAULT_ITERATIONS),
            "timestamp": str(data.get("timestamp") or ""),
        }
    except (TypeError, ValueError) as e:
        raise DecryptionError(f"Malformed encrypted payload: {e}") from None
    if data.get("encryptionVersion") == CURRENT_VERSION:
        return EncryptedPayloadV2(**fields)
    return EncryptedPayloadV1(**fields)


def payload_from_json(blob: str) -> EncryptedPayload:
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        raise DecryptionError(f"Malformed encrypted payload: {e}") from None
    return payload_from_dict(data)


def is_encrypted(blob: str) -> bool:
    """Heuristic: a JSON object carrying truthy data/iv/salt/algorithm.

    A plaintext body that is itself such a JSON object is misclassified.
    """
    try:
        parsed = json.loads(blob)
    except (json.JSONDecodeError, TypeError):
        return False
    return isinstance(parsed, dict) and all(parsed.get(k) for k in _ENVELOPE_KEYS)


# ── Primitives ────────────────────────────────────────────────


def _derive_key(material: str, salt: bytes, iterations: int, key_size: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=key_size // 8,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(material.encode("utf-8"))


def _seal(key: bytes, iv: bytes, plaintext: str) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _open(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def _stable_material(secret: str, user_id: str | None) -> str:
    return secret + (user_id or "")


def _legacy_material(secret: str, token: str | None, user_id: str | None) -> str:
    return secret + (token or "") + (user_id or "")


class EncryptionEngine:
    """Encrypts with the current scheme, decrypts either scheme."""

    def __init__(
        self,
        iterations: int = DEFAULT_ITERATIONS,
        key_size: int = DEFAULT_KEY_SIZE,
    ) -> None:
        if key_size not in (128, 192, 256):
            raise ValidationError(f"Unsupported AES key size: {key_size}")
        self.iterations = iterations
        self.key_size = key_size

    def encrypt(self, plaintext: str, secret: str, user_id: str | None = None) -> EncryptedPayloadV2:
        if not secret:
            raise ValidationError("Master secret is required for encryption")
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        key = _derive_key(_stable_material(secret, user_id), salt, self.iterations, self.key_size)
        ciphertext = _seal(key, iv, plaintext)
        return EncryptedPayloadV2(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=iv.hex(),
            salt=salt.hex(),
            algorithm=ALGORITHM,
            key_size=self.key_size,
            iterations=self.iterations,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        )

    def decrypt(
        self,
        payload: EncryptedPayload,
        secret: str,
        user_id: str | None = None,
        token: str | None = None,
    ) -> str:
        """Recover plaintext, dispatching key derivation on the payload version."""
        if not secret:
            raise DecryptionError("Master secret is required for decryption")

        if isinstance(payload, EncryptedPayloadV2):
            material = _stable_material(secret, user_id)
        else:
            logger.warning("Decrypting legacy (v1) payload; succeeds only with its original token")
            material = _legacy_material(secret, token, user_id)

        key_size = payload.key_size if payload.key_size in (128, 192, 256) else self.key_size
        try:
            salt = bytes.fromhex(payload.salt)
            iv = bytes.fromhex(payload.iv)
            ciphertext = base64.b64decode(payload.ciphertext, validate=True)
            key = _derive_key(material, salt, payload.iterations or self.iterations, key_size)
            raw = _open(key, iv, ciphertext)
            plaintext = raw.decode("utf-8")
        except (ValueError, binascii.Error) as e:
            # UnicodeDecodeError is a ValueError too
            raise DecryptionError(
                f"Decryption failed - invalid key or corrupted data ({type(e).__name__})"
            ) from None

        if not plaintext:
            raise DecryptionError("Decryption failed - invalid key or corrupted data")
        return plaintext

    # ── Text-level helpers used by the record store ───────────

    def encrypt_text(self, plaintext: str, key: KeyMaterial) -> str:
        return self.encrypt(plaintext, key.secret, key.user_id).to_json()

    def decrypt_text(self, blob: str, key: KeyMaterial) -> tuple[str, int]:
        """Decrypt a stored JSON blob. Returns (plaintext, payload version)."""
        payload = payload_from_json(blob)
        text = self.decrypt(payload, key.secret, key.user_id, key.token)
        return text, payload.version
