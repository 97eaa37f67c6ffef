"""Encryption, one-time passwords, and the session gate that joins them."""

from pvault.security.encryption import (
    EncryptedPayload,
    EncryptedPayloadV1,
    EncryptedPayloadV2,
    EncryptionEngine,
    KeyMaterial,
)
from pvault.security.otp import OTPEngine, VerificationResult
from pvault.security.session import AuthSession, AuthSessionGate, GateState

__all__ = [
    "AuthSession",
    "AuthSessionGate",
    "EncryptedPayload",
    "EncryptedPayloadV1",
    "EncryptedPayloadV2",
    "EncryptionEngine",
    "GateState",
    "KeyMaterial",
    "OTPEngine",
    "VerificationResult",
]
