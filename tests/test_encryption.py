"""Tests for versioned encryption."""

import base64
import json
import os

import pytest

from pvault.errors import DecryptionError, ValidationError
from pvault.security.encryption import (
    EncryptedPayloadV1,
    EncryptedPayloadV2,
    EncryptionEngine,
    KeyMaterial,
    _derive_key,
    _legacy_material,
    _seal,
    is_encrypted,
    payload_from_dict,
    payload_from_json,
)

SECRET = "master-secret"


@pytest.fixture
def engine() -> EncryptionEngine:
    # Lowest allowed iteration count keeps the suite fast
    return EncryptionEngine(iterations=1000)


def _legacy_payload(plaintext: str, token: str, user_id: str | None = None) -> EncryptedPayloadV1:
    salt, iv = os.urandom(16), os.urandom(16)
    key = _derive_key(_legacy_material(SECRET, token, user_id), salt, 1000, 256)
    return EncryptedPayloadV1(
        ciphertext=base64.b64encode(_seal(key, iv, plaintext)).decode(),
        iv=iv.hex(),
        salt=salt.hex(),
        iterations=1000,
    )


class TestRoundTrip:
    @pytest.mark.parametrize("text", ["555-1234", "ünïcødé ✓", "x" * 5000, "---\nscope: a\n---\n"])
    def test_current_version(self, engine: EncryptionEngine, text):
        payload = engine.encrypt(text, SECRET)
        assert isinstance(payload, EncryptedPayloadV2)
        assert engine.decrypt(payload, SECRET) == text

    def test_independent_of_token(self, engine: EncryptionEngine):
        payload = engine.encrypt("hello", SECRET, user_id="u1")
        # A v2 payload never consults the token, whatever the caller passes
        assert engine.decrypt(payload, SECRET, user_id="u1", token="123456") == "hello"
        assert engine.decrypt(payload, SECRET, user_id="u1", token="999999") == "hello"

    def test_fresh_salt_and_iv(self, engine: EncryptionEngine):
        a = engine.encrypt("same", SECRET)
        b = engine.encrypt("same", SECRET)
        assert a.salt != b.salt
        assert a.iv != b.iv
        assert a.ciphertext != b.ciphertext

    def test_user_id_is_part_of_key(self, engine: EncryptionEngine):
        payload = engine.encrypt("hello", SECRET, user_id="alice")
        with pytest.raises(DecryptionError):
            engine.decrypt(payload, SECRET, user_id="bob")

    def test_wrong_secret(self, engine: EncryptionEngine):
        payload = engine.encrypt("hello", SECRET)
        with pytest.raises(DecryptionError):
            engine.decrypt(payload, "other-secret")

    def test_empty_secret_rejected(self, engine: EncryptionEngine):
        with pytest.raises(ValidationError):
            engine.encrypt("hello", "")

    def test_key_sizes(self):
        for size in (128, 192, 256):
            engine = EncryptionEngine(iterations=1000, key_size=size)
            assert engine.decrypt(engine.encrypt("k", SECRET), SECRET) == "k"
        with pytest.raises(ValidationError):
            EncryptionEngine(key_size=512)


class TestLegacy:
    def test_decrypts_with_original_token(self, engine: EncryptionEngine):
        payload = _legacy_payload("old data", token="123456")
        assert engine.decrypt(payload, SECRET, token="123456") == "old data"

    def test_fails_once_token_changes(self, engine: EncryptionEngine):
        payload = _legacy_payload("old data", token="123456")
        with pytest.raises(DecryptionError):
            engine.decrypt(payload, SECRET, token="654321")

    def test_unversioned_treated_as_legacy(self, engine: EncryptionEngine):
        doc = _legacy_payload("old data", token="123456").to_dict()
        del doc["encryptionVersion"]
        payload = payload_from_dict(doc)
        assert isinstance(payload, EncryptedPayloadV1)
        assert engine.decrypt(payload, SECRET, token="123456") == "old data"


class TestWireFormat:
    def test_json_fields(self, engine: EncryptionEngine):
        doc = json.loads(engine.encrypt("hello", SECRET).to_json())
        assert set(doc) == {
            "data", "iv", "salt", "algorithm", "keySize", "iterations",
            "timestamp", "encryptionVersion",
        }
        assert doc["algorithm"] == "AES"
        assert doc["encryptionVersion"] == 2
        assert doc["keySize"] == 256
        assert len(bytes.fromhex(doc["salt"])) == 16

    def test_text_helpers(self, engine: EncryptionEngine):
        key = KeyMaterial(secret=SECRET, user_id="u")
        blob = engine.encrypt_text("body", key)
        assert is_encrypted(blob)
        assert engine.decrypt_text(blob, key) == ("body", 2)

    def test_malformed_payload(self):
        with pytest.raises(DecryptionError):
            payload_from_json("{not json")
        with pytest.raises(DecryptionError):
            payload_from_dict({"data": "x"})

    def test_corrupted_ciphertext(self, engine: EncryptionEngine):
        doc = engine.encrypt("hello", SECRET).to_dict()
        doc["data"] = base64.b64encode(b"\x00" * 16).decode()
        with pytest.raises(DecryptionError):
            engine.decrypt(payload_from_dict(doc), SECRET)


class TestIsEncrypted:
    def test_plain_markdown(self):
        assert not is_encrypted("---\ncategory: phone\n---\n\n555-1234\n")

    def test_other_json(self):
        assert not is_encrypted('{"data": "x"}')
        assert not is_encrypted("[1, 2, 3]")

    def test_envelope(self):
        assert is_encrypted('{"data": "x", "iv": "00", "salt": "00", "algorithm": "AES"}')
