"""
Tests for AES-256-GCM token encryption.
"""

import base64

import pytest

from config.settings import config
from connectors.encryption import (
    NONCE_SIZE,
    TAG_SIZE,
    decrypt_optional,
    decrypt_token,
    encrypt_token,
    is_encryption_configured,
)
from utils.errors import ConfigError, IntegrityError

SECRET = "correct horse battery staple"


def _flip_byte(payload: str, index: int) -> str:
    raw = bytearray(base64.b64decode(payload))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestRoundTrip:
    @pytest.mark.parametrize("plaintext", ["EAABsbCS1iHgBAK", "", "tökén ✓ with unicode", "x" * 4096])
    def test_decrypt_returns_original(self, plaintext):
        assert decrypt_token(encrypt_token(plaintext, SECRET), SECRET) == plaintext

    def test_default_secret_comes_from_config(self):
        payload = encrypt_token("abc")
        assert decrypt_token(payload, config.encryption_secret) == "abc"

    def test_payload_layout(self):
        raw = base64.b64decode(encrypt_token("abc", SECRET))
        assert len(raw) == NONCE_SIZE + TAG_SIZE + len("abc")

    def test_nonce_freshness(self):
        first = encrypt_token("same token", SECRET)
        second = encrypt_token("same token", SECRET)
        assert first != second
        assert base64.b64decode(first)[:NONCE_SIZE] != base64.b64decode(second)[:NONCE_SIZE]


class TestIntegrity:
    def test_flipped_ciphertext_byte(self):
        payload = encrypt_token("secret-token", SECRET)
        with pytest.raises(IntegrityError):
            decrypt_token(_flip_byte(payload, NONCE_SIZE + TAG_SIZE + 2), SECRET)

    def test_flipped_tag_byte(self):
        payload = encrypt_token("secret-token", SECRET)
        with pytest.raises(IntegrityError):
            decrypt_token(_flip_byte(payload, NONCE_SIZE + 1), SECRET)

    def test_flipped_nonce_byte(self):
        payload = encrypt_token("secret-token", SECRET)
        with pytest.raises(IntegrityError):
            decrypt_token(_flip_byte(payload, 0), SECRET)

    def test_wrong_secret(self):
        payload = encrypt_token("secret-token", SECRET)
        with pytest.raises(IntegrityError):
            decrypt_token(payload, "another secret")

    def test_truncated_payload(self):
        short = base64.b64encode(b"\x00" * (NONCE_SIZE + TAG_SIZE - 1)).decode("ascii")
        with pytest.raises(IntegrityError):
            decrypt_token(short, SECRET)

    def test_not_base64(self):
        with pytest.raises(IntegrityError):
            decrypt_token("not base64 at all!!", SECRET)


class TestConfiguration:
    def test_missing_secret_on_encrypt(self, monkeypatch):
        monkeypatch.setattr(config, "encryption_secret", "")
        with pytest.raises(ConfigError):
            encrypt_token("abc")

    def test_missing_secret_on_decrypt(self, monkeypatch):
        payload = encrypt_token("abc", SECRET)
        monkeypatch.setattr(config, "encryption_secret", "")
        with pytest.raises(ConfigError):
            decrypt_token(payload)

    def test_is_encryption_configured(self, monkeypatch):
        assert is_encryption_configured() is True
        monkeypatch.setattr(config, "encryption_secret", "")
        assert is_encryption_configured() is False

    def test_decrypt_optional(self):
        assert decrypt_optional(None) is None
        assert decrypt_optional("") is None
        assert decrypt_optional(encrypt_token("t")) == "t"
