"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  The key is
the SHA-256 digest of the configured secret (``config.encryption_secret``,
env var: ``ENCRYPTION_SECRET``) unless a secret is passed explicitly.

Stored format is a single base64 string::

    nonce (12 bytes) || auth tag (16 bytes) || ciphertext

A fresh random nonce is drawn on every call, so encrypting the same token
twice never yields the same payload.  Unlike a best-effort cipher, a missing
secret is an error here: tokens are never stored or returned as plaintext.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import config
from utils.errors import ConfigError, IntegrityError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


def _derive_key(secret: Optional[str]) -> bytes:
    secret = config.encryption_secret if secret is None else secret
    if not secret:
        raise ConfigError("ENCRYPTION_SECRET is not configured")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_token(plaintext: str, secret: Optional[str] = None) -> str:
    """
    Encrypt a token string for database storage.

    Returns ``base64(nonce || tag || ciphertext)``.
    Raises ``ConfigError`` if no secret is available.
    """
    key = _derive_key(secret)
    nonce = os.urandom(NONCE_SIZE)
    # AESGCM appends the tag to the ciphertext; stored layout puts it first.
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_token(payload: str, secret: Optional[str] = None) -> str:
    """
    Decrypt a token string read from the database.

    Raises
    ------
    ConfigError     – no secret available
    IntegrityError  – payload is malformed or fails authentication
    """
    key = _derive_key(secret)
    try:
        raw = base64.b64decode(payload.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise IntegrityError("Encrypted payload is not valid base64") from exc

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise IntegrityError("Encrypted payload is truncated")

    nonce = raw[:NONCE_SIZE]
    tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = raw[NONCE_SIZE + TAG_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise IntegrityError("Encrypted payload failed authentication") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise IntegrityError("Decrypted payload is not valid UTF-8") from exc


def decrypt_optional(payload: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """Decrypt ``payload`` if present; empty or missing payloads map to None."""
    if not payload:
        return None
    return decrypt_token(payload, secret)


def is_encryption_configured() -> bool:
    """Check whether a token encryption secret is set."""
    configured = bool(config.encryption_secret)
    if not configured:
        logger.warning(
            "ENCRYPTION_SECRET not set — token storage, refresh and sync will fail "
            "with a configuration error until it is provided."
        )
    return configured
