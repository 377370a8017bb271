# Overview: AES-256-GCM encryption of customer PII at rest.

"""
Customer phone numbers and shipping addresses are stored as
`base64(iv):base64(tag):base64(ciphertext)` when ENCRYPTION_KEY (64 hex
characters) is configured. Without a key, development stores plaintext and
production refuses to start (see create_app).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app

from ..config import is_production


logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16


class EncryptionConfigError(RuntimeError):
    """ENCRYPTION_KEY missing or malformed where it is required."""


def _parse_key(raw: str | None) -> bytes | None:
    if not raw:
        return None
    if len(raw) != 64:
        raise EncryptionConfigError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise EncryptionConfigError("ENCRYPTION_KEY must be hexadecimal")


def check_config(config) -> None:
    """Start-up check: production requires a well-formed key."""
    raw = config.get("ENCRYPTION_KEY")
    if not raw:
        if is_production(config):
            raise EncryptionConfigError(
                "ENCRYPTION_KEY is required in production. PII cannot be stored without encryption."
            )
        logger.warning("ENCRYPTION_KEY not set - PII encryption disabled (development only)")
        return
    _parse_key(raw)


def _key() -> bytes | None:
    try:
        return _parse_key(current_app.config.get("ENCRYPTION_KEY"))
    except EncryptionConfigError:
        if is_production(current_app.config):
            raise
        logger.error("ENCRYPTION_KEY is malformed - PII encryption disabled")
        return None


def is_enabled() -> bool:
    return _key() is not None


def generate_key() -> str:
    return os.urandom(32).hex()


def encrypt(plaintext: str | None) -> str | None:
    if not plaintext:
        return plaintext
    key = _key()
    if key is None:
        return plaintext

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext))


def decrypt(value: str | None) -> str | None:
    """Plaintext for stored values; values that are not ciphertext pass through."""
    if not value:
        return value
    parts = value.split(":")
    if len(parts) != 3:
        return value
    key = _key()
    if key is None:
        return value

    try:
        iv, tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
        return AESGCM(key).decrypt(iv, ciphertext + tag, None).decode("utf-8")
    except (binascii.Error, InvalidTag, ValueError):
        logger.error("PII decryption failed; returning stored value")
        return value


def encrypt_address(address: dict | None) -> str | None:
    if not address:
        return None
    return encrypt(json.dumps(address, sort_keys=True))


def decrypt_address(value: str | None):
    if not value:
        return None
    text = decrypt(value)
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text
