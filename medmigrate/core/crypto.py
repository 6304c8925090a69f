"""
Credential encryption for vendor API secrets.

AES-256-GCM with a random 12-byte IV. The ciphertext envelope is
base64(iv + ciphertext + tag), the tag being the trailing 16 bytes that
AESGCM appends.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medmigrate.core.config import get_settings
from medmigrate.core.errors import CredentialError

logger = structlog.get_logger(__name__)

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


def _load_key(key: str | None = None) -> bytes:
    raw = key if key is not None else get_settings().migration_encryption_key
    if not raw:
        raise CredentialError(
            "MIGRATION_ENCRYPTION_KEY environment variable is required for credential encryption"
        )

    if len(raw) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass

    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == KEY_LENGTH:
        return decoded

    raise CredentialError(
        "MIGRATION_ENCRYPTION_KEY must be 32 bytes (64 hex chars or 44 base64 chars)"
    )


def encrypt(plaintext: str, key: str | None = None) -> str:
    """Encrypt a string and return the base64 envelope."""
    aesgcm = AESGCM(_load_key(key))
    iv = os.urandom(IV_LENGTH)
    sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + sealed).decode("ascii")


def decrypt(ciphertext: str, key: str | None = None) -> str:
    """Decrypt a base64 envelope produced by encrypt()."""
    aesgcm = AESGCM(_load_key(key))
    try:
        combined = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialError("Ciphertext is not valid base64") from e

    if len(combined) < IV_LENGTH + AUTH_TAG_LENGTH:
        raise CredentialError("Ciphertext is too short")

    iv, sealed = combined[:IV_LENGTH], combined[IV_LENGTH:]
    try:
        return aesgcm.decrypt(iv, sealed, None).decode("utf-8")
    except InvalidTag as e:
        logger.warning("credential_decrypt_failed", reason="invalid_tag")
        raise CredentialError("Credential authentication failed") from e


def encrypt_credentials(credentials: dict[str, Any], key: str | None = None) -> str:
    """Encrypt a credentials mapping as JSON."""
    return encrypt(json.dumps(credentials, sort_keys=True), key)


def decrypt_credentials(ciphertext: str, key: str | None = None) -> dict[str, Any]:
    """Decrypt a credentials mapping produced by encrypt_credentials()."""
    try:
        return json.loads(decrypt(ciphertext, key))
    except json.JSONDecodeError as e:
        raise CredentialError("Decrypted credentials are not a JSON object") from e
