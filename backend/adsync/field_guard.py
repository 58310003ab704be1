"""
Field Guard — decides per field name whether a value is encrypted at rest.

Encrypt and decrypt are both idempotent: a value that already looks like a
ciphertext blob is not encrypted again, and a value that does not look like
one is returned unchanged on decrypt. The "looks encrypted" check is a
heuristic and can misclassify a plaintext that happens to be a long base64
string.
"""

import base64
import binascii
import logging
import re
from typing import Any, Iterable, Optional

from adsync.crypto import NONCE_SIZE, TAG_SIZE, get_cipher
from adsync.errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

ENCRYPTED_FIELDS = frozenset({
    "campaign_name",
    "access_token",
    "refresh_token",
})

# Personal data encrypted whenever it passes through encrypt_field(s)
PII_FIELDS: frozenset[str] = frozenset({
    "email",
    "phone",
    "full_name",
    "billing_address",
})

# Google access tokens start with ya29., refresh tokens with 1//
PLAINTEXT_TOKEN_PREFIXES = ("ya29.", "1//")

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")

# Shortest possible blob: empty plaintext -> nonce + tag = 28 bytes -> 40 base64 chars
MIN_CIPHERTEXT_LENGTH = 4 * ((NONCE_SIZE + TAG_SIZE + 2) // 3)


def is_protected(field: str) -> bool:
    return field in ENCRYPTED_FIELDS or field in PII_FIELDS


def looks_encrypted(value: Optional[str]) -> bool:
    if not value or not isinstance(value, str):
        return False
    if value.startswith(PLAINTEXT_TOKEN_PREFIXES):
        return False
    if len(value) < MIN_CIPHERTEXT_LENGTH or len(value) % 4 != 0:
        return False
    if not _BASE64_RE.match(value):
        return False
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) >= NONCE_SIZE + TAG_SIZE


def encrypt_field(value: Optional[str], field: str) -> Optional[str]:
    """Encrypt a value before storage if the field is protected."""
    if value is None or not is_protected(field):
        return value
    if looks_encrypted(value):
        logger.debug(f"Field '{field}' already encrypted, skipping")
        return value
    try:
        return get_cipher().encrypt(value)
    except EncryptionError as exc:
        logger.error(f"Failed to encrypt field {field}: {exc}")
        raise


def decrypt_field(value: Optional[str], field: str) -> Optional[str]:
    """Decrypt a value after retrieval if the field is protected and looks encrypted."""
    if value is None or not is_protected(field):
        return value
    if not looks_encrypted(value):
        return value
    try:
        return get_cipher().decrypt(value)
    except DecryptionError as exc:
        logger.error(f"Failed to decrypt field {field}: {exc}")
        raise


def encrypt_fields(data: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    out = dict(data)
    for field in fields:
        if isinstance(out.get(field), str) and out[field]:
            out[field] = encrypt_field(out[field], field)
    return out


def decrypt_fields(data: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    out = dict(data)
    for field in fields:
        if isinstance(out.get(field), str) and out[field]:
            out[field] = decrypt_field(out[field], field)
    return out
