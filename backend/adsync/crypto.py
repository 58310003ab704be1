"""
Field-level encryption for OAuth tokens and sensitive campaign data.

AES-256-GCM from the `cryptography` package. Each ciphertext is a single
base64 blob: nonce (12 bytes) || auth tag (16 bytes) || encrypted bytes.

Keys are hex-encoded 32-byte values sourced from ENCRYPTION_KEY (or the
environment-specific override) and PREVIOUS_ENCRYPTION_KEYS. A missing or
malformed key is a startup error — there is no plaintext passthrough mode.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from adsync.config import get_settings
from adsync.errors import ConfigurationError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96 bits, recommended for GCM
TAG_SIZE = 16
KEY_SIZE = 32  # AES-256

_cipher = None


def _parse_key(key_hex: str, label: str = "encryption key") -> bytes:
    try:
        key = bytes.fromhex(key_hex.strip())
    except (ValueError, AttributeError) as exc:
        raise EncryptionError(f"Invalid {label}: not a hex string") from exc
    if len(key) != KEY_SIZE:
        raise EncryptionError(
            f"Invalid {label} length. Expected {KEY_SIZE} bytes, got {len(key)}"
        )
    return key


class Cipher:
    """
    Authenticated encryption with a current key and fallback previous keys.

    New data is always encrypted with the current key. Decryption tries the
    current key first, then each previous key in order.
    """

    def __init__(self, current_key_hex: str, previous_keys_hex: Optional[list[str]] = None):
        self._current = _parse_key(current_key_hex)
        self._previous = [
            _parse_key(k, "previous encryption key") for k in (previous_keys_hex or [])
        ]

    # ── Key management ────────────────────────────────────────────────

    def rotate_key(self, new_key_hex: str) -> None:
        """Install a new current key; the old one becomes the first fallback."""
        new_key = _parse_key(new_key_hex, "new encryption key")
        self._previous.insert(0, self._current)
        self._current = new_key
        logger.info(f"Encryption key rotated ({len(self._previous)} previous key(s) retained)")

    def drop_key(self, key_hex: str) -> None:
        """Forget a previous key. Data encrypted only under it becomes unreadable."""
        key = _parse_key(key_hex)
        self._previous = [k for k in self._previous if k != key]

    @property
    def current_key_hex(self) -> str:
        return self._current.hex()

    @property
    def previous_keys_hex(self) -> list[str]:
        return [k.hex() for k in self._previous]

    # ── Encrypt / decrypt ─────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise EncryptionError("Cannot encrypt None")
        nonce = os.urandom(NONCE_SIZE)
        try:
            # AESGCM appends the tag to the ciphertext; we store it in front.
            sealed = AESGCM(self._current).encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as exc:
            raise EncryptionError(f"Failed to encrypt data: {exc}") from exc
        body, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(nonce + tag + body).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        plaintext, _ = self._decrypt(ciphertext)
        return plaintext

    def is_current(self, ciphertext: str) -> bool:
        """True if the blob authenticates under the current key."""
        try:
            _, key_index = self._decrypt(ciphertext)
        except DecryptionError:
            return False
        return key_index == 0

    def reencrypt(self, ciphertext: str) -> str:
        """Decrypt with whichever key validates, then encrypt with the current key."""
        plaintext, key_index = self._decrypt(ciphertext)
        if key_index == 0:
            return ciphertext
        return self.encrypt(plaintext)

    def _decrypt(self, ciphertext: str) -> tuple[str, int]:
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionError("Failed to decrypt data: ciphertext is not valid base64") from exc
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Failed to decrypt data: ciphertext too short")

        nonce = blob[:NONCE_SIZE]
        tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        body = blob[NONCE_SIZE + TAG_SIZE:]

        for index, key in enumerate([self._current, *self._previous]):
            try:
                raw = AESGCM(key).decrypt(nonce, body + tag, None)
            except InvalidTag:
                continue
            try:
                return raw.decode("utf-8"), index
            except UnicodeDecodeError as exc:
                raise DecryptionError("Failed to decrypt data: plaintext is not UTF-8") from exc

        raise DecryptionError("Failed to decrypt data: authentication failed for every known key")

    # ── Fingerprints ──────────────────────────────────────────────────

    @staticmethod
    def hash(data: str) -> str:
        """One-way SHA-256 fingerprint (hex). Never usable for decryption."""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @staticmethod
    def compare_hashes(hash1: Optional[str], hash2: Optional[str]) -> bool:
        """Constant-time comparison of two hex digests."""
        if not hash1 or not hash2:
            return False
        try:
            return hmac.compare_digest(bytes.fromhex(hash1), bytes.fromhex(hash2))
        except ValueError:
            return False


def build_cipher_from_settings() -> Cipher:
    settings = get_settings()
    key = settings.active_encryption_key
    if not key:
        raise ConfigurationError(
            "ENCRYPTION_KEY must be set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    try:
        return Cipher(key, settings.previous_encryption_key_list)
    except EncryptionError as exc:
        raise ConfigurationError(f"Invalid encryption configuration: {exc}") from exc


def get_cipher() -> Cipher:
    """Lazy-init the process-wide Cipher from configuration."""
    global _cipher
    if _cipher is None:
        _cipher = build_cipher_from_settings()
    return _cipher


def set_cipher(cipher: Optional[Cipher]) -> None:
    """Replace the process-wide Cipher (startup wiring and tests)."""
    global _cipher
    _cipher = cipher


def hash_value(data: str) -> str:
    return Cipher.hash(data)


def compare_hashes(hash1: Optional[str], hash2: Optional[str]) -> bool:
    return Cipher.compare_hashes(hash1, hash2)
