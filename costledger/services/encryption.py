"""
Credential Encryption - AES-256-GCM for the sensitive subset of integration settings.

Only client credentials, API keys and the OAuth token pair are encrypted;
everything else in the settings blob stays clear text so it remains queryable.

Encrypted values are strings of the form ``enc:v1:<urlsafe-b64(nonce || ciphertext+tag)>``.
Encrypted blobs carry a clear ``"encryption": "v1"`` marker; once it is present every
sensitive field must be valid ciphertext, so a damaged prefix can't pass as legacy text.
"""

import base64
import binascii
import copy
import hashlib
import os
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from structlog import get_logger

from costledger.exceptions import DecryptionError

logger = get_logger(__name__)

PREFIX = "enc:v1:"
VERSIONED_PREFIX = "enc:"
MARKER_FIELD = "encryption"
MARKER_VERSION = "v1"
NONCE_LENGTH = 12
TAG_LENGTH = 16

SENSITIVE_FIELDS = ("client_id", "client_secret", "api_key")
SENSITIVE_TOKEN_FIELDS = ("access_token", "refresh_token")


def derive_key(raw_key: str) -> bytes:
    """
    Turn the configured key into 32 bytes.

    64 hex characters are used as-is; anything else is hashed with SHA-256.
    """
    if not raw_key:
        raise ValueError("Encryption key cannot be empty")
    if len(raw_key) == 64:
        try:
            return bytes.fromhex(raw_key)
        except ValueError:
            pass
    return hashlib.sha256(raw_key.encode("utf-8")).digest()


def generate_key() -> str:
    """Generate a new random key as 64 hex characters."""
    return secrets.token_hex(32)


def is_encrypted_value(value: Any) -> bool:
    """True when value carries the ciphertext prefix."""
    return isinstance(value, str) and value.startswith(PREFIX)


def is_encrypted(settings: dict[str, Any] | None) -> bool:
    """True when every present sensitive field of settings is already ciphertext."""
    if not settings:
        return False
    values = [settings.get(name) for name in SENSITIVE_FIELDS]
    tokens = (settings.get("oauth_data") or {}).get("tokens") or {}
    values.extend(tokens.get(name) for name in SENSITIVE_TOKEN_FIELDS)
    present = [v for v in values if v]
    return bool(present) and all(is_encrypted_value(v) for v in present)


class EncryptionCodec:
    """
    Encrypts and decrypts integration settings.

    Both directions are idempotent: encrypt skips fields that are already
    ciphertext and decrypt passes clear (legacy) values through untouched.
    Malformed or tampered ciphertext raises DecryptionError.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError(f"AES-256 key must be 32 bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, raw_key: str) -> "EncryptionCodec":
        """Build a codec from the ENCRYPTION_KEY setting."""
        return cls(derive_key(raw_key))

    # ========================================================================
    # Single values
    # ========================================================================

    def encrypt_value(self, plaintext: str) -> str:
        """Encrypt one string with a fresh random nonce."""
        if is_encrypted_value(plaintext):
            return plaintext
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return PREFIX + base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_value(self, value: str, require_ciphertext: bool = False) -> str:
        """
        Decrypt one string.

        Clear values pass through unless require_ciphertext is set.

        Raises:
            DecryptionError: Value is malformed, has an unknown version, fails
                authentication, or is clear text where ciphertext is required
        """
        if not is_encrypted_value(value):
            if value.startswith(VERSIONED_PREFIX):
                raise DecryptionError("unknown ciphertext version")
            if require_ciphertext:
                raise DecryptionError("expected ciphertext, found clear text")
            return value

        encoded = value[len(PREFIX) :]
        try:
            blob = base64.b64decode(encoded.encode("ascii"), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        # Reject encodings that differ only in padding bits
        if base64.urlsafe_b64encode(blob).decode("ascii") != encoded:
            raise DecryptionError("ciphertext is not canonically encoded")

        if len(blob) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("ciphertext is truncated")

        nonce, ciphertext = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            logger.error("credential_decryption_failed", reason="authentication tag mismatch")
            raise DecryptionError("authentication tag mismatch") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("plaintext is not valid UTF-8") from exc

    # ========================================================================
    # Settings blobs
    # ========================================================================

    def encrypt(self, settings: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of settings with the sensitive subset encrypted and the marker set."""
        result = self._transform(settings, self.encrypt_value)
        result[MARKER_FIELD] = MARKER_VERSION
        return result

    def decrypt(self, settings: dict[str, Any]) -> dict[str, Any]:
        """
        Return a copy of settings with the sensitive subset decrypted and the marker removed.

        Raises:
            DecryptionError: Any sensitive field is damaged, or is clear text in a marked blob
        """
        marker = settings.get(MARKER_FIELD)
        if marker is not None and marker != MARKER_VERSION:
            raise DecryptionError(f"unknown settings encryption version: {marker!r}")
        strict = marker == MARKER_VERSION

        result = self._transform(
            settings, lambda value: self.decrypt_value(value, require_ciphertext=strict)
        )
        result.pop(MARKER_FIELD, None)
        return result

    def _transform(self, settings: dict[str, Any], apply: Any) -> dict[str, Any]:
        result = copy.deepcopy(settings)

        for name in SENSITIVE_FIELDS:
            value = result.get(name)
            if isinstance(value, str) and value:
                result[name] = apply(value)

        oauth_data = result.get("oauth_data")
        if isinstance(oauth_data, dict):
            tokens = oauth_data.get("tokens")
            if isinstance(tokens, dict):
                for name in SENSITIVE_TOKEN_FIELDS:
                    value = tokens.get(name)
                    if isinstance(value, str) and value:
                        tokens[name] = apply(value)

        return result
