"""Credential vault: authenticated encryption for provider credentials.

Blobs are ``base64([12-byte nonce][AES-256-GCM ciphertext + tag])``. A fresh
random nonce is drawn for every call, so encrypting the same value twice gives
two different blobs. Decryption fails closed: a blob that was modified, was
produced under another key, or is not even well-formed raises
``DecryptionError`` and never yields a plaintext.

The same construction signs the OAuth ``state`` parameter. The token carries
``"<user-id>:<hex suffix>"`` so a browser redirect without a session can still
be tied back to the user who started the flow.
"""

import base64
import binascii
import json
import logging
import os
import secrets
from typing import Any
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Settings
from .exceptions import ConfigurationError, DecryptionError, InvalidStateTokenError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32
STATE_SUFFIX_BYTES = 16


class CredentialVault:
    """Encrypts and decrypts JSON credential blobs under one operator key."""

    def __init__(self, key: str | None):
        """
        Initialize the vault.

        Args:
            key: Base64-encoded 32-byte key, or None when no key is configured.
                 Without a key every operation raises ConfigurationError.

        Raises:
            ConfigurationError: If the key is not valid base64 or not 32 bytes
        """
        self._cipher: AESGCM | None = None
        if key is not None:
            self._cipher = AESGCM(_decode_key(key))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        """Build the vault from the configured ENCRYPTION_KEY."""
        return cls(settings.encryption_key)

    @staticmethod
    def generate_key() -> str:
        """Generate a new base64-encoded key suitable for ENCRYPTION_KEY."""
        return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")

    # ========================================================================
    # Credentials
    # ========================================================================

    def encrypt(self, data: Any) -> str:
        """Encrypt any JSON-serializable value into a text blob."""
        plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
        return base64.b64encode(self._seal(plaintext)).decode("ascii")

    def decrypt(self, blob: str) -> Any:
        """
        Decrypt a blob produced by ``encrypt``.

        Raises:
            ConfigurationError: If no key is configured
            DecryptionError: If the blob is malformed, tampered with, or was
                             encrypted under a different key
        """
        blob = blob.strip()
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Blob is not valid base64") from e
        # Unused trailing bits would otherwise let several texts decode alike
        if base64.b64encode(raw).decode("ascii") != blob:
            raise DecryptionError("Blob is not canonical base64")

        plaintext = self._open(raw)
        try:
            return json.loads(plaintext)
        except ValueError as e:
            raise DecryptionError("Decrypted payload is not valid JSON") from e

    # ========================================================================
    # OAuth state tokens
    # ========================================================================

    def create_state_token(self, user_id: UUID) -> str:
        """Create a URL-safe, tamper-evident state token embedding a user id."""
        # Hex keeps ':' out of the suffix, so the last ':' always ends the id
        plaintext = f"{user_id}:{secrets.token_hex(STATE_SUFFIX_BYTES)}"
        sealed = self._seal(plaintext.encode("utf-8"))
        return base64.urlsafe_b64encode(sealed).decode("ascii").rstrip("=")

    def verify_state_token(self, token: str) -> UUID:
        """
        Verify a state token and return the user id it carries.

        Raises:
            DecryptionError: If the token was not issued by this vault
            InvalidStateTokenError: If the payload does not start with a UUID
        """
        token = token.strip()
        padded = token + "=" * (-len(token) % 4)
        try:
            raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("State token is not valid base64") from e
        canonical = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
        if canonical != token.rstrip("="):
            raise DecryptionError("State token is not canonical base64")

        try:
            plaintext = self._open(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidStateTokenError("State token payload is not text") from e

        user_part, separator, _suffix = plaintext.rpartition(":")
        if not separator:
            raise InvalidStateTokenError("State token has no user id")
        try:
            return UUID(user_part)
        except ValueError as e:
            raise InvalidStateTokenError("State token user id is not a UUID") from e

    # ========================================================================
    # Internals
    # ========================================================================

    def _require_cipher(self) -> AESGCM:
        if self._cipher is None:
            raise ConfigurationError(
                "Encryption key not configured. Set the ENCRYPTION_KEY environment variable"
            )
        return self._cipher

    def _seal(self, plaintext: bytes) -> bytes:
        cipher = self._require_cipher()
        nonce = os.urandom(NONCE_SIZE)
        return nonce + cipher.encrypt(nonce, plaintext, None)

    def _open(self, raw: bytes) -> bytes:
        cipher = self._require_cipher()
        if len(raw) < NONCE_SIZE:
            raise DecryptionError("Encrypted data too short")

        nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            return cipher.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            logger.debug("Rejected blob: authentication tag mismatch")
            raise DecryptionError(
                "Authentication failed (wrong key or modified data)"
            ) from e


def _decode_key(key: str) -> bytes:
    try:
        key_bytes = base64.b64decode(key.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("Invalid encryption key format: not base64") from e
    if len(key_bytes) != KEY_SIZE:
        raise ConfigurationError(
            f"Invalid encryption key format: key must be {KEY_SIZE} bytes, "
            f"got {len(key_bytes)}"
        )
    return key_bytes
