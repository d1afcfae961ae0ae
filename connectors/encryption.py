"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``cryptography`` AESGCM).  The 32-byte key is supplied as
base64 in ``config.oauth_encryption_key`` (env var: ``OAUTH_ENCRYPTION_KEY``)
and validated once when the cipher is built.  Generate one with::

    python -c "import base64, os; print(base64.b64encode(os.urandom(32)).decode())"

Wire format: ``base64(nonce[12] || ciphertext || tag[16])``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connectors.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


class TokenCipher:
    """Symmetric envelope for credential material. No I/O."""

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise ConfigurationError("OAUTH_ENCRYPTION_KEY must decode to exactly 32 bytes")
        self._aesgcm = AESGCM(bytes(key))

    @classmethod
    def from_base64(cls, encoded_key: str) -> "TokenCipher":
        """Build a cipher from the configured base64 key, failing fast if it is unusable."""
        if not encoded_key:
            raise ConfigurationError("OAUTH_ENCRYPTION_KEY not configured")
        try:
            key = base64.b64decode(encoded_key, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError("OAUTH_ENCRYPTION_KEY is not valid base64") from None
        cipher = cls(key)
        logger.info("Token encryption enabled (AES-256-GCM)")
        return cipher

    # ── bytes API ───────────────────────────────────────────────────────

    def encrypt_bytes(self, plaintext: bytes) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt_bytes(self, ciphertext: str) -> bytes:
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptionError() from None
        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise DecryptionError()
        try:
            return self._aesgcm.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
        except InvalidTag:
            raise DecryptionError() from None

    # ── token (str) API ─────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string for database storage."""
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token read from the database.

        Raises ``DecryptionError`` on a wrong key, corrupted data or tag
        mismatch; the input is never handed back as if it were plaintext.
        """
        try:
            return self.decrypt_bytes(ciphertext).decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError() from None
