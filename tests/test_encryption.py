"""
Tests for the AES-256-GCM token cipher.
"""

import base64
import os

import pytest

from connectors.encryption import TokenCipher
from connectors.errors import ConfigurationError, DecryptionError


def _key_b64(size: int = 32) -> str:
    return base64.b64encode(os.urandom(size)).decode()


class TestKeyValidation:
    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64("")

    def test_not_base64(self):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64("not base64 at all!!")

    @pytest.mark.parametrize("size", [16, 31, 33, 64])
    def test_wrong_length(self, size):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64(_key_b64(size))


class TestRoundTrip:
    def test_bytes_round_trip(self):
        cipher = TokenCipher.from_base64(_key_b64())
        for payload in (b"", b"\x00\xff" * 40, os.urandom(257)):
            assert cipher.decrypt_bytes(cipher.encrypt_bytes(payload)) == payload

    def test_token_round_trip(self):
        cipher = TokenCipher.from_base64(_key_b64())
        assert cipher.decrypt(cipher.encrypt("ya29.a0-token")) == "ya29.a0-token"

    def test_fresh_nonce_per_encryption(self):
        cipher = TokenCipher.from_base64(_key_b64())
        first = cipher.encrypt("same-token")
        second = cipher.encrypt("same-token")
        assert first != second
        assert base64.b64decode(first)[:12] != base64.b64decode(second)[:12]

    def test_wire_format(self):
        cipher = TokenCipher.from_base64(_key_b64())
        raw = base64.b64decode(cipher.encrypt("abc"))
        # nonce(12) + ciphertext(3) + tag(16)
        assert len(raw) == 12 + 3 + 16


class TestDecryptFailures:
    def test_wrong_key(self):
        ciphertext = TokenCipher.from_base64(_key_b64()).encrypt("secret")
        with pytest.raises(DecryptionError):
            TokenCipher.from_base64(_key_b64()).decrypt(ciphertext)

    def test_tampered_ciphertext(self):
        cipher = TokenCipher.from_base64(_key_b64())
        raw = bytearray(base64.b64decode(cipher.encrypt("secret")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_plaintext_is_not_passed_through(self):
        cipher = TokenCipher.from_base64(_key_b64())
        with pytest.raises(DecryptionError):
            cipher.decrypt("legacy-plaintext-token")

    def test_too_short(self):
        cipher = TokenCipher.from_base64(_key_b64())
        with pytest.raises(DecryptionError):
            cipher.decrypt(base64.b64encode(b"short").decode())
