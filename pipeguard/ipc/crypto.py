"""
PipeGuard Crypto Layer

This module wraps and unwraps message payloads with ChaCha20-Poly1305,
independently of framing.

Encrypted payload layout::

    [12 bytes random nonce][ciphertext || 16 byte tag]

SECURITY NOTE: ``DEFAULT_ENCRYPTION_KEY`` is a single constant shipped with
the library and shared by every installation that does not pass its own
key. It hides traffic from casual inspection only. It is not a secret and is
no substitute for a pre-shared or negotiated key.
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from pipeguard.utils.config import KEY_SIZE, parse_key
from pipeguard.utils.errors import DataError
from pipeguard.utils.logging import get_logger

logger = get_logger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16

# Shared by all deployments unless overridden; never mutated at runtime
DEFAULT_ENCRYPTION_KEY = bytes.fromhex(
    "5b1f8e0c2a7d49e3b6c4f0a19d3e72c8"
    "e4a60f9b13d7c25e8f01b4a9c6d2e7f3"
)


class MessageCipher:
    """AEAD cipher bound to one 256-bit key."""

    def __init__(self, key: bytes):
        self._aead = ChaCha20Poly1305(parse_key(key))
        self.is_default_key = key == DEFAULT_ENCRYPTION_KEY

    @classmethod
    def default(cls) -> "MessageCipher":
        """Cipher using the library-wide fallback key."""
        return cls(DEFAULT_ENCRYPTION_KEY)

    @classmethod
    def from_key(cls, key: Optional[bytes] = None) -> "MessageCipher":
        """Cipher for ``key``, falling back to the default key."""
        if key is None:
            return cls.default()
        return cls(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        # 96 random bits per message keeps nonces unique in practice
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), None)

    def decrypt(self, payload: bytes) -> bytes:
        if len(payload) < NONCE_SIZE:
            raise DataError(
                "Encrypted message too short",
                details={'length': len(payload)}
            )

        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            # Same error for tampering, truncation and wrong key
            raise DataError("Decryption failed") from None

    def __repr__(self) -> str:
        return f"MessageCipher(algorithm='ChaCha20-Poly1305', default_key={self.is_default_key})"


def encrypt_message(cipher: MessageCipher, plaintext: bytes) -> bytes:
    """Seal ``plaintext`` and return nonce || ciphertext."""
    return cipher.encrypt(plaintext)


def decrypt_message(cipher: MessageCipher, payload: bytes) -> bytes:
    """Open a nonce || ciphertext payload, raising DataError on any failure."""
    return cipher.decrypt(payload)


__all__ = [
    'DEFAULT_ENCRYPTION_KEY',
    'KEY_SIZE',
    'NONCE_SIZE',
    'TAG_SIZE',
    'MessageCipher',
    'encrypt_message',
    'decrypt_message',
]
