"""
Authenticated encryption for stored portal passwords.

Token format: nonce:tag:ciphertext, each hex encoded (AES-256-GCM).
"""

import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import ENCRYPTION_KEY

NONCE_LENGTH = 12
TAG_LENGTH = 16


class CredentialCipher:
    """Encrypts and decrypts credentials with a 32-byte hex key."""

    def __init__(self, key_hex: str | None = None):
        key_hex = ENCRYPTION_KEY if key_hex is None else key_hex
        self._key = bytes.fromhex(key_hex) if key_hex else None
        if self._key is not None and len(self._key) != 32:
            raise ValueError("ENCRYPTION_KEY must be 32 bytes (64 hex characters)")

    def _aead(self) -> AESGCM:
        if self._key is None:
            raise ValueError("ENCRYPTION_KEY is not configured")
        return AESGCM(self._key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead().encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored token.

        Values that are not in token form are legacy plaintext and are
        returned unchanged. A tampered token raises InvalidTag.
        """
        parts = token.split(":")
        if len(parts) != 3 or not all(parts):
            return token
        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError:
            return token
        plaintext = self._aead().decrypt(nonce, ciphertext + tag, None)
        return plaintext.decode("utf-8")
