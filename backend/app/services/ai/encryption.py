"""
Provider credential encryption at rest.

AES-256-GCM with a 32-byte key derived as SHA-256 of the deployment secret
and a fresh random nonce per call. Tokens are stored as

    hex(nonce):hex(ciphertext):hex(auth_tag)

Configuration:
- SUPABASE_SERVICE_ROLE_KEY or AI_ENCRYPTION_SECRET: deployment secret.
  Missing secret is fatal; encryption is never silently disabled.
"""
import hashlib
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_LENGTH = 16
TAG_LENGTH = 16
MASK_PLACEHOLDER = "•" * 8
MAX_MASK_FILL = 20


class ConfigurationError(Exception):
    """Raised when required deployment configuration is missing."""


class DecryptionError(Exception):
    """Raised when a token is malformed or fails authentication."""


class SecretStore:
    """Encrypts, decrypts and masks provider credentials."""

    def __init__(self, secret: Optional[str]):
        if not secret:
            raise ConfigurationError(
                "Missing encryption secret. Set SUPABASE_SERVICE_ROLE_KEY or AI_ENCRYPTION_SECRET."
            )
        self._aesgcm = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_env(cls) -> "SecretStore":
        secret = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("AI_ENCRYPTION_SECRET")
        return cls(secret)

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a ``nonce:ciphertext:tag`` token.

        Raises:
            DecryptionError: wrong number of fields, invalid hex, wrong nonce or
                tag length, or the authentication tag does not verify (tampering / wrong key).
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")

        try:
            nonce = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            tag = bytes.fromhex(parts[2])
        except ValueError as exc:
            raise DecryptionError("Invalid encrypted text encoding") from exc

        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Invalid encrypted text format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication failed") from exc

        return plaintext.decode("utf-8")

    @staticmethod
    def mask(secret: str) -> str:
        """Show only the first and last 4 characters of a credential."""
        if len(secret) <= 8:
            return MASK_PLACEHOLDER
        fill = "•" * min(len(secret) - 8, MAX_MASK_FILL)
        return f"{secret[:4]}{fill}{secret[-4:]}"
