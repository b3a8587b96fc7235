"""AES-256-GCM encryption for credentials stored at rest."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.config import VaultSettings
from ..core.errors import ConfigurationError, DecryptionError

NONCE_SIZE = 12
KEY_SIZE = 32


class CredentialVault:
    """Encrypt and decrypt short secrets such as OAuth tokens and passwords.

    Tokens are ``urlsafe_b64(nonce || ciphertext || tag)`` with a fresh random
    nonce per call, so encrypting the same plaintext twice yields different
    tokens.
    """

    __slots__ = ("_aead",)

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ConfigurationError("Vault key must be exactly 32 bytes")
        self._aead = AESGCM(key)

    def __repr__(self) -> str:
        return "CredentialVault(key=***)"

    @classmethod
    def from_hex(cls, hex_key: str) -> CredentialVault:
        try:
            key = bytes.fromhex(hex_key.strip())
        except ValueError as exc:
            raise ConfigurationError("Vault key is not valid hexadecimal") from exc
        return cls(key)

    @classmethod
    def from_settings(cls, settings: VaultSettings) -> CredentialVault:
        if settings.key is None:
            raise ConfigurationError(
                "Vault key is not configured; set MAILHUB_VAULT__KEY"
            )
        return cls.from_hex(settings.key.get_secret_value())

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random key encoded as hex."""
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8).hex()

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            blob = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise DecryptionError("Credential token is not valid base64") from exc
        # The GCM tag alone is 16 bytes.
        if len(blob) < NONCE_SIZE + 16:
            raise DecryptionError("Credential token is truncated")
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Credential token failed authentication (wrong key or tampered)"
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted credential is not UTF-8") from exc

    def decrypt_optional(self, token: str | None) -> str | None:
        return None if token is None else self.decrypt(token)


__all__ = ["CredentialVault", "KEY_SIZE", "NONCE_SIZE"]
