"""Credential protection."""

from .vault import CredentialVault

__all__ = ["CredentialVault"]
