"""Exception taxonomy shared by adapters, pipeline, engine and workers."""

from __future__ import annotations


class MailhubError(RuntimeError):
    """Base class for all errors raised by the engine."""


class AuthError(MailhubError):
    """Provider rejected the stored credentials; the account needs re-auth."""


class TransientNetworkError(MailhubError):
    """Network, timeout or throttling failure that is safe to retry later."""


class PayloadParseError(MailhubError):
    """A single provider payload could not be normalized."""


class DecryptionError(MailhubError):
    """Stored credential ciphertext is malformed or the vault key is wrong."""


class ClassificationProviderError(MailhubError):
    """The AI provider failed or returned an unusable answer."""


class ConfigurationError(MailhubError):
    """Required configuration or account credentials are missing."""


class AccountNotFoundError(MailhubError):
    """Raised when a job references an account that no longer exists."""


class SyncLeaseLostError(MailhubError):
    """The account's sync lease expired or was taken over mid-run."""


# Errors that must never be retried by the queue; the job goes straight to
# the dead-letter state.
FATAL_ERRORS: tuple[type[BaseException], ...] = (
    AuthError,
    DecryptionError,
    ConfigurationError,
    AccountNotFoundError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when the queue should schedule another attempt."""
    if isinstance(exc, FATAL_ERRORS):
        return False
    return True


__all__ = [
    "AccountNotFoundError",
    "AuthError",
    "ClassificationProviderError",
    "ConfigurationError",
    "DecryptionError",
    "FATAL_ERRORS",
    "MailhubError",
    "PayloadParseError",
    "SyncLeaseLostError",
    "TransientNetworkError",
    "is_retryable",
]
