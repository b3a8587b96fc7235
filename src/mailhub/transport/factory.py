"""Registry mapping provider types to adapter builders."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.config import AppSettings
from ..core.errors import ConfigurationError
from ..core.interfaces import ProviderAdapter
from ..core.models import Account, OAuthTokens, ProviderType
from ..ingestion.parser import EmailParser
from ..security.vault import CredentialVault
from .gmail import GmailAdapter, build_credentials
from .imap_client import BridgeImapClient, ImapClient, ImapEndpoint
from .zoho import ZohoAdapter

LOGGER = logging.getLogger(__name__)

AdapterBuilder = Callable[[Account], ProviderAdapter]

# Vendor IMAP endpoints used when the account row carries no host.
IMAP_PRESETS: dict[ProviderType, tuple[str, int]] = {
    ProviderType.HOVER: ("mail.hover.com", 993),
    ProviderType.ZOHO: ("imap.zoho.com", 993),
}


class AdapterRegistry:
    """Resolve the adapter variant for an account without provider branching."""

    def __init__(self) -> None:
        self._builders: dict[ProviderType, AdapterBuilder] = {}

    def register(self, provider: ProviderType, builder: AdapterBuilder) -> None:
        self._builders[provider] = builder

    def providers(self) -> tuple[ProviderType, ...]:
        return tuple(self._builders)

    def build(self, account: Account) -> ProviderAdapter:
        builder = self._builders.get(account.provider)
        if builder is None:
            raise ConfigurationError(
                f"No adapter registered for provider '{account.provider}'"
            )
        return builder(account)


def build_default_registry(
    vault: CredentialVault, settings: AppSettings
) -> AdapterRegistry:
    """Register the built-in Gmail, Zoho, Proton, Hover and IMAP adapters."""
    parser = EmailParser(preview_chars=settings.classification.body_preview_chars)
    max_messages = settings.sync.max_messages_per_sync
    timeout = settings.sync.connect_timeout_seconds

    def imap_endpoint(
        account: Account, default: tuple[str, int] | None, *, use_ssl: bool = True
    ) -> ImapEndpoint:
        password = vault.decrypt_optional(account.imap_password_enc)
        if password is None:
            raise ConfigurationError(f"Account {account.id} has no IMAP password")
        host = account.imap_host or (default[0] if default else None)
        port = account.imap_port or (default[1] if default else 993)
        if host is None:
            raise ConfigurationError(f"Account {account.id} has no IMAP host")
        return ImapEndpoint(
            host=host,
            port=port,
            username=account.imap_username or account.email_address,
            password=password,
            use_ssl=use_ssl,
            timeout_seconds=timeout,
        )

    def oauth_tokens(account: Account) -> OAuthTokens:
        access_token = vault.decrypt_optional(account.access_token_enc)
        if access_token is None:
            raise ConfigurationError(f"Account {account.id} has no OAuth access token")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=vault.decrypt_optional(account.refresh_token_enc),
            expires_at=account.token_expires_at,
        )

    def gmail(account: Account) -> ProviderAdapter:
        google = settings.google
        credentials = build_credentials(
            oauth_tokens(account),
            client_id=google.client_id,
            client_secret=(
                google.client_secret.get_secret_value()
                if google.client_secret is not None
                else None
            ),
            token_uri=google.token_uri,
        )
        return GmailAdapter(credentials, parser=parser, max_messages=max_messages)

    def zoho(account: Account) -> ProviderAdapter:
        if account.access_token_enc is None and account.imap_password_enc is not None:
            LOGGER.info("Zoho account %s has no OAuth tokens; using IMAP", account.id)
            return ImapClient(
                imap_endpoint(account, IMAP_PRESETS[ProviderType.ZOHO]),
                max_messages=max_messages,
                parser=parser,
            )
        return ZohoAdapter(
            oauth_tokens(account),
            settings.zoho,
            max_messages=max_messages,
            preview_chars=settings.classification.body_preview_chars,
        )

    def proton(account: Account) -> ProviderAdapter:
        bridge = settings.bridge
        return BridgeImapClient(
            imap_endpoint(account, (bridge.host, bridge.port), use_ssl=False),
            max_messages=max_messages,
            parser=parser,
        )

    def hover(account: Account) -> ProviderAdapter:
        return ImapClient(
            imap_endpoint(account, IMAP_PRESETS[ProviderType.HOVER]),
            max_messages=max_messages,
            parser=parser,
        )

    def generic_imap(account: Account) -> ProviderAdapter:
        return ImapClient(
            imap_endpoint(account, None), max_messages=max_messages, parser=parser
        )

    registry = AdapterRegistry()
    registry.register(ProviderType.GMAIL, gmail)
    registry.register(ProviderType.ZOHO, zoho)
    registry.register(ProviderType.PROTON, proton)
    registry.register(ProviderType.HOVER, hover)
    registry.register(ProviderType.IMAP, generic_imap)
    return registry


__all__ = ["AdapterBuilder", "AdapterRegistry", "IMAP_PRESETS", "build_default_registry"]
