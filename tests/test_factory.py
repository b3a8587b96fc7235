"""Tests for provider adapter selection."""

# pylint: disable=protected-access

from __future__ import annotations

import pytest

from mailhub.core.config import AppSettings
from mailhub.core.errors import ConfigurationError
from mailhub.core.models import Account, ProviderType
from mailhub.security import CredentialVault
from mailhub.transport import (
    AdapterRegistry,
    BridgeImapClient,
    GmailAdapter,
    ImapClient,
    ZohoAdapter,
    build_default_registry,
)


def _account(provider: ProviderType, **fields: object) -> Account:
    defaults: dict[str, object] = {
        "id": 1,
        "user_id": 1,
        "provider": provider,
        "email_address": "me@example.com",
    }
    defaults.update(fields)
    return Account(**defaults)  # type: ignore[arg-type]


def test_generic_imap_uses_account_host_and_decrypted_password(vault: CredentialVault) -> None:
    registry = build_default_registry(vault, AppSettings())
    account = _account(
        ProviderType.IMAP,
        imap_host="mail.example.com",
        imap_password_enc=vault.encrypt("hunter2"),
    )

    adapter = registry.build(account)

    assert type(adapter) is ImapClient
    endpoint = adapter._endpoint
    assert (endpoint.host, endpoint.port, endpoint.use_ssl) == ("mail.example.com", 993, True)
    assert endpoint.username == "me@example.com"
    assert endpoint.password == "hunter2"


def test_hover_and_proton_use_presets(vault: CredentialVault) -> None:
    registry = build_default_registry(vault, AppSettings())
    password = vault.encrypt("secret")

    hover = registry.build(_account(ProviderType.HOVER, imap_password_enc=password))
    proton = registry.build(_account(ProviderType.PROTON, imap_password_enc=password))

    assert hover._endpoint.host == "mail.hover.com"
    assert isinstance(proton, BridgeImapClient)
    assert (proton._endpoint.host, proton._endpoint.port) == ("127.0.0.1", 1143)
    assert not proton._endpoint.use_ssl


def test_zoho_prefers_oauth_and_falls_back_to_imap(vault: CredentialVault) -> None:
    registry = build_default_registry(vault, AppSettings())

    rest = registry.build(
        _account(ProviderType.ZOHO, access_token_enc=vault.encrypt("token"))
    )
    imap = registry.build(
        _account(ProviderType.ZOHO, imap_password_enc=vault.encrypt("secret"))
    )

    try:
        assert isinstance(rest, ZohoAdapter)
        assert isinstance(imap, ImapClient)
        assert imap._endpoint.host == "imap.zoho.com"
    finally:
        rest.close()


def test_gmail_builds_credentials_from_vault(vault: CredentialVault) -> None:
    settings = AppSettings.model_validate(
        {"google": {"client_id": "client", "client_secret": "shh"}}
    )
    account = _account(
        ProviderType.GMAIL,
        access_token_enc=vault.encrypt("access"),
        refresh_token_enc=vault.encrypt("refresh"),
    )

    adapter = build_default_registry(vault, settings).build(account)

    assert isinstance(adapter, GmailAdapter)
    assert adapter._credentials.token == "access"
    assert adapter._credentials.refresh_token == "refresh"


def test_missing_credentials_are_configuration_errors(vault: CredentialVault) -> None:
    registry = build_default_registry(vault, AppSettings())

    with pytest.raises(ConfigurationError):
        registry.build(_account(ProviderType.IMAP, imap_host="mail.example.com"))
    with pytest.raises(ConfigurationError):
        registry.build(_account(ProviderType.IMAP, imap_password_enc=vault.encrypt("x")))
    with pytest.raises(ConfigurationError):
        registry.build(_account(ProviderType.GMAIL))


def test_unregistered_provider_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        AdapterRegistry().build(_account(ProviderType.IMAP))
