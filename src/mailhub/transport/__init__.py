"""Transport adapters for external mailbox providers."""

from .factory import AdapterRegistry, build_default_registry
from .gmail import GmailAdapter
from .imap_client import BridgeImapClient, ImapClient, ImapEndpoint, ImapError
from .zoho import ZohoAdapter, ZohoApiError

__all__ = [
    "AdapterRegistry",
    "BridgeImapClient",
    "GmailAdapter",
    "ImapClient",
    "ImapEndpoint",
    "ImapError",
    "ZohoAdapter",
    "ZohoApiError",
    "build_default_registry",
]
