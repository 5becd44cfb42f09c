"""Transport adapters for external mailbox providers and alert targets."""

from .imap_client import ImapConnection, default_client_factory
from .webhooks import WebhookNotifier

__all__ = ["ImapConnection", "WebhookNotifier", "default_client_factory"]
