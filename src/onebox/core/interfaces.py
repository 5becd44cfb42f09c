"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any, Protocol

from .config import AccountCredentials
from .models import (
    ClassificationResult,
    ClassifiedMessage,
    ConnectionEvent,
    DocumentPage,
    NormalizedMessage,
    NotificationOutcome,
    RawMessage,
)

ConnectionListener = Callable[[ConnectionEvent], None]


class MailboxConnection(Protocol):
    """One live session to one mailbox, reporting state through events."""

    @property
    def is_listening(self) -> bool:
        """Whether the server is currently pushing notifications."""
        raise NotImplementedError

    async def connect(self) -> None:
        """Open the transport, authenticate and emit ``READY``."""
        raise NotImplementedError

    async def enter_listen_mode(self) -> None:
        """Ask the server to push mailbox changes until suspended."""
        raise NotImplementedError

    async def suspend_listen_mode(self) -> None:
        """Leave listen mode; a no-op when not listening."""
        raise NotImplementedError

    async def search(self, criteria: str) -> list[int]:
        """Return sequence numbers matching ``criteria``."""
        raise NotImplementedError

    def fetch_batch(self, sequence_numbers: Sequence[int]) -> AsyncIterator[RawMessage]:
        """Yield raw payloads for the given sequence numbers in ascending order."""
        raise NotImplementedError

    async def probe(self) -> None:
        """Issue a no-op command, raising ``ProbeError`` when the link is dead."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release the transport. Safe to call repeatedly."""
        raise NotImplementedError


class ConnectionFactory(Protocol):
    """Builds a fresh connection for every connect attempt."""

    def __call__(
        self, credentials: AccountCredentials, listener: ConnectionListener
    ) -> MailboxConnection:
        raise NotImplementedError


class MessageNormalizerProtocol(Protocol):
    """Minimal protocol implemented by message normalizers."""

    def normalize(
        self, account_id: str, message: RawMessage, folder: str
    ) -> NormalizedMessage:
        """Convert a raw payload into a normalized record."""
        raise NotImplementedError


class DocumentSink(Protocol):
    """Destination for normalized messages, deduplicating by composite id."""

    async def submit(self, message: NormalizedMessage) -> None:
        """Index a normalized message."""
        raise NotImplementedError

    async def update_classification(
        self, composite_id: str, result: ClassificationResult
    ) -> None:
        """Attach classification output to an indexed message."""
        raise NotImplementedError


class DocumentStore(DocumentSink, Protocol):
    """Sink that can also serve stored documents back to callers."""

    def get_document(self, composite_id: str) -> dict[str, Any] | None:
        """Return the stored document for ``composite_id`` if present."""
        raise NotImplementedError

    # pylint: disable=too-many-arguments
    def search_documents(
        self,
        *,
        query: str | None = None,
        account_id: str | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> DocumentPage:
        """Return documents matching every supplied filter, newest first."""
        raise NotImplementedError

    def close(self) -> None:
        """Release storage resources. Safe to call repeatedly."""
        raise NotImplementedError


class Notifier(Protocol):
    """Alerts external targets about classified messages."""

    def wants(self, category: str) -> bool:
        """Whether messages in ``category`` should be reported."""
        raise NotImplementedError

    async def notify(self, message: ClassifiedMessage) -> NotificationOutcome:
        """Deliver one alert, reporting per-target success."""
        raise NotImplementedError


class EmailClassifier(Protocol):
    """Assigns a single category to message content."""

    async def classify_content(
        self, *, subject: str, body: str, sender: str, recipients: Sequence[str]
    ) -> ClassificationResult:
        """Return the category for the supplied message content."""
        raise NotImplementedError


class ClassificationPipelineProtocol(Protocol):
    """Classifies a forwarded message and records the outcome."""

    async def classify(
        self,
        composite_id: str,
        account_id: str,
        subject: str,
        body: str,
        sender: str,
        recipients: Sequence[str],
    ) -> ClassificationResult:
        """Classify one message identified by ``composite_id``."""
        raise NotImplementedError


__all__ = [
    "ClassificationPipelineProtocol",
    "ConnectionFactory",
    "ConnectionListener",
    "DocumentSink",
    "DocumentStore",
    "EmailClassifier",
    "MailboxConnection",
    "MessageNormalizerProtocol",
    "Notifier",
]
