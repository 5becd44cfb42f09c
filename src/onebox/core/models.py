"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ConnectionStatus(str, Enum):
    """Lifecycle states of an account session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    BUSY = "busy"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionEventKind(str, Enum):
    """Events emitted by a mailbox connection."""

    READY = "ready"
    TRANSPORT_ERROR = "transport_error"
    CLOSED = "closed"
    NEW_ACTIVITY = "new_activity"
    ITEM_REMOVED = "item_removed"


@dataclass(slots=True, frozen=True)
class ConnectionEvent:
    """A single notification from a mailbox connection."""

    kind: ConnectionEventKind
    error: BaseException | None = None
    sequence_number: int | None = None


@dataclass(slots=True, frozen=True)
class RawMessage:
    """Raw RFC822 payload paired with its sequence number."""

    sequence_number: int
    raw: bytes


@dataclass(slots=True, frozen=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str
    content_type: str
    size: int


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class NormalizedMessage:
    """Canonical message record handed to the document sink."""

    composite_id: str
    account_id: str
    message_id: str
    subject: str
    sender: str
    to: tuple[str, ...]
    cc: tuple[str, ...] | None
    bcc: tuple[str, ...] | None
    timestamp: datetime
    plain_body: str
    html_body: str | None
    attachments: tuple[AttachmentMeta, ...]
    sequence_number: int
    folder: str
    indexed_at: datetime


@dataclass(slots=True, frozen=True)
class SessionStatus:
    """Read-only snapshot of an account session."""

    account_id: str
    connection_status: ConnectionStatus
    reconnect_attempts: int
    reconnect_delay: float
    last_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection_status in (
            ConnectionStatus.LISTENING,
            ConnectionStatus.BUSY,
        )


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    """Category assigned to a message by the classification pipeline."""

    category: str
    confidence: float
    reasoning: str


@dataclass(slots=True, frozen=True)
class ClassifiedMessage:
    """A classified message as reported to notification targets."""

    composite_id: str
    account_id: str
    subject: str
    sender: str
    recipients: tuple[str, ...]
    body: str
    result: ClassificationResult


@dataclass(slots=True, frozen=True)
class NotificationOutcome:
    """Delivery result for one notification across all configured targets."""

    slack_sent: bool = False
    webhook_sent: bool = False
    errors: tuple[str, ...] = ()

    @property
    def delivered(self) -> bool:
        return self.slack_sent or self.webhook_sent


@dataclass(slots=True)
class DocumentPage:
    """One page of stored documents plus the total number of matches."""

    hits: list[dict[str, Any]]
    total: int


__all__ = [
    "AttachmentMeta",
    "ClassificationResult",
    "ClassifiedMessage",
    "ConnectionEvent",
    "ConnectionEventKind",
    "ConnectionStatus",
    "DocumentPage",
    "NormalizedMessage",
    "NotificationOutcome",
    "RawMessage",
    "SessionStatus",
]
