"""Exception taxonomy shared by the sync core and its collaborators."""

from __future__ import annotations


class OneboxError(RuntimeError):
    """Base class for all errors raised by onebox components."""


class ConnectError(OneboxError):
    """Establishing the transport or authenticating failed."""


class TransportError(OneboxError):
    """An established connection reported an asynchronous failure."""


class ProbeError(OneboxError):
    """The watchdog liveness check failed."""


class SearchError(OneboxError):
    """Searching the mailbox failed during a fetch cycle."""


class FetchError(OneboxError):
    """Fetching message payloads failed during a fetch cycle."""


class NormalizationError(OneboxError):
    """A raw message could not be converted into a normalized record."""


class SinkError(OneboxError):
    """The document sink rejected a record."""


class ClassificationError(OneboxError):
    """The classification pipeline failed for a record."""


class NotificationError(OneboxError):
    """An alert about a classified message could not be delivered."""


class MaxReconnectExceeded(OneboxError):
    """A session used up its reconnect attempts and stopped retrying."""


class AlreadyRunning(OneboxError):
    """A session for the account is already active."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account '{account_id}' is already running")
        self.account_id = account_id


class ConnectionStateError(OneboxError):
    """A command was issued while the connection was in the wrong mode."""


class SessionStateError(OneboxError):
    """A session attempted a transition its state machine does not allow."""


__all__ = [
    "AlreadyRunning",
    "ClassificationError",
    "ConnectError",
    "ConnectionStateError",
    "FetchError",
    "MaxReconnectExceeded",
    "NormalizationError",
    "NotificationError",
    "OneboxError",
    "ProbeError",
    "SearchError",
    "SessionStateError",
    "SinkError",
    "TransportError",
]
