"""Registry owning one sync session per account."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..core.config import AccountCredentials
from ..core.errors import AlreadyRunning
from ..core.interfaces import (
    ClassificationPipelineProtocol,
    ConnectionFactory,
    DocumentSink,
    MessageNormalizerProtocol,
)
from ..core.models import ConnectionStatus, SessionStatus
from ..ingestion import MessageNormalizer
from ..transport import ImapConnection
from .session import AccountSession, StatusListener, SyncPolicy

LOGGER = logging.getLogger(__name__)


class SyncManager:
    """Start, stop and inspect account sessions.

    Sessions are isolated from each other: a failing account never affects
    the others, and every operation is keyed by account identifier.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        sink: DocumentSink,
        *,
        pipeline: ClassificationPipelineProtocol | None = None,
        normalizer: MessageNormalizerProtocol | None = None,
        connection_factory: ConnectionFactory = ImapConnection,
        policy: SyncPolicy | None = None,
    ) -> None:
        self._sink = sink
        self._pipeline = pipeline
        self._normalizer = normalizer or MessageNormalizer()
        self._connection_factory = connection_factory
        self._policy = policy or SyncPolicy()
        self._sessions: dict[str, AccountSession] = {}
        self._listeners: list[StatusListener] = []

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def policy(self) -> SyncPolicy:
        return self._policy

    async def start_account(
        self, account_id: str, credentials: AccountCredentials
    ) -> SessionStatus:
        """Create and start a session for ``account_id``.

        A session left in ``FAILED`` is replaced; any other live session
        causes :class:`AlreadyRunning`.
        """
        existing = self._sessions.get(account_id)
        if existing is not None:
            if existing.state is not ConnectionStatus.FAILED:
                raise AlreadyRunning(account_id)
            LOGGER.info("Replacing failed session for account %s", account_id)
            await self.stop_account(account_id)

        if credentials.account_id != account_id:
            credentials = credentials.model_copy(update={"account_id": account_id})

        session = AccountSession(
            credentials,
            connection_factory=self._connection_factory,
            normalizer=self._normalizer,
            sink=self._sink,
            pipeline=self._pipeline,
            policy=self._policy,
            on_status_change=self._publish,
        )
        self._sessions[account_id] = session
        session.start()
        return session.status()

    async def stop_account(self, account_id: str) -> None:
        """Stop and forget ``account_id``; unknown accounts are ignored."""
        session = self._sessions.pop(account_id, None)
        if session is None:
            LOGGER.debug("Stop requested for unknown account %s", account_id)
            return
        await session.stop()

    async def stop_all(self) -> None:
        """Stop every session and wait until all have cleaned up."""
        account_ids = list(self._sessions)
        if not account_ids:
            return
        LOGGER.info("Stopping %s account session(s)", len(account_ids))
        await asyncio.gather(*(self.stop_account(item) for item in account_ids))

    def get_status(self, account_id: str) -> SessionStatus | None:
        session = self._sessions.get(account_id)
        return session.status() if session is not None else None

    def list_statuses(self) -> list[SessionStatus]:
        return [session.status() for session in self._sessions.values()]

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener`` for status changes and return an unsubscriber."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, status: SessionStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception(
                    "Status subscriber failed for account %s", status.account_id
                )


__all__ = ["SyncManager"]
