"""Per-account state machine driving one mailbox connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from functools import partial
from typing import Any

from ..core.config import AccountCredentials, SyncSettings
from ..core.errors import (
    ClassificationError,
    ConnectError,
    ConnectionStateError,
    FetchError,
    MaxReconnectExceeded,
    NormalizationError,
    ProbeError,
    SearchError,
    SessionStateError,
    SinkError,
    TransportError,
)
from ..core.interfaces import (
    ClassificationPipelineProtocol,
    ConnectionFactory,
    DocumentSink,
    MailboxConnection,
    MessageNormalizerProtocol,
)
from ..core.models import (
    ConnectionEvent,
    ConnectionEventKind,
    ConnectionStatus,
    RawMessage,
    SessionStatus,
)
from .scheduler import ScheduledTask
from .watchdog import Watchdog

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[SessionStatus], None]

_ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset(
        {
            ConnectionStatus.LISTENING,
            ConnectionStatus.RECONNECTING,
            ConnectionStatus.FAILED,
            ConnectionStatus.DISCONNECTED,
        }
    ),
    ConnectionStatus.LISTENING: frozenset(
        {
            ConnectionStatus.BUSY,
            ConnectionStatus.RECONNECTING,
            ConnectionStatus.FAILED,
            ConnectionStatus.DISCONNECTED,
        }
    ),
    ConnectionStatus.BUSY: frozenset(
        {
            ConnectionStatus.LISTENING,
            ConnectionStatus.RECONNECTING,
            ConnectionStatus.FAILED,
            ConnectionStatus.DISCONNECTED,
        }
    ),
    ConnectionStatus.RECONNECTING: frozenset(
        {ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.FAILED: frozenset({ConnectionStatus.DISCONNECTED}),
}

_CONNECTED_STATES = frozenset(
    {ConnectionStatus.CONNECTING, ConnectionStatus.LISTENING, ConnectionStatus.BUSY}
)


@dataclass(slots=True, frozen=True)
class SyncPolicy:
    """Timing knobs handed to every session by its owner."""

    watchdog_period: float = 29 * 60
    idle_timeout: float = 30 * 60
    max_reconnect_attempts: int = 5
    initial_reconnect_delay: float = 1.0
    fetch_limit: int = 10
    resume_delay: float = 1.0
    search_criteria: str = "UNSEEN"

    def __post_init__(self) -> None:
        if self.watchdog_period >= self.idle_timeout:
            raise ValueError("watchdog_period must be shorter than idle_timeout")
        if self.fetch_limit < 1:
            raise ValueError("fetch_limit must be positive")

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> SyncPolicy:
        return cls(
            watchdog_period=settings.watchdog_period_seconds,
            idle_timeout=settings.idle_timeout_seconds,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            initial_reconnect_delay=settings.initial_reconnect_delay_seconds,
            fetch_limit=settings.fetch_limit,
            resume_delay=settings.resume_delay_seconds,
            search_criteria=settings.search_criteria,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        return self.initial_reconnect_delay * 2 ** (attempt - 1)


# pylint: disable=too-many-instance-attributes
class AccountSession:
    """Drive one mailbox connection through its lifecycle.

    States move ``DISCONNECTED -> CONNECTING -> LISTENING <-> BUSY`` with a
    reconnect path through ``RECONNECTING`` and a terminal ``FAILED`` state
    once the reconnect budget is spent. All mutation happens on the event
    loop thread from connection events, timers and the session's own tasks;
    events from a connection the session has already replaced are ignored.

    While ``BUSY`` further new-activity signals are collapsed into a single
    follow-up fetch cycle.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        credentials: AccountCredentials,
        *,
        connection_factory: ConnectionFactory,
        normalizer: MessageNormalizerProtocol,
        sink: DocumentSink,
        pipeline: ClassificationPipelineProtocol | None = None,
        policy: SyncPolicy | None = None,
        on_status_change: StatusListener | None = None,
    ) -> None:
        self._credentials = credentials
        self._connection_factory = connection_factory
        self._normalizer = normalizer
        self._sink = sink
        self._pipeline = pipeline
        self._policy = policy or SyncPolicy()
        self._on_status_change = on_status_change

        self._state = ConnectionStatus.DISCONNECTED
        self._reconnect_attempts = 0
        self._reconnect_delay = self._policy.initial_reconnect_delay
        self._last_error: str | None = None
        self._generation = 0
        self._connection: MailboxConnection | None = None
        self._follow_up_pending = False
        self._stopped = False
        self._busy_since: float | None = None

        self._tasks: set[asyncio.Task[Any]] = set()
        self._closers: set[asyncio.Task[None]] = set()
        self._reconnect_timer: ScheduledTask | None = None
        self._resume_timer: ScheduledTask | None = None
        self._watchdog = Watchdog(
            self._probe,
            self._on_watchdog_failure,
            period=self._policy.watchdog_period,
            name=f"watchdog-{credentials.account_id}",
        )

    @property
    def account_id(self) -> str:
        return self._credentials.account_id

    @property
    def state(self) -> ConnectionStatus:
        return self._state

    def status(self) -> SessionStatus:
        """Return a snapshot of the session state."""
        return SessionStatus(
            account_id=self.account_id,
            connection_status=self._state,
            reconnect_attempts=self._reconnect_attempts,
            reconnect_delay=self._reconnect_delay,
            last_error=self._last_error,
        )

    # Lifecycle ---------------------------------------------------------------
    def start(self) -> None:
        """Begin connecting. Must be called from a running event loop."""
        if self._stopped or self._state is not ConnectionStatus.DISCONNECTED:
            raise SessionStateError(
                f"Session {self.account_id} cannot start from {self._state.value}"
            )
        LOGGER.info("Starting sync for account %s", self.account_id)
        self._begin_connect()

    async def stop(self) -> None:
        """Cancel timers, close the connection and settle in ``DISCONNECTED``."""
        if self._stopped:
            return
        LOGGER.info("Stopping sync for account %s", self.account_id)
        self._stopped = True
        pending = [task for task in self._tasks if task is not asyncio.current_task()]
        self._retire_connection()
        await asyncio.gather(*pending, *self._closers, return_exceptions=True)
        if self._state is not ConnectionStatus.DISCONNECTED:
            self._transition(ConnectionStatus.DISCONNECTED)

    # Transitions -------------------------------------------------------------
    def _transition(self, new_state: ConnectionStatus) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise SessionStateError(
                f"Illegal transition {self._state.value} -> {new_state.value} "
                f"for account {self.account_id}"
            )
        LOGGER.info(
            "Account %s: %s -> %s",
            self.account_id,
            self._state.value,
            new_state.value,
        )
        if new_state is ConnectionStatus.BUSY:
            if self._state is not ConnectionStatus.BUSY:
                self._busy_since = asyncio.get_running_loop().time()
        else:
            self._busy_since = None
        self._state = new_state
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(self.status())
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Status listener failed for account %s", self.account_id)

    def _begin_connect(self) -> None:
        self._reconnect_timer = None
        if self._stopped:
            return
        self._transition(ConnectionStatus.CONNECTING)
        self._generation += 1
        generation = self._generation
        connection = self._connection_factory(
            self._credentials, partial(self._on_connection_event, generation)
        )
        self._connection = connection
        self._spawn(self._connect(connection, generation), "connect")

    async def _connect(self, connection: MailboxConnection, generation: int) -> None:
        try:
            await connection.connect()
        except ConnectError as exc:
            if self._is_current(generation):
                self._handle_failure(exc)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Unexpected error connecting account %s: %s",
                self.account_id,
                exc,
                exc_info=True,
            )
            if self._is_current(generation):
                self._handle_failure(ConnectError(str(exc)))

    def _on_connection_event(self, generation: int, event: ConnectionEvent) -> None:
        if not self._is_current(generation):
            LOGGER.debug(
                "Ignoring %s from a retired connection of account %s",
                event.kind.value,
                self.account_id,
            )
            return

        kind = event.kind
        if kind is ConnectionEventKind.READY:
            if self._state is ConnectionStatus.CONNECTING:
                self._on_ready(generation)
        elif kind is ConnectionEventKind.TRANSPORT_ERROR:
            if self._state in _CONNECTED_STATES:
                error = event.error or TransportError("Transport reported an error")
                self._handle_failure(error)
        elif kind is ConnectionEventKind.CLOSED:
            if self._state in _CONNECTED_STATES:
                self._handle_failure(TransportError("Connection closed by the server"))
        elif kind is ConnectionEventKind.NEW_ACTIVITY:
            self._on_new_activity(generation)
        elif kind is ConnectionEventKind.ITEM_REMOVED:
            LOGGER.info(
                "Message %s expunged for account %s",
                event.sequence_number,
                self.account_id,
            )

    def _on_ready(self, generation: int) -> None:
        self._reconnect_attempts = 0
        self._reconnect_delay = self._policy.initial_reconnect_delay
        self._last_error = None
        self._transition(ConnectionStatus.LISTENING)
        self._watchdog.start()
        self._spawn(self._enter_listen_mode(generation), "listen")

    def _on_new_activity(self, generation: int) -> None:
        if self._state is ConnectionStatus.LISTENING:
            LOGGER.info("New mail detected for account %s", self.account_id)
            self._start_fetch_cycle(generation)
        elif self._state is ConnectionStatus.BUSY:
            LOGGER.debug("Coalescing new mail signal for account %s", self.account_id)
            self._follow_up_pending = True
        else:
            LOGGER.debug(
                "Dropping new mail signal for account %s in state %s",
                self.account_id,
                self._state.value,
            )

    def _handle_failure(self, error: BaseException) -> None:
        """Tear down the connection and schedule a reconnect or give up."""
        self._last_error = f"{type(error).__name__}: {error}"
        LOGGER.warning("Connection failure for account %s: %s", self.account_id, error)
        self._retire_connection()

        if self._reconnect_attempts >= self._policy.max_reconnect_attempts:
            exhausted = MaxReconnectExceeded(
                f"Gave up on account {self.account_id} after "
                f"{self._reconnect_attempts} reconnect attempts"
            )
            self._last_error = f"{type(exhausted).__name__}: {exhausted}"
            LOGGER.error("%s", exhausted)
            self._transition(ConnectionStatus.FAILED)
            return

        self._reconnect_attempts += 1
        self._reconnect_delay = self._policy.backoff_delay(self._reconnect_attempts)
        LOGGER.info(
            "Reconnecting account %s in %.3fs (attempt %s)",
            self.account_id,
            self._reconnect_delay,
            self._reconnect_attempts,
        )
        self._transition(ConnectionStatus.RECONNECTING)
        self._reconnect_timer = ScheduledTask(
            self._reconnect_delay,
            self._begin_connect,
            name=f"reconnect-{self.account_id}",
        )

    def _retire_connection(self) -> None:
        """Invalidate the current connection and everything bound to it."""
        self._generation += 1
        self._follow_up_pending = False
        self._watchdog.cancel()
        for timer in (self._reconnect_timer, self._resume_timer):
            if timer is not None:
                timer.cancel()
        self._reconnect_timer = None
        self._resume_timer = None

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        connection = self._connection
        self._connection = None
        if connection is not None:
            closer = asyncio.create_task(
                self._close_quietly(connection),
                name=f"close-{self.account_id}",
            )
            self._closers.add(closer)
            closer.add_done_callback(self._closers.discard)

    async def _close_quietly(self, connection: MailboxConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug("Closing connection for %s raised: %s", self.account_id, exc)

    # Listen mode & fetch cycles ---------------------------------------------
    async def _enter_listen_mode(self, generation: int) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            await connection.enter_listen_mode()
        except (TransportError, ConnectionStateError) as exc:
            if self._is_current(generation):
                self._handle_failure(exc)

    def _start_fetch_cycle(self, generation: int) -> None:
        if self._state is not ConnectionStatus.BUSY:
            self._transition(ConnectionStatus.BUSY)
        self._follow_up_pending = False
        self._spawn(self._run_fetch_cycle(generation), "fetch")

    async def _run_fetch_cycle(self, generation: int) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            await connection.suspend_listen_mode()
            while True:
                await self._sync_unseen(connection, generation)
                if not self._is_current(generation) or not self._follow_up_pending:
                    break
                self._follow_up_pending = False
                LOGGER.debug("Running follow-up fetch for account %s", self.account_id)
        except (TransportError, ConnectionStateError) as exc:
            if self._is_current(generation):
                self._handle_failure(exc)
            return

        if not self._is_current(generation):
            return
        self._resume_timer = ScheduledTask(
            self._policy.resume_delay,
            partial(self._schedule_resume, generation),
            name=f"resume-{self.account_id}",
        )

    def _schedule_resume(self, generation: int) -> None:
        self._resume_timer = None
        self._spawn(self._resume_listening(generation), "resume")

    async def _resume_listening(self, generation: int) -> None:
        connection = self._connection
        if (
            connection is None
            or not self._is_current(generation)
            or self._state is not ConnectionStatus.BUSY
        ):
            return
        if not self._follow_up_pending:
            try:
                await connection.enter_listen_mode()
            except (TransportError, ConnectionStateError) as exc:
                if self._is_current(generation):
                    self._handle_failure(exc)
                return
            if not self._is_current(generation):
                return
        if self._follow_up_pending:
            self._start_fetch_cycle(generation)
        else:
            self._transition(ConnectionStatus.LISTENING)

    async def _sync_unseen(
        self, connection: MailboxConnection, generation: int
    ) -> None:
        try:
            identifiers = await connection.search(self._policy.search_criteria)
        except SearchError as exc:
            LOGGER.warning("Search failed for account %s: %s", self.account_id, exc)
            return
        if not identifiers:
            LOGGER.debug("No new messages for account %s", self.account_id)
            return

        batch = sorted(identifiers)[-self._policy.fetch_limit :]
        LOGGER.info(
            "Found %s new message(s) for account %s, fetching %s",
            len(identifiers),
            self.account_id,
            len(batch),
        )
        forwarded = 0
        try:
            async for message in connection.fetch_batch(batch):
                if not self._is_current(generation):
                    return
                if await self._forward(message):
                    forwarded += 1
        except FetchError as exc:
            LOGGER.warning("Fetch failed for account %s: %s", self.account_id, exc)
        LOGGER.info(
            "Forwarded %s/%s message(s) for account %s",
            forwarded,
            len(batch),
            self.account_id,
        )

    async def _forward(self, message: RawMessage) -> bool:
        """Normalize, index and classify one message; failures skip it."""
        sequence_number = message.sequence_number
        try:
            record = self._normalizer.normalize(
                self.account_id, message, self._credentials.mailbox
            )
        except NormalizationError as exc:
            LOGGER.warning(
                "Skipping message %s for account %s: %s",
                sequence_number,
                self.account_id,
                exc,
            )
            return False
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Unexpected error normalizing message %s for account %s: %s",
                sequence_number,
                self.account_id,
                exc,
                exc_info=True,
            )
            return False

        try:
            await self._sink.submit(record)
        except SinkError as exc:
            LOGGER.warning("Failed to index %s: %s", record.composite_id, exc)
            return False
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Unexpected error indexing %s: %s",
                record.composite_id,
                exc,
                exc_info=True,
            )
            return False

        if self._pipeline is None:
            return True
        try:
            await self._pipeline.classify(
                record.composite_id,
                record.account_id,
                record.subject,
                record.plain_body,
                record.sender,
                record.to,
            )
        except ClassificationError as exc:
            LOGGER.warning("Failed to classify %s: %s", record.composite_id, exc)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Unexpected error classifying %s: %s",
                record.composite_id,
                exc,
                exc_info=True,
            )
        return True

    # Watchdog ----------------------------------------------------------------
    async def _probe(self) -> None:
        """Suspend IDLE, send a no-op and hand resumption to a session task.

        A busy session is left alone unless it has been busy for a whole
        watchdog period, which is reported as a failed probe.
        """
        connection = self._connection
        if self._state is ConnectionStatus.BUSY and self._busy_too_long():
            raise ProbeError(
                f"Account {self.account_id} busy for more than "
                f"{self._policy.watchdog_period}s"
            )
        if connection is None or self._state is not ConnectionStatus.LISTENING:
            LOGGER.debug(
                "Skipping probe for account %s in state %s",
                self.account_id,
                self._state.value,
            )
            return
        generation = self._generation
        self._transition(ConnectionStatus.BUSY)
        try:
            await connection.suspend_listen_mode()
            await connection.probe()
        except ConnectionStateError as exc:
            raise ProbeError(str(exc)) from exc
        if self._is_current(generation):
            self._spawn(self._resume_listening(generation), "resume")

    def _busy_too_long(self) -> bool:
        if self._busy_since is None:
            return False
        elapsed = asyncio.get_running_loop().time() - self._busy_since
        return elapsed >= self._policy.watchdog_period

    def _on_watchdog_failure(self, error: BaseException) -> None:
        if self._stopped or self._state not in _CONNECTED_STATES:
            return
        self._handle_failure(error)

    # Helpers -----------------------------------------------------------------
    def _is_current(self, generation: int) -> bool:
        return not self._stopped and generation == self._generation

    def _spawn(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        task = asyncio.create_task(coro, name=f"{label}-{self.account_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["AccountSession", "StatusListener", "SyncPolicy"]
