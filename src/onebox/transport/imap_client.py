"""IMAP transport adapter holding one long-lived IDLE capable session."""

from __future__ import annotations

import asyncio
import logging
import re
import ssl
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import suppress
from typing import Any

from aioimaplib import aioimaplib

from ..core.config import AccountCredentials
from ..core.errors import (
    ConnectError,
    ConnectionStateError,
    FetchError,
    ProbeError,
    SearchError,
    TransportError,
)
from ..core.interfaces import ConnectionListener, MailboxConnection
from ..core.models import ConnectionEvent, ConnectionEventKind, RawMessage

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[AccountCredentials, Callable[[Any], None]], Any]

_PUSH_PATTERN = re.compile(rb"(\d+)\s+(EXISTS|EXPUNGE)", re.IGNORECASE)
_FETCH_PATTERN = re.compile(rb"^(\d+)\s+FETCH\b", re.IGNORECASE)
_NETWORK_ERRORS = (aioimaplib.AioImapException, OSError, asyncio.TimeoutError)


def default_client_factory(
    credentials: AccountCredentials, conn_lost_cb: Callable[[Any], None]
) -> Any:
    """Create an aioimaplib client for the supplied credentials."""
    ssl_context = ssl.create_default_context() if credentials.use_encryption else None
    return aioimaplib.IMAP4(
        host=credentials.host,
        port=credentials.port,
        timeout=credentials.keepalive.command_timeout_seconds,
        conn_lost_cb=conn_lost_cb,
        ssl_context=ssl_context,
    )


class ImapConnection(MailboxConnection):
    """Wrapper around ``aioimaplib`` exposing listen mode and typed commands.

    The connection reports its lifecycle through ``ConnectionEvent`` objects
    handed to ``listener``: ``READY`` once authenticated, ``NEW_ACTIVITY`` and
    ``ITEM_REMOVED`` for IDLE pushes, ``TRANSPORT_ERROR`` when the link dies
    on its own and ``CLOSED`` after :meth:`close`.
    """

    def __init__(
        self,
        credentials: AccountCredentials,
        listener: ConnectionListener,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Bind the connection to its account and event listener."""
        self._credentials = credentials
        self._listener = listener
        self._client_factory = client_factory or default_client_factory
        self._client: Any | None = None
        self._idle_task: asyncio.Future[Any] | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._listening = False
        self._closing = False
        self._closed = False

    @property
    def is_listening(self) -> bool:
        """Whether an IDLE command is currently outstanding."""
        return self._listening

    # Public API ---------------------------------------------------------------
    async def connect(self) -> None:
        """Open the transport, log in and open the configured mailbox."""
        if self._client is not None:
            return
        credentials = self._credentials
        timeout = credentials.keepalive.command_timeout_seconds
        LOGGER.debug(
            "Connecting to IMAP host %s:%s (tls=%s) for account %s",
            credentials.host,
            credentials.port,
            credentials.use_encryption,
            credentials.account_id,
        )
        client: Any | None = None
        try:
            client = self._client_factory(credentials, self._on_connection_lost)
            await asyncio.wait_for(client.wait_hello_from_server(), timeout=timeout)
            LOGGER.debug("Authenticating as %s", credentials.user)
            response = await asyncio.wait_for(
                client.login(credentials.user, credentials.secret), timeout=timeout
            )
            if response.result != "OK":
                raise ConnectError(
                    f"Authentication failed for {credentials.user}@{credentials.host}"
                )
            response = await asyncio.wait_for(
                client.examine(credentials.mailbox), timeout=timeout
            )
            if response.result != "OK":
                raise ConnectError(f"Unable to open mailbox '{credentials.mailbox}'")
        except ConnectError:
            await self._discard(client)
            raise
        except _NETWORK_ERRORS as exc:
            await self._discard(client)
            raise ConnectError(
                f"Failed to connect to {credentials.host}:{credentials.port}"
            ) from exc

        self._client = client
        LOGGER.info(
            "IMAP session ready for account %s (%s)",
            credentials.account_id,
            credentials.mailbox,
        )
        self._emit(ConnectionEvent(ConnectionEventKind.READY))

    async def enter_listen_mode(self) -> None:
        """Issue IDLE and start relaying server pushes as events."""
        client = self._require_client()
        if self._listening:
            return
        await self._start_idle(client)
        self._listening = True
        self._listen_task = asyncio.create_task(
            self._relay_pushes(client),
            name=f"imap-idle-{self._credentials.account_id}",
        )

    async def suspend_listen_mode(self) -> None:
        """Terminate IDLE so that regular commands can be issued."""
        if not self._listening:
            return
        self._listening = False
        client = self._client
        try:
            if client is not None and client.has_pending_idle():
                client.idle_done()
            if self._idle_task is not None:
                await asyncio.wait_for(
                    self._idle_task,
                    timeout=self._credentials.keepalive.command_timeout_seconds,
                )
        except _NETWORK_ERRORS as exc:
            raise TransportError("Failed to leave IDLE") from exc
        finally:
            self._idle_task = None
            await self._cancel_relay()

    async def search(self, criteria: str) -> list[int]:
        """Return the sequence numbers matching ``criteria``."""
        client = self._require_command_mode()
        try:
            response = await client.search(criteria)
        except _NETWORK_ERRORS as exc:
            raise SearchError(f"IMAP SEARCH {criteria} failed") from exc
        if response.result != "OK":
            raise SearchError(f"IMAP SEARCH {criteria} returned {response.result}")
        data = response.lines[0] if response.lines else b""
        if isinstance(data, str):
            data = data.encode()
        return [int(token) for token in data.split() if token.isdigit()]

    async def fetch_batch(
        self, sequence_numbers: Sequence[int]
    ) -> AsyncIterator[RawMessage]:
        """Yield full RFC822 payloads without setting the ``\\Seen`` flag."""
        client = self._require_command_mode()
        ordered = sorted(set(sequence_numbers))
        if not ordered:
            return
        message_set = ",".join(str(number) for number in ordered)
        LOGGER.debug("Fetching sequence numbers %s", message_set)
        try:
            response = await client.fetch(message_set, "(BODY.PEEK[])")
        except _NETWORK_ERRORS as exc:
            raise FetchError(f"IMAP FETCH {message_set} failed") from exc
        if response.result != "OK":
            raise FetchError(f"IMAP FETCH {message_set} returned {response.result}")

        payloads = _extract_payloads(response.lines)
        for number in ordered:
            payload = payloads.get(number)
            if payload is None:
                LOGGER.warning("No payload returned for sequence number %s", number)
                continue
            yield RawMessage(sequence_number=number, raw=payload)

    async def probe(self) -> None:
        """Send NOOP and fail with ``ProbeError`` if it does not complete."""
        try:
            client = self._require_command_mode()
        except ConnectionStateError as exc:
            raise ProbeError(str(exc)) from exc
        try:
            response = await asyncio.wait_for(
                client.noop(),
                timeout=self._credentials.keepalive.command_timeout_seconds,
            )
        except _NETWORK_ERRORS as exc:
            raise ProbeError("NOOP did not complete") from exc
        if response.result != "OK":
            raise ProbeError(f"NOOP returned {response.result}")

    async def close(self) -> None:
        """Terminate the IMAP session; repeated calls are ignored."""
        if self._closed or self._closing:
            return
        self._closing = True
        try:
            with suppress(TransportError):
                await self.suspend_listen_mode()
            await self._discard(self._client)
        finally:
            self._client = None
            self._closed = True
            self._emit(ConnectionEvent(ConnectionEventKind.CLOSED))

    # Internal helpers ---------------------------------------------------------
    def _require_client(self) -> Any:
        if self._client is None:
            raise ConnectionStateError("IMAP connection has not been established")
        return self._client

    def _require_command_mode(self) -> Any:
        client = self._require_client()
        if self._listening:
            raise ConnectionStateError("Commands cannot be issued while in IDLE")
        return client

    async def _start_idle(self, client: Any) -> None:
        keepalive = self._credentials.keepalive
        try:
            self._idle_task = await asyncio.wait_for(
                client.idle_start(timeout=keepalive.idle_refresh_seconds),
                timeout=keepalive.command_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError("Server did not acknowledge IDLE") from exc
        except _NETWORK_ERRORS as exc:
            raise TransportError("Server rejected IDLE") from exc

    async def _relay_pushes(self, client: Any) -> None:
        keepalive = self._credentials.keepalive
        wait_timeout = keepalive.idle_refresh_seconds + keepalive.command_timeout_seconds
        try:
            while self._listening:
                try:
                    lines = await client.wait_server_push(timeout=wait_timeout)
                except asyncio.TimeoutError:
                    continue
                if lines == aioimaplib.STOP_WAIT_SERVER_PUSH:
                    if not self._listening:
                        break
                    await self._refresh_idle(client)
                    continue
                self._dispatch_push(lines)
        except asyncio.CancelledError:
            raise
        except (*_NETWORK_ERRORS, TransportError) as exc:
            if self._listening and not self._closing:
                self._listening = False
                LOGGER.warning(
                    "IDLE relay failed for account %s: %s",
                    self._credentials.account_id,
                    exc,
                )
                self._emit(
                    ConnectionEvent(
                        ConnectionEventKind.TRANSPORT_ERROR,
                        error=TransportError(f"IDLE relay failed: {exc}"),
                    )
                )

    async def _refresh_idle(self, client: Any) -> None:
        """Re-issue IDLE after the library ended it on its refresh timer."""
        timeout = self._credentials.keepalive.command_timeout_seconds
        # The library's refresh timer only stops the push wait; DONE is ours.
        if client.has_pending_idle():
            client.idle_done()
        if self._idle_task is not None:
            await asyncio.wait_for(self._idle_task, timeout=timeout)
            self._idle_task = None
        if self._credentials.keepalive.force_noop:
            await asyncio.wait_for(client.noop(), timeout=timeout)
        LOGGER.debug("Refreshing IDLE for account %s", self._credentials.account_id)
        await self._start_idle(client)

    def _dispatch_push(self, lines: Sequence[Any]) -> None:
        for line in lines:
            if isinstance(line, str):
                line = line.encode()
            match = _PUSH_PATTERN.search(bytes(line))
            if match is None:
                continue
            number = int(match.group(1))
            if match.group(2).upper() == b"EXISTS":
                self._emit(
                    ConnectionEvent(
                        ConnectionEventKind.NEW_ACTIVITY, sequence_number=number
                    )
                )
            else:
                self._emit(
                    ConnectionEvent(
                        ConnectionEventKind.ITEM_REMOVED, sequence_number=number
                    )
                )

    async def _cancel_relay(self) -> None:
        task = self._listen_task
        self._listen_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _discard(self, client: Any | None) -> None:
        if client is None:
            return
        try:
            await asyncio.wait_for(
                client.logout(),
                timeout=self._credentials.keepalive.command_timeout_seconds,
            )
        except _NETWORK_ERRORS as exc:
            LOGGER.debug("IMAP logout raised; suppressing during shutdown: %s", exc)

    def _on_connection_lost(self, exc: Any) -> None:
        if self._closing or self._closed:
            return
        self._listening = False
        LOGGER.warning(
            "IMAP connection lost for account %s: %s",
            self._credentials.account_id,
            exc,
        )
        self._emit(
            ConnectionEvent(
                ConnectionEventKind.TRANSPORT_ERROR,
                error=TransportError(f"Connection lost: {exc}"),
            )
        )

    def _emit(self, event: ConnectionEvent) -> None:
        self._listener(event)


def _extract_payloads(lines: Sequence[Any]) -> dict[int, bytes]:
    """Map sequence numbers to literal payloads in an aioimaplib FETCH reply."""
    payloads: dict[int, bytes] = {}
    for index, line in enumerate(lines[:-1]):
        if not isinstance(line, (bytes, bytearray)):
            continue
        match = _FETCH_PATTERN.match(bytes(line))
        if match is None:
            continue
        literal = lines[index + 1]
        if isinstance(literal, bytearray):
            payloads[int(match.group(1))] = bytes(literal)
    return payloads


__all__ = ["ImapConnection", "default_client_factory"]
