"""Shared fakes for session and manager tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence

import pytest

from onebox.core.config import AccountCredentials
from onebox.core.errors import (
    ClassificationError,
    ConnectError,
    FetchError,
    ProbeError,
    SearchError,
    SinkError,
)
from onebox.core.interfaces import ConnectionListener
from onebox.core.models import (
    ClassificationResult,
    ConnectionEvent,
    ConnectionEventKind,
    NormalizedMessage,
    RawMessage,
)
from onebox.sync import SyncPolicy


def build_payload(sequence_number: int) -> bytes:
    return (
        f"Message-ID: <m{sequence_number}@example.com>\r\n"
        f"From: Sender {sequence_number} <sender{sequence_number}@example.com>\r\n"
        "To: inbox@example.com\r\n"
        f"Subject: Message {sequence_number}\r\n"
        "Date: Tue, 14 Oct 2025 09:30:00 +0000\r\n"
        "\r\n"
        f"Body of message {sequence_number}.\r\n"
    ).encode()


class FakeConnection:
    """In-memory connection driven by a :class:`FakeMailServer`."""

    def __init__(
        self,
        server: FakeMailServer,
        credentials: AccountCredentials,
        listener: ConnectionListener,
    ) -> None:
        self.server = server
        self.credentials = credentials
        self.listener = listener
        self.is_listening = False
        self.closed = False
        self.listen_calls = 0
        self.probe_calls = 0

    async def connect(self) -> None:
        self.server.connect_calls += 1
        if self.server.fail_connects > 0:
            self.server.fail_connects -= 1
            raise ConnectError("connection refused")
        if self.server.auto_ready:
            self.emit(ConnectionEventKind.READY)

    async def enter_listen_mode(self) -> None:
        self.listen_calls += 1
        if self.listen_calls > 1 and self.server.stalled_relistens > 0:
            self.server.stalled_relistens -= 1
            await asyncio.Event().wait()
        self.is_listening = True

    async def suspend_listen_mode(self) -> None:
        self.is_listening = False

    async def search(self, criteria: str) -> list[int]:
        assert not self.is_listening
        self.server.search_calls += 1
        self.server.search_criteria.append(criteria)
        if self.server.search_gate is not None:
            await self.server.search_gate.wait()
        if self.server.search_error is not None:
            raise self.server.search_error
        return list(self.server.unseen)

    async def fetch_batch(self, sequence_numbers: Sequence[int]) -> AsyncIterator[RawMessage]:
        assert not self.is_listening
        self.server.fetched.append(list(sequence_numbers))
        if self.server.fetch_error is not None:
            raise self.server.fetch_error
        for number in sorted(sequence_numbers):
            yield RawMessage(sequence_number=number, raw=self.server.payload(number))

    async def probe(self) -> None:
        assert not self.is_listening
        self.probe_calls += 1
        if self.server.fail_probes > 0:
            self.server.fail_probes -= 1
            raise ProbeError("NOOP timed out")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.is_listening = False
        self.emit(ConnectionEventKind.CLOSED)

    def emit(self, kind: ConnectionEventKind, **kwargs: object) -> None:
        self.listener(ConnectionEvent(kind, **kwargs))  # type: ignore[arg-type]


class FakeMailServer:
    """Connection factory recording every connection it hands out."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.connect_calls = 0
        self.fail_connects = 0
        self.fail_probes = 0
        self.auto_ready = True
        self.unseen: list[int] = []
        self.empty_payloads: set[int] = set()
        self.search_gate: asyncio.Event | None = None
        self.search_error: SearchError | None = None
        self.fetch_error: FetchError | None = None
        self.stalled_relistens = 0
        self.search_calls = 0
        self.search_criteria: list[str] = []
        self.fetched: list[list[int]] = []

    def __call__(
        self, credentials: AccountCredentials, listener: ConnectionListener
    ) -> FakeConnection:
        connection = FakeConnection(self, credentials, listener)
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    def payload(self, sequence_number: int) -> bytes:
        if sequence_number in self.empty_payloads:
            return b""
        return build_payload(sequence_number)


class RecordingSink:
    """Document sink keeping submissions in order."""

    def __init__(self) -> None:
        self.submitted: list[NormalizedMessage] = []
        self.classified: dict[str, ClassificationResult] = {}
        self.rejected_sequence_numbers: set[int] = set()

    async def submit(self, message: NormalizedMessage) -> None:
        if message.sequence_number in self.rejected_sequence_numbers:
            raise SinkError(f"index rejected message {message.sequence_number}")
        self.submitted.append(message)

    async def update_classification(
        self, composite_id: str, result: ClassificationResult
    ) -> None:
        self.classified[composite_id] = result

    @property
    def composite_ids(self) -> list[str]:
        return [message.composite_id for message in self.submitted]


class RecordingPipeline:
    """Pipeline stub remembering which messages were classified."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, tuple[str, ...]]] = []
        self.failing_subjects: set[str] = set()

    async def classify(
        self,
        composite_id: str,
        account_id: str,
        subject: str,
        body: str,
        sender: str,
        recipients: Sequence[str],
    ) -> ClassificationResult:
        self.calls.append((composite_id, subject, tuple(recipients)))
        if subject in self.failing_subjects:
            raise ClassificationError(f"model unavailable for {composite_id}")
        return ClassificationResult(category="Follow Up", confidence=0.5, reasoning="stub")


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def mail_server() -> FakeMailServer:
    return FakeMailServer()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def recording_pipeline() -> RecordingPipeline:
    return RecordingPipeline()


@pytest.fixture
def fast_policy() -> SyncPolicy:
    return SyncPolicy(
        watchdog_period=60.0,
        idle_timeout=120.0,
        max_reconnect_attempts=5,
        initial_reconnect_delay=0.01,
        fetch_limit=10,
        resume_delay=0.0,
    )


@pytest.fixture
def credentials() -> AccountCredentials:
    return AccountCredentials(
        account_id="acct-1",
        host="imap.example.com",
        user="user@example.com",
        secret="app-password",
    )


@pytest.fixture
def wait_until() -> Callable[..., object]:
    return _wait_until
