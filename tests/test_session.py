"""Tests for the per-account session state machine."""

# pylint: disable=protected-access

from __future__ import annotations

import asyncio

import pytest

from onebox.core.errors import FetchError, SearchError, SessionStateError, TransportError
from onebox.core.models import ConnectionEventKind, ConnectionStatus, SessionStatus
from onebox.ingestion import MessageNormalizer
from onebox.sync import AccountSession, SyncPolicy


def _session(credentials, mail_server, sink, policy, *, pipeline=None, statuses=None):
    return AccountSession(
        credentials,
        connection_factory=mail_server,
        normalizer=MessageNormalizer(),
        sink=sink,
        pipeline=pipeline,
        policy=policy,
        on_status_change=statuses.append if statuses is not None else None,
    )


async def _listening(session, mail_server, wait_until) -> None:
    await wait_until(
        lambda: session.state is ConnectionStatus.LISTENING
        and bool(mail_server.connections)
        and mail_server.latest.is_listening
    )


@pytest.mark.asyncio
async def test_ready_event_moves_session_to_listening(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    statuses: list[SessionStatus] = []
    session = _session(credentials, mail_server, recording_sink, fast_policy, statuses=statuses)

    session.start()
    await _listening(session, mail_server, wait_until)

    status = session.status()
    assert status.connection_status is ConnectionStatus.LISTENING
    assert status.reconnect_attempts == 0
    assert status.is_connected
    assert [item.connection_status for item in statuses] == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.LISTENING,
    ]
    assert session._watchdog.running
    await session.stop()


@pytest.mark.asyncio
async def test_start_twice_is_rejected(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    with pytest.raises(SessionStateError):
        session.start()
    await session.stop()


@pytest.mark.asyncio
async def test_backoff_doubles_and_resets_after_ready(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    statuses: list[SessionStatus] = []
    mail_server.fail_connects = 4
    session = _session(credentials, mail_server, recording_sink, fast_policy, statuses=statuses)

    session.start()
    await _listening(session, mail_server, wait_until)

    delays = [
        item.reconnect_delay
        for item in statuses
        if item.connection_status is ConnectionStatus.RECONNECTING
    ]
    assert delays == pytest.approx([0.01, 0.02, 0.04, 0.08])
    assert [
        item.reconnect_attempts
        for item in statuses
        if item.connection_status is ConnectionStatus.RECONNECTING
    ] == [1, 2, 3, 4]
    assert mail_server.connect_calls == 5
    assert session.status().reconnect_attempts == 0
    assert session.status().reconnect_delay == pytest.approx(0.01)
    await session.stop()


@pytest.mark.asyncio
async def test_session_fails_after_reconnect_budget(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.fail_connects = 100
    session = _session(credentials, mail_server, recording_sink, fast_policy)

    session.start()
    await wait_until(lambda: session.state is ConnectionStatus.FAILED)

    assert mail_server.connect_calls == 6
    status = session.status()
    assert status.reconnect_attempts == 5
    assert status.last_error is not None
    assert status.last_error.startswith("MaxReconnectExceeded")
    assert "5 reconnect attempts" in status.last_error

    mail_server.latest.emit(
        ConnectionEventKind.TRANSPORT_ERROR, error=TransportError("late error")
    )
    await asyncio.sleep(0.1)
    assert mail_server.connect_calls == 6
    assert session.state is ConnectionStatus.FAILED

    await session.stop()
    assert session.state is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_transport_error_before_ready_schedules_reconnect(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    statuses: list[SessionStatus] = []
    mail_server.auto_ready = False
    session = _session(credentials, mail_server, recording_sink, fast_policy, statuses=statuses)

    session.start()
    await wait_until(lambda: mail_server.connect_calls == 1)
    mail_server.latest.emit(
        ConnectionEventKind.TRANSPORT_ERROR, error=TransportError("reset by peer")
    )
    await wait_until(lambda: mail_server.connect_calls == 2)

    assert [item.connection_status for item in statuses] == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.RECONNECTING,
        ConnectionStatus.CONNECTING,
    ]
    assert session.status().reconnect_attempts == 1
    assert mail_server.connections[0].closed
    await session.stop()


@pytest.mark.asyncio
async def test_new_activity_fetches_recent_unseen_messages(
    credentials, mail_server, recording_sink, recording_pipeline, fast_policy, wait_until
) -> None:
    mail_server.unseen = list(range(1, 16))
    session = _session(
        credentials,
        mail_server,
        recording_sink,
        fast_policy,
        pipeline=recording_pipeline,
    )
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=15)
    assert session.state is ConnectionStatus.BUSY
    await wait_until(lambda: len(recording_sink.submitted) == 10)
    await _listening(session, mail_server, wait_until)

    assert mail_server.search_criteria == ["UNSEEN"]
    assert mail_server.fetched == [list(range(6, 16))]
    assert [item.sequence_number for item in recording_sink.submitted] == list(range(6, 16))
    assert recording_sink.submitted[0].composite_id == "acct-1-<m6@example.com>"
    assert [call[0] for call in recording_pipeline.calls] == recording_sink.composite_ids
    assert recording_pipeline.calls[0][2] == ("inbox@example.com",)
    await session.stop()


@pytest.mark.asyncio
async def test_signals_while_busy_collapse_into_one_follow_up(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.unseen = [1, 2]
    mail_server.search_gate = asyncio.Event()
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    connection = mail_server.latest
    connection.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=1)
    await wait_until(lambda: mail_server.search_calls == 1)
    for number in (2, 3, 4):
        connection.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=number)
    assert session.state is ConnectionStatus.BUSY

    mail_server.search_gate.set()
    await wait_until(lambda: mail_server.search_calls == 2)
    await _listening(session, mail_server, wait_until)
    await asyncio.sleep(0.02)

    assert mail_server.search_calls == 2
    assert session.state is ConnectionStatus.LISTENING
    await session.stop()


@pytest.mark.asyncio
async def test_normalization_failure_skips_only_that_message(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.unseen = list(range(1, 11))
    mail_server.empty_payloads = {5}
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=10)
    await wait_until(lambda: len(recording_sink.submitted) == 9)
    await _listening(session, mail_server, wait_until)

    sequence_numbers = [item.sequence_number for item in recording_sink.submitted]
    assert sequence_numbers == [1, 2, 3, 4, 6, 7, 8, 9, 10]
    assert session.status().reconnect_attempts == 0
    await session.stop()


@pytest.mark.asyncio
async def test_search_error_returns_session_to_listening(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.search_error = SearchError("SEARCH returned NO")
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=1)
    await wait_until(lambda: mail_server.search_calls == 1)
    await _listening(session, mail_server, wait_until)

    assert mail_server.connect_calls == 1
    assert recording_sink.submitted == []
    await session.stop()


@pytest.mark.asyncio
async def test_fetch_error_returns_session_to_listening(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.unseen = [1, 2, 3]
    mail_server.fetch_error = FetchError("FETCH returned NO")
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=3)
    await wait_until(lambda: mail_server.fetched == [[1, 2, 3]])
    await _listening(session, mail_server, wait_until)

    assert recording_sink.submitted == []
    assert mail_server.connect_calls == 1
    assert session.status().reconnect_attempts == 0
    await session.stop()


@pytest.mark.asyncio
async def test_sink_failure_skips_classification_but_not_the_batch(
    credentials, mail_server, recording_sink, recording_pipeline, fast_policy, wait_until
) -> None:
    mail_server.unseen = [1, 2, 3, 4]
    recording_sink.rejected_sequence_numbers = {2}
    session = _session(
        credentials, mail_server, recording_sink, fast_policy, pipeline=recording_pipeline
    )
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=4)
    await wait_until(lambda: len(recording_pipeline.calls) == 3)
    await _listening(session, mail_server, wait_until)

    assert [item.sequence_number for item in recording_sink.submitted] == [1, 3, 4]
    assert [call[1] for call in recording_pipeline.calls] == [
        "Message 1",
        "Message 3",
        "Message 4",
    ]
    assert mail_server.connect_calls == 1
    await session.stop()


@pytest.mark.asyncio
async def test_classification_failure_does_not_stop_later_messages(
    credentials, mail_server, recording_sink, recording_pipeline, fast_policy, wait_until
) -> None:
    mail_server.unseen = [1, 2, 3]
    recording_pipeline.failing_subjects = {"Message 1"}
    session = _session(
        credentials, mail_server, recording_sink, fast_policy, pipeline=recording_pipeline
    )
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=3)
    await wait_until(lambda: len(recording_pipeline.calls) == 3)
    await _listening(session, mail_server, wait_until)

    assert [item.sequence_number for item in recording_sink.submitted] == [1, 2, 3]
    assert [call[1] for call in recording_pipeline.calls] == [
        "Message 1",
        "Message 2",
        "Message 3",
    ]
    assert session.status().reconnect_attempts == 0
    await session.stop()


@pytest.mark.asyncio
async def test_empty_search_result_returns_to_listening(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=1)
    await wait_until(lambda: mail_server.search_calls == 1)
    await _listening(session, mail_server, wait_until)

    assert mail_server.fetched == []
    assert mail_server.latest.listen_calls == 2
    await session.stop()


@pytest.mark.asyncio
async def test_item_removed_is_informational(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.ITEM_REMOVED, sequence_number=3)
    await asyncio.sleep(0.01)

    assert session.state is ConnectionStatus.LISTENING
    assert mail_server.search_calls == 0
    await session.stop()


@pytest.mark.asyncio
async def test_unexpected_close_triggers_reconnect(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    mail_server.latest.emit(ConnectionEventKind.CLOSED)
    await wait_until(lambda: mail_server.connect_calls == 2)
    await _listening(session, mail_server, wait_until)

    assert session.status().reconnect_attempts == 0
    await session.stop()


@pytest.mark.asyncio
async def test_watchdog_probe_keeps_healthy_session_listening(
    credentials, mail_server, recording_sink, wait_until
) -> None:
    policy = SyncPolicy(
        watchdog_period=0.01,
        idle_timeout=1.0,
        initial_reconnect_delay=0.01,
        resume_delay=0.0,
    )
    session = _session(credentials, mail_server, recording_sink, policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    await wait_until(lambda: mail_server.latest.probe_calls >= 2)
    await _listening(session, mail_server, wait_until)

    assert mail_server.connect_calls == 1
    await session.stop()


@pytest.mark.asyncio
async def test_watchdog_probe_failure_reconnects(
    credentials, mail_server, recording_sink, wait_until
) -> None:
    statuses: list[SessionStatus] = []
    mail_server.fail_probes = 1
    policy = SyncPolicy(
        watchdog_period=0.01,
        idle_timeout=1.0,
        initial_reconnect_delay=0.01,
        resume_delay=0.0,
    )
    session = _session(credentials, mail_server, recording_sink, policy, statuses=statuses)
    session.start()

    await wait_until(lambda: mail_server.connect_calls == 2)
    await _listening(session, mail_server, wait_until)

    assert ConnectionStatus.RECONNECTING in [item.connection_status for item in statuses]
    assert mail_server.connections[0].closed
    await session.stop()


@pytest.mark.asyncio
async def test_watchdog_recovers_session_stuck_busy(
    credentials, mail_server, recording_sink, wait_until
) -> None:
    statuses: list[SessionStatus] = []
    mail_server.stalled_relistens = 1
    policy = SyncPolicy(
        watchdog_period=0.01,
        idle_timeout=1.0,
        initial_reconnect_delay=0.01,
        resume_delay=0.0,
    )
    session = _session(credentials, mail_server, recording_sink, policy, statuses=statuses)
    session.start()
    await _listening(session, mail_server, wait_until)

    first = mail_server.latest
    first.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=1)
    await wait_until(lambda: mail_server.connect_calls == 2)
    await _listening(session, mail_server, wait_until)

    reconnecting = [
        item for item in statuses if item.connection_status is ConnectionStatus.RECONNECTING
    ]
    assert first.closed
    assert reconnecting[0].last_error is not None
    assert reconnecting[0].last_error.startswith("ProbeError")
    assert "busy" in reconnecting[0].last_error
    await session.stop()


@pytest.mark.asyncio
async def test_stop_while_busy_cancels_cycle(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    mail_server.unseen = [1, 2, 3]
    mail_server.search_gate = asyncio.Event()
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    connection = mail_server.latest
    connection.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=3)
    await wait_until(lambda: mail_server.search_calls == 1)
    assert session.state is ConnectionStatus.BUSY

    await session.stop()
    mail_server.search_gate.set()
    await asyncio.sleep(0.02)

    assert session.state is ConnectionStatus.DISCONNECTED
    assert connection.closed
    assert not session._watchdog.running
    assert recording_sink.submitted == []

    connection.emit(ConnectionEventKind.NEW_ACTIVITY, sequence_number=4)
    await asyncio.sleep(0.01)
    assert session.state is ConnectionStatus.DISCONNECTED
    assert mail_server.search_calls == 1


@pytest.mark.asyncio
async def test_stop_is_idempotent(
    credentials, mail_server, recording_sink, fast_policy, wait_until
) -> None:
    session = _session(credentials, mail_server, recording_sink, fast_policy)
    session.start()
    await _listening(session, mail_server, wait_until)

    await session.stop()
    await session.stop()

    assert session.state is ConnectionStatus.DISCONNECTED


def test_policy_rejects_watchdog_period_at_idle_ceiling() -> None:
    with pytest.raises(ValueError):
        SyncPolicy(watchdog_period=30.0, idle_timeout=30.0)


def test_policy_backoff_delay() -> None:
    policy = SyncPolicy(initial_reconnect_delay=1.0)
    assert [policy.backoff_delay(attempt) for attempt in (1, 2, 3, 4, 5)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
    ]
