"""
Tests for the transcription link lifecycle.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.voiceturn.errors import ConnectionFailed
from src.voiceturn.events import TranscriptFragment
from src.voiceturn.retry import RetryPolicy
from src.voiceturn.transcription import LinkState, TranscriptionLink


def make_link(factory, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, delay_seconds=1.5, sleep=AsyncMock()))
    return TranscriptionLink(factory, **kwargs)


class HangingConnection:
    def __init__(self, on_result, on_close):
        self.disconnected = False

    async def connect(self):
        await asyncio.sleep(10)

    async def send_audio(self, audio_bytes):
        raise AssertionError("never open")

    async def disconnect(self):
        self.disconnected = True


@pytest.mark.asyncio
async def test_audio_before_open_is_replayed_in_order(connection_factory):
    link = make_link(connection_factory)

    await link.send(b"1")
    await link.send(b"2")
    assert link.state == LinkState.CONNECTING

    await link.connect()
    await link.send(b"3")

    assert link.state == LinkState.OPEN
    assert connection_factory.connect_calls == 1
    assert connection_factory.connections[0].sent == [b"1", b"2", b"3"]
    assert len(link.buffer) == 0


@pytest.mark.asyncio
async def test_connect_retries_then_succeeds(make_connection_factory):
    factory = make_connection_factory(failures=2)
    sleep = AsyncMock()
    link = make_link(factory, retry_policy=RetryPolicy(max_attempts=3, delay_seconds=1.5, sleep=sleep))

    await link.send(b"a")
    await link.connect()

    assert link.state == LinkState.OPEN
    assert factory.connect_calls == 3
    assert sleep.await_count == 2
    assert factory.connections[-1].sent == [b"a"]
    assert all(conn.sent == [] for conn in factory.connections[:-1])


@pytest.mark.asyncio
async def test_connect_exhaustion_raises_and_never_replays(make_connection_factory):
    factory = make_connection_factory(failures=3)
    on_failed = AsyncMock()
    link = make_link(factory, on_failed=on_failed)

    await link.send(b"a")
    await link.send(b"b")
    with pytest.raises(ConnectionFailed) as exc_info:
        await link.connect()
    await asyncio.sleep(0)

    assert exc_info.value.attempts == 3
    assert factory.connect_calls == 3
    assert link.state == LinkState.CLOSED
    on_failed.assert_awaited_once()

    # Held until teardown, then discarded without replay.
    assert len(link.buffer) == 2
    await link.send(b"c")
    await link.close()
    assert len(link.buffer) == 0
    assert factory.all_sent == []
    assert link.dropped_frames == 1


@pytest.mark.asyncio
async def test_timed_out_attempts_count_as_failures():
    conns = []

    def factory(on_result, on_close):
        conn = HangingConnection(on_result, on_close)
        conns.append(conn)
        return conn

    link = make_link(
        factory,
        retry_policy=RetryPolicy(max_attempts=2, delay_seconds=0, sleep=AsyncMock()),
        connect_timeout=0.01,
    )

    with pytest.raises(ConnectionFailed) as exc_info:
        await link.connect()

    assert exc_info.value.attempts == 2
    assert len(conns) == 2
    assert all(conn.disconnected for conn in conns)


@pytest.mark.asyncio
async def test_unexpected_close_reconnects_once(connection_factory):
    link = make_link(connection_factory)
    await link.connect()
    first = connection_factory.connections[0]

    await first.drop()
    assert link.state == LinkState.CONNECTING
    await link.send(b"during-reconnect")

    await link.connect()
    await link.send(b"after")
    await asyncio.sleep(0)

    assert link.state == LinkState.OPEN
    assert connection_factory.connect_calls == 2
    assert connection_factory.connections[1].sent == [b"during-reconnect", b"after"]
    assert first.disconnected


@pytest.mark.asyncio
async def test_failed_reconnect_is_reported(connection_factory):
    on_failed = AsyncMock()
    link = make_link(connection_factory, on_failed=on_failed)
    await link.connect()

    connection_factory.failures_remaining = 5
    await connection_factory.connections[0].drop()
    with pytest.raises(ConnectionFailed):
        await link.connect()
    await asyncio.sleep(0)

    # Exactly one reconnect attempt, not a full retry cycle.
    assert connection_factory.connect_calls == 2
    assert link.state == LinkState.CLOSED
    on_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_no_reconnect_when_owner_is_not_listening(connection_factory):
    link = make_link(connection_factory, should_reconnect=lambda: False)
    await link.connect()

    await connection_factory.connections[0].drop()

    assert link.state == LinkState.CLOSED
    assert connection_factory.connect_calls == 1


@pytest.mark.asyncio
async def test_results_are_dispatched_until_closed(connection_factory):
    link = make_link(connection_factory)
    received = []

    async def handler(fragment):
        received.append(fragment.text)

    link.on_result(handler)
    await link.connect()
    conn = connection_factory.connections[0]

    await conn.on_result(TranscriptFragment(text="hello", is_final=True))
    await link.close()
    await conn.on_result(TranscriptFragment(text="late", is_final=True))

    assert received == ["hello"]
    assert conn.disconnected


@pytest.mark.asyncio
async def test_close_while_connecting_discards_buffer():
    conns = []

    def factory(on_result, on_close):
        conn = HangingConnection(on_result, on_close)
        conns.append(conn)
        return conn

    link = make_link(factory, connect_timeout=5.0)
    await link.send(b"a")
    await asyncio.sleep(0)

    await link.close()

    assert link.state == LinkState.CLOSED
    assert len(link.buffer) == 0
    with pytest.raises(ConnectionFailed):
        await link.connect()
