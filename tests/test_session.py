"""
Tests for the call session state machine and lifecycle.
"""

import asyncio
import dataclasses
import time
from unittest.mock import Mock, call

import pytest

from src.voiceturn.errors import InvalidTransition
from src.voiceturn.events import GenerationResult, TranscriptFragment
from src.voiceturn.session import (
    CallMetrics,
    CallSession,
    SessionEvent,
    SessionState,
    transition,
)
from src.voiceturn.transcription import LinkState


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def final(text):
    return TranscriptFragment(text=text, is_final=True, confidence=0.95, received_at=time.time())


class TestTransitions:
    """Tests for the pure transition function."""

    def test_happy_path(self):
        state = SessionState.INITIALIZING
        for event, expected in [
            (SessionEvent.LINK_OPEN, SessionState.LISTENING),
            (SessionEvent.UTTERANCE, SessionState.RESPONDING),
            (SessionEvent.REPLY_DONE, SessionState.LISTENING),
            (SessionEvent.TRANSPORT_CLOSED, SessionState.CLOSING),
            (SessionEvent.CLOSED, SessionState.CLOSED),
        ]:
            state = transition(state, event)
            assert state == expected

    def test_connect_failure_goes_to_closing(self):
        assert transition(SessionState.INITIALIZING, SessionEvent.LINK_FAILED) == SessionState.CLOSING

    @pytest.mark.parametrize(
        "state", [SessionState.INITIALIZING, SessionState.LISTENING, SessionState.RESPONDING]
    )
    @pytest.mark.parametrize(
        "event", [SessionEvent.TRANSPORT_CLOSED, SessionEvent.FATAL_ERROR, SessionEvent.LINK_FAILED]
    )
    def test_active_states_can_always_close(self, state, event):
        assert transition(state, event) == SessionState.CLOSING

    @pytest.mark.parametrize(
        "state,event",
        [
            (SessionState.INITIALIZING, SessionEvent.UTTERANCE),
            (SessionState.LISTENING, SessionEvent.REPLY_DONE),
            (SessionState.RESPONDING, SessionEvent.UTTERANCE),
            (SessionState.CLOSING, SessionEvent.REPLY_DONE),
            (SessionState.CLOSING, SessionEvent.TRANSPORT_CLOSED),
            (SessionState.CLOSED, SessionEvent.CLOSED),
            (SessionState.CLOSED, SessionEvent.LINK_OPEN),
        ],
    )
    def test_illegal_transitions_raise(self, state, event):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(state, event)
        assert exc_info.value.state == state.value
        assert exc_info.value.event == event.value


def test_call_metrics_summary():
    metrics = CallMetrics(call_id="c1", started_at=100.0, ended_at=103.5)
    metrics.response_times_ms.extend([100.0, 300.0])
    metrics.turn_count = 2

    summary = metrics.to_dict()

    assert summary["total_duration_ms"] == 3500
    assert summary["avg_response_ms"] == 200.0
    assert summary["turn_count"] == 2


@pytest.mark.asyncio
async def test_turn_round_trip(deps, transport, connection_factory, generator, synthesizer, store):
    session = CallSession("call-1", transport, deps)

    await session.handle_audio(b"early")
    await session.start()
    assert session.state == SessionState.LISTENING

    conn = connection_factory.connections[0]
    await session.handle_audio(b"later")
    assert conn.sent == [b"early", b"later"]

    await conn.on_result(final("I need"))
    await conn.on_result(final("a table for two."))
    await wait_until(lambda: session.metrics.turn_count == 1 and session.state == SessionState.LISTENING)

    assert generator.calls[0][-1] == {"role": "user", "content": "I need a table for two."}
    assert synthesizer.calls == ["Sure, I can help with that."]
    assert ("checkpoint", "reply-1") in transport.sent
    assert session.metrics.response_times_ms == [120.0]

    await session.close()
    assert store.named("save_transcript")[0][2] == "I need a table for two."
    assert len(store.named("save_turn")) == 1


@pytest.mark.asyncio
async def test_transcription_unavailable_closes_session(
    deps, config, transport, make_connection_factory, store, no_sleep
):
    factory = make_connection_factory(failures=3)
    deps = dataclasses.replace(
        deps,
        config=dataclasses.replace(config, stt_retry_delay_seconds=1.5),
        connection_factory=factory,
    )
    on_closed = Mock()
    session = CallSession("call-2", transport, deps, on_closed=on_closed)

    await session.handle_audio(b"a")
    await session.handle_audio(b"b")
    await session.start()

    assert session.state == SessionState.CLOSED
    assert session.link.state == LinkState.CLOSED
    assert factory.connect_calls == 3
    assert no_sleep.await_args_list == [call(1.5), call(1.5)]
    assert factory.all_sent == []
    assert len(session.link.buffer) == 0
    assert transport.closed
    assert len(store.named("finish_call")) == 1
    on_closed.assert_called_once_with("call-2")


@pytest.mark.asyncio
async def test_close_is_idempotent_and_flushes_metrics_once(deps, transport, connection_factory, store):
    on_closed = Mock()
    session = CallSession("call-3", transport, deps, on_closed=on_closed)
    await session.start()

    await asyncio.gather(session.on_transport_closed(), session.close())
    await session.close()

    assert session.state == SessionState.CLOSED
    assert connection_factory.connections[0].disconnected
    assert len(store.named("finish_call")) == 1
    on_closed.assert_called_once_with("call-3")

    # Closed sessions ignore further input.
    await session.handle_audio(b"late")
    await session.handle_fragment(final("hello."))
    assert connection_factory.connections[0].sent == []


@pytest.mark.asyncio
async def test_ingress_keeps_flowing_while_responding(deps, transport, connection_factory):
    release = asyncio.Event()
    started = asyncio.Event()
    order = []

    class SlowGenerator:
        async def generate(self, messages):
            order.append(messages[-1]["content"])
            started.set()
            await release.wait()
            return GenerationResult(text="Done.", latency_ms=5.0)

    session = CallSession("call-4", transport, dataclasses.replace(deps, generator=SlowGenerator()))
    await session.start()
    conn = connection_factory.connections[0]

    await conn.on_result(final("first question."))
    await asyncio.wait_for(started.wait(), timeout=1.0)
    assert session.state == SessionState.RESPONDING

    await session.handle_audio(b"while-responding")
    await conn.on_result(final("second question."))
    assert conn.sent == [b"while-responding"]
    assert session.snapshot()["queued_utterances"] == 1

    release.set()
    await wait_until(lambda: session.metrics.turn_count == 2)
    assert order == ["first question.", "second question."]
    await session.close()


@pytest.mark.asyncio
async def test_greeting_is_spoken_once_listening(deps, config, transport, synthesizer):
    deps = dataclasses.replace(deps, config=dataclasses.replace(config, greeting_text="Hello there."))
    session = CallSession("call-5", transport, deps)

    await session.start()
    await wait_until(lambda: any(item[0] == "checkpoint" for item in transport.sent))

    assert synthesizer.calls == ["Hello there."]
    assert session.history.transcript() == []
    await session.close()


@pytest.mark.asyncio
async def test_failed_keepalive_closes_session(deps, config, transport):
    deps = dataclasses.replace(
        deps, config=dataclasses.replace(config, keepalive_interval_seconds=0.01)
    )
    session = CallSession("call-6", transport, deps)
    await session.start()

    transport.ping_ok = False
    await wait_until(lambda: session.state == SessionState.CLOSED)


@pytest.mark.asyncio
async def test_lost_link_reconnects_once_then_gives_up(deps, transport, connection_factory):
    session = CallSession("call-7", transport, deps)
    await session.start()

    await connection_factory.connections[0].drop()
    await wait_until(lambda: session.link.state == LinkState.OPEN)
    assert session.state == SessionState.LISTENING
    assert connection_factory.connect_calls == 2

    connection_factory.failures_remaining = 1
    await connection_factory.connections[1].drop()
    await wait_until(lambda: session.state == SessionState.CLOSED)
    assert connection_factory.connect_calls == 3


@pytest.mark.asyncio
async def test_snapshot_reports_state_metrics_and_transcript(deps, transport, connection_factory):
    session = CallSession("call-8", transport, deps)
    await session.start()
    await connection_factory.connections[0].on_result(final("what are your hours?"))
    await wait_until(lambda: session.metrics.turn_count == 1)

    snapshot = session.snapshot()

    assert snapshot["call_id"] == "call-8"
    assert snapshot["state"] == "listening"
    assert snapshot["link_state"] == "open"
    assert snapshot["metrics"]["turn_count"] == 1
    assert [m["role"] for m in snapshot["transcript"]] == ["user", "assistant"]
    await session.close()
