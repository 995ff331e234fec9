"""
Call session: owns one telephone call's audio lifecycle.

    Initializing -> Listening <-> Responding -> Closing -> Closed

State changes go through `transition()`, a pure function over SessionEvent,
so the lifecycle can be exercised without any network connection. The
session itself only dispatches the side effects:

- caller audio is forwarded to the TranscriptionLink (buffered while it opens)
- transcript fragments are segmented into utterances and queued
- a single turn worker drains the queue, one reply in flight at a time
- a keepalive task pings the caller transport
- teardown runs exactly once and is bounded by the teardown timeout
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.voiceturn.config import Config, get_config
from src.voiceturn.errors import ConnectionFailed, InvalidTransition, SynthesisFailed, TransportClosed
from src.voiceturn.events import TranscriptFragment
from src.voiceturn.llm import ConversationHistory, ReplyGenerator
from src.voiceturn.rate_limit import RateLimiter
from src.voiceturn.reply import ReplyPipeline
from src.voiceturn.retry import RetryPolicy
from src.voiceturn.segmenter import Utterance, UtteranceSegmenter
from src.voiceturn.sender import ReplyAudioSender
from src.voiceturn.store import BackgroundWriter, CallStore, create_store
from src.voiceturn.stt import DeepgramSTT
from src.voiceturn.transcription import ConnectionFactory, TranscriptionLink
from src.voiceturn.transport import CallerTransport
from src.voiceturn.tts import TTSManager

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    LISTENING = "listening"
    RESPONDING = "responding"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    LINK_OPEN = "link_open"
    LINK_FAILED = "link_failed"
    UTTERANCE = "utterance"
    REPLY_DONE = "reply_done"
    TRANSPORT_CLOSED = "transport_closed"
    FATAL_ERROR = "fatal_error"
    CLOSED = "closed"


_ACTIVE = (SessionState.INITIALIZING, SessionState.LISTENING, SessionState.RESPONDING)

_TRANSITIONS: Dict[tuple, SessionState] = {
    (SessionState.INITIALIZING, SessionEvent.LINK_OPEN): SessionState.LISTENING,
    (SessionState.LISTENING, SessionEvent.UTTERANCE): SessionState.RESPONDING,
    (SessionState.RESPONDING, SessionEvent.REPLY_DONE): SessionState.LISTENING,
    (SessionState.CLOSING, SessionEvent.CLOSED): SessionState.CLOSED,
}
for _state in _ACTIVE:
    for _event in (SessionEvent.LINK_FAILED, SessionEvent.TRANSPORT_CLOSED, SessionEvent.FATAL_ERROR):
        _TRANSITIONS[(_state, _event)] = SessionState.CLOSING


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """
    Next state for `event` in `state`.

    Raises:
        InvalidTransition: the event is not allowed in `state`
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state.value, event.value) from None


@dataclass
class CallMetrics:
    """Per-call metrics, flushed to the store once at close."""
    call_id: str
    started_at: float = field(default_factory=time.time)
    ended_at: float = 0.0
    user_speaking_ms: float = 0.0
    ai_response_ms: float = 0.0
    silence_ms: float = 0.0
    response_times_ms: List[float] = field(default_factory=list)
    turn_count: int = 0
    fallback_count: int = 0

    @property
    def duration_ms(self) -> float:
        end = self.ended_at if self.ended_at > 0 else time.time()
        return (end - self.started_at) * 1000

    @property
    def avg_response_ms(self) -> float:
        if not self.response_times_ms:
            return 0.0
        return sum(self.response_times_ms) / len(self.response_times_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "total_duration_ms": round(self.duration_ms),
            "user_speaking_ms": round(self.user_speaking_ms),
            "ai_response_ms": round(self.ai_response_ms),
            "silence_ms": round(self.silence_ms),
            "turn_count": self.turn_count,
            "fallback_count": self.fallback_count,
            "avg_response_ms": round(self.avg_response_ms, 2),
        }


@dataclass
class SessionDeps:
    """Collaborators shared by (or built for) every call session."""
    config: Config
    connection_factory: ConnectionFactory
    generator: Any
    rate_limiter: RateLimiter
    store: CallStore
    synthesizer_factory: Callable[[], Any]
    sleep: Callable[[float], Any] = asyncio.sleep
    rng: Optional[random.Random] = None

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "SessionDeps":
        config = config or get_config()

        def connection_factory(on_result, on_close):
            return DeepgramSTT(on_transcript=on_result, on_close=on_close, config=config)

        return cls(
            config=config,
            connection_factory=connection_factory,
            generator=ReplyGenerator(config),
            rate_limiter=RateLimiter(
                max_requests=config.rate_limit_max_requests,
                window_seconds=config.rate_limit_window_seconds,
            ),
            store=create_store(config),
            synthesizer_factory=lambda: TTSManager(config),
        )


class CallSession:
    """One active call. Create through SessionRegistry.create()."""

    def __init__(
        self,
        call_id: str,
        transport: CallerTransport,
        deps: SessionDeps,
        *,
        on_closed: Optional[Callable[[str], None]] = None,
    ):
        config = deps.config
        self.call_id = call_id
        self.config = config
        self.created_at = time.time()
        self.last_activity_at = self.created_at
        self.metrics = CallMetrics(call_id=call_id, started_at=self.created_at)
        self.history = ConversationHistory(config.system_prompt, config.max_history_messages)

        self._log = logger.bind(call_id=call_id)
        self._state = SessionState.INITIALIZING
        self._transport = transport
        self._on_closed = on_closed
        self._queue: asyncio.Queue[Utterance] = asyncio.Queue()
        self._segmenter = UtteranceSegmenter(
            silence_threshold_ms=config.silence_threshold_ms,
            min_confidence=config.min_confidence,
            min_chars=config.min_utterance_chars,
            min_words=config.min_utterance_words,
        )
        self._writer = BackgroundWriter(deps.store, call_id=call_id)
        self._tts = deps.synthesizer_factory()
        self._sender = ReplyAudioSender(transport, call_id=call_id)
        self._pipeline = ReplyPipeline(
            generator=deps.generator,
            synthesizer=self._tts,
            sender=self._sender,
            history=self.history,
            rate_limiter=deps.rate_limiter,
            writer=self._writer,
            retry_policy=RetryPolicy(
                max_attempts=config.tts_attempts,
                delay_seconds=config.tts_retry_delay_seconds,
                retry_on=(SynthesisFailed,),
                sleep=deps.sleep,
            ),
            rng=deps.rng,
            call_id=call_id,
        )
        self._link = TranscriptionLink(
            deps.connection_factory,
            retry_policy=RetryPolicy(
                max_attempts=config.stt_connect_attempts,
                delay_seconds=config.stt_retry_delay_seconds,
                sleep=deps.sleep,
            ),
            connect_timeout=config.stt_connect_timeout_seconds,
            close_timeout=config.teardown_timeout_seconds,
            should_reconnect=lambda: self._state in (SessionState.LISTENING, SessionState.RESPONDING),
            on_failed=self._on_link_failed,
            call_id=call_id,
        )
        self._link.on_result(self.handle_fragment)

        self._started = False
        self._idle_since: Optional[float] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def link(self) -> TranscriptionLink:
        return self._link

    @property
    def pipeline(self) -> ReplyPipeline:
        return self._pipeline

    def _fire(self, event: SessionEvent) -> SessionState:
        previous = self._state
        self._state = transition(previous, event)
        self._log.debug("Session transition", session_event=event.value, previous=previous.value, state=self._state.value)
        return self._state

    async def start(self) -> None:
        """
        Open the transcription link and begin listening.

        Returns once the link is open or the session has been torn down
        because it could not be opened.
        """
        if self._started or self._state != SessionState.INITIALIZING:
            return
        self._started = True
        self._log.info("Call session starting")

        self._writer.submit(self._writer.store.start_call(self.call_id), what="conversation")
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

        try:
            await self._link.connect()
        except ConnectionFailed as e:
            self._log.error("Transcription unavailable, ending call", error=str(e), attempts=e.attempts)
            await self._shutdown(SessionEvent.LINK_FAILED, "transcription_unavailable")
            return

        if self._state != SessionState.INITIALIZING:
            return

        self._fire(SessionEvent.LINK_OPEN)
        self._idle_since = time.time()
        self._worker_task = asyncio.create_task(self._turn_worker())
        self._log.info("Call session listening")

    async def handle_audio(self, frame: bytes) -> None:
        """Forward one inbound caller audio frame. Never blocks on a reply."""
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.last_activity_at = time.time()
        await self._link.send(frame)

    async def handle_fragment(self, fragment: TranscriptFragment) -> None:
        """Segment one transcript fragment; queue the utterance when a turn ends."""
        if self._state not in _ACTIVE:
            return

        turn_was_open = self._segmenter.last_fragment_at is not None
        utterance = self._segmenter.feed(fragment)
        turn_opened = not turn_was_open and (
            utterance is not None or self._segmenter.last_fragment_at is not None
        )
        if turn_opened and self._idle_since is not None:
            self.metrics.silence_ms += max(0.0, fragment.received_at - self._idle_since) * 1000
            self._idle_since = None

        if utterance is None:
            return

        self.last_activity_at = time.time()
        self.metrics.user_speaking_ms += utterance.speaking_ms
        self._log.info("Utterance complete", chars=len(utterance.text), confidence=utterance.confidence)
        self._writer.submit(
            self._writer.store.save_transcript(self.call_id, utterance.text, utterance.confidence),
            what="transcript",
        )
        self._queue.put_nowait(utterance)

    async def _turn_worker(self) -> None:
        """Processes queued utterances in arrival order, one at a time."""
        greeting = (self.config.greeting_text or "").strip()
        if greeting:
            try:
                await self._pipeline.speak(greeting)
            except TransportClosed:
                self._schedule_shutdown(SessionEvent.TRANSPORT_CLOSED, "transport_closed")
                return
            self._idle_since = time.time()

        while self._state in (SessionState.LISTENING, SessionState.RESPONDING):
            utterance = await self._queue.get()
            try:
                if self._state != SessionState.LISTENING:
                    break
                self._fire(SessionEvent.UTTERANCE)
                await self._run_turn(utterance)
            except TransportClosed:
                self._schedule_shutdown(SessionEvent.TRANSPORT_CLOSED, "transport_closed")
                return
            finally:
                self._queue.task_done()

            if self._state == SessionState.RESPONDING:
                self._fire(SessionEvent.REPLY_DONE)
                self._idle_since = time.time()

    async def _run_turn(self, utterance: Utterance) -> None:
        started = time.time()
        try:
            outcome = await self._pipeline.respond(utterance.text)
        except TransportClosed:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Turn failed", error_type=type(e).__name__, error=str(e))
            return

        self.metrics.turn_count += 1
        self.metrics.ai_response_ms += (time.time() - started) * 1000
        if outcome.generation_ms is not None:
            self.metrics.response_times_ms.append(outcome.generation_ms)
        if not outcome.generated:
            self.metrics.fallback_count += 1
        self.last_activity_at = time.time()

    async def _keepalive_loop(self) -> None:
        interval = self.config.keepalive_interval_seconds
        while self._state in _ACTIVE:
            await asyncio.sleep(interval)
            if self._state not in _ACTIVE:
                return
            if not await self._transport.ping():
                self._log.warning("Keepalive failed, closing session")
                self._schedule_shutdown(SessionEvent.TRANSPORT_CLOSED, "keepalive_failed")
                return

    async def _on_link_failed(self, error: ConnectionFailed) -> None:
        if self._state in _ACTIVE:
            self._schedule_shutdown(SessionEvent.LINK_FAILED, "transcription_unavailable")

    async def on_transport_closed(self) -> None:
        """The caller hung up or the media stream dropped."""
        await self._shutdown(SessionEvent.TRANSPORT_CLOSED, "transport_closed")

    async def close(self, reason: str = "shutdown") -> None:
        """Close the session. Safe to call any number of times."""
        await self._shutdown(SessionEvent.TRANSPORT_CLOSED, reason)

    async def fail(self, error: BaseException) -> None:
        """An unrecoverable error outside the session's own tasks."""
        self._log.error("Fatal session error", error_type=type(error).__name__, error=str(error))
        await self._shutdown(SessionEvent.FATAL_ERROR, "fatal_error")

    def _schedule_shutdown(self, event: SessionEvent, reason: str) -> None:
        if self._state in _ACTIVE:
            self._fire(event)
            self._teardown_task = asyncio.create_task(self._teardown(reason))

    async def _shutdown(self, event: SessionEvent, reason: str) -> None:
        self._schedule_shutdown(event, reason)
        task = self._teardown_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.shield(task)

    async def _teardown(self, reason: str) -> None:
        timeout = self.config.teardown_timeout_seconds
        self._log.info("Call session closing", reason=reason)

        self._sender.cancel()
        self._tts.cancel_current()

        current = asyncio.current_task()
        tasks = [
            t for t in (self._worker_task, self._keepalive_task)
            if t is not None and not t.done() and t is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            _, stuck = await asyncio.wait(tasks, timeout=timeout)
            if stuck:
                self._log.warning("Tasks did not stop within teardown timeout", count=len(stuck))

        try:
            await self._bounded(self._link.close(), "transcription link")
            self._segmenter.reset()

            dropped = 0
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                dropped += 1
            if dropped:
                self._log.info("Dropped queued utterances", count=dropped)

            self.metrics.ended_at = time.time()
            self._writer.submit(
                self._writer.store.finish_call(self.call_id, self.metrics.to_dict()),
                what="metrics",
            )
            await self._writer.drain(timeout)

            await self._bounded(self._tts.stop(), "synthesis shutdown")
            await self._bounded(self._transport.close(), "transport close")
        finally:
            self._fire(SessionEvent.CLOSED)
            if self._on_closed is not None:
                self._on_closed(self.call_id)
            self._log.info("Call session closed", reason=reason, metrics=self.metrics.to_dict())

    async def _bounded(self, operation, what: str) -> None:
        try:
            await asyncio.wait_for(operation, timeout=self.config.teardown_timeout_seconds)
        except asyncio.TimeoutError:
            self._log.warning("Timed out during teardown", what=what)
        except Exception as e:
            self._log.warning("Error during teardown", what=what, error=str(e))

    def snapshot(self) -> Dict[str, Any]:
        """State, metrics and transcript for reporting."""
        return {
            "call_id": self.call_id,
            "state": self._state.value,
            "link_state": self._link.state.value,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "queued_utterances": self._queue.qsize(),
            "metrics": self.metrics.to_dict(),
            "transcript": self.history.transcript(),
        }
