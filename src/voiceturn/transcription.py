"""
Transcription link: the lifecycle of one call's connection to the
transcription service.

Audio that arrives while the link is not open is held in an
AudioIngressBuffer and replayed, in order, the moment the connection opens.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from src.voiceturn.errors import ConnectionFailed, RetryExhausted
from src.voiceturn.events import TranscriptFragment
from src.voiceturn.ingress import AudioIngressBuffer
from src.voiceturn.retry import RetryPolicy

logger = structlog.get_logger(__name__)

ResultHandler = Callable[[TranscriptFragment], Awaitable[None]]
FailureHandler = Callable[[ConnectionFailed], Awaitable[None]]


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TranscriptionConnection(Protocol):
    async def connect(self) -> None: ...

    async def send_audio(self, audio_bytes: bytes) -> None: ...

    async def disconnect(self) -> None: ...


ConnectionFactory = Callable[
    [ResultHandler, Callable[[], Awaitable[None]]], TranscriptionConnection
]


class TranscriptionLink:
    """
    Owns the transcription connection for one call.

    - `connect()` retries with the link's RetryPolicy and raises ConnectionFailed
      once attempts are exhausted
    - `send()` never drops audio while the link can still open
    - an unexpected remote close gets exactly one reconnect attempt
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        connect_timeout: float = 5.0,
        close_timeout: float = 2.0,
        buffer: Optional[AudioIngressBuffer] = None,
        should_reconnect: Callable[[], bool] = lambda: True,
        on_failed: Optional[FailureHandler] = None,
        call_id: str = "",
    ):
        self._factory = connection_factory
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, delay_seconds=1.5)
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._buffer = buffer if buffer is not None else AudioIngressBuffer()
        self._should_reconnect = should_reconnect
        self._on_failed = on_failed
        self._log = logger.bind(call_id=call_id) if call_id else logger

        self._state = LinkState.IDLE
        self._conn: Optional[TranscriptionConnection] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._result_handler: Optional[ResultHandler] = None
        self._dropped_frames = 0

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def buffer(self) -> AudioIngressBuffer:
        return self._buffer

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    def on_result(self, handler: ResultHandler) -> None:
        """Register the callback invoked for every partial/final fragment."""
        self._result_handler = handler

    async def connect(self) -> None:
        """
        Open the link (or join the attempt already in progress).

        Raises:
            ConnectionFailed: attempts exhausted, or the link is closed
        """
        if self._state == LinkState.OPEN:
            return
        if self._state == LinkState.CLOSED:
            raise ConnectionFailed("Transcription link is closed")

        task = self._start_connect(self._retry_policy)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._state == LinkState.CLOSED:
                raise ConnectionFailed("Transcription link closed while connecting")
            raise

    async def send(self, frame: bytes) -> None:
        """Forward a caller audio frame, buffering it while the link is not open."""
        if self._state == LinkState.CLOSED:
            self._dropped_frames += 1
            return

        conn = self._conn
        if self._state == LinkState.OPEN and conn is not None:
            try:
                await conn.send_audio(frame)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning("Transcription send failed", error=str(e))
                self._buffer.append(frame)
                await self._connection_lost(conn)
                return

        self._buffer.append(frame)
        if not self._buffer.connecting:
            self._start_connect(self._retry_policy)

    async def close(self) -> None:
        """Close deterministically. Buffered audio is discarded, never replayed."""
        if self._state == LinkState.CLOSED and self._conn is None:
            dropped = self._buffer.discard()
            if dropped:
                self._log.info("Discarded audio buffered for a failed link", frames=dropped)
            return
        self._state = LinkState.CLOSED

        task = self._connect_task
        if task and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=self._close_timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError, ConnectionFailed):
                pass

        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await asyncio.wait_for(conn.disconnect(), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                self._log.warning("Transcription disconnect timed out")
            except Exception as e:
                self._log.warning("Error closing transcription connection", error=str(e))

        dropped = self._buffer.discard()
        self._log.info("Transcription link closed", discarded_frames=dropped)

    def _start_connect(self, policy: RetryPolicy) -> asyncio.Task:
        if self._connect_task and not self._connect_task.done():
            return self._connect_task

        self._buffer.connecting = True
        self._state = LinkState.CONNECTING
        task = asyncio.create_task(self._run_connect(policy))
        task.add_done_callback(self._on_connect_done)
        self._connect_task = task
        return task

    async def _run_connect(self, policy: RetryPolicy) -> None:
        try:
            conn = await policy.run(self._attempt, name="transcription_connect")
        except RetryExhausted as e:
            self._state = LinkState.CLOSED
            raise ConnectionFailed(
                f"Transcription service unreachable: {e.last_error}",
                attempts=e.attempts,
            ) from e.last_error
        finally:
            self._buffer.connecting = False

        if self._state == LinkState.CLOSED:
            if self._conn is conn:
                self._conn = None
            await self._quiet_disconnect(conn)
            return
        self._log.info("Transcription link open")

    async def _attempt(self, attempt: int) -> TranscriptionConnection:
        conn = self._factory(self._dispatch_result, lambda: self._connection_lost(conn))
        try:
            await asyncio.wait_for(conn.connect(), timeout=self._connect_timeout)
            # No await between the drain emptying the buffer and the state flip,
            # so newer frames cannot overtake buffered ones.
            replayed = await self._buffer.drain_to(conn.send_audio)
        except asyncio.CancelledError:
            await self._quiet_disconnect(conn)
            raise
        except Exception:
            await self._quiet_disconnect(conn)
            raise

        self._conn = conn
        if self._state != LinkState.CLOSED:
            self._state = LinkState.OPEN
        if replayed:
            self._log.info("Replayed buffered audio", frames=replayed, attempt=attempt)
        return conn

    def _on_connect_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, ConnectionFailed):
            self._log.error("Transcription link failed", attempts=exc.attempts, error=str(exc))
            if self._on_failed is not None:
                asyncio.ensure_future(self._on_failed(exc))
        elif exc is not None:
            self._log.error("Transcription connect task crashed", error=str(exc))

    async def _connection_lost(self, conn: Optional[TranscriptionConnection]) -> None:
        """The remote side went away (or a send failed) without us closing it."""
        if conn is None or conn is not self._conn or self._state == LinkState.CLOSED:
            return

        self._conn = None
        self._state = LinkState.IDLE
        asyncio.ensure_future(self._quiet_disconnect(conn))

        if not self._should_reconnect():
            self._log.info("Transcription connection lost; owner is not listening")
            self._state = LinkState.CLOSED
            return

        self._log.warning("Transcription connection lost; reconnecting once")
        single_attempt = RetryPolicy(
            max_attempts=1,
            delay_seconds=0,
            sleep=self._retry_policy.sleep,
        )
        self._start_connect(single_attempt)

    async def _dispatch_result(self, fragment: TranscriptFragment) -> None:
        if self._state == LinkState.CLOSED or self._result_handler is None:
            return
        await self._result_handler(fragment)

    async def _quiet_disconnect(self, conn: TranscriptionConnection) -> None:
        try:
            await asyncio.wait_for(conn.disconnect(), timeout=self._close_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.debug("Ignoring disconnect error", error=str(e))
