"""Caller audio held while the transcription link is not open."""

from collections import deque
from typing import Awaitable, Callable, Deque

import structlog

logger = structlog.get_logger(__name__)


class AudioIngressBuffer:
    """
    FIFO of inbound audio frames.

    Growth is unbounded; the reconnect window that fills it is bounded by the
    link's retry policy.
    """

    def __init__(self) -> None:
        self._frames: Deque[bytes] = deque()
        self._pending_bytes = 0
        self.connecting = False

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    def append(self, frame: bytes) -> None:
        self._frames.append(frame)
        self._pending_bytes += len(frame)

    async def drain_to(self, sink: Callable[[bytes], Awaitable[None]]) -> int:
        """
        Deliver every buffered frame to `sink` in arrival order, then leave the
        buffer empty.

        Frames appended while the drain is awaiting `sink` are delivered by this
        same drain, after the ones already queued.
        """
        delivered = 0
        while self._frames:
            frame = self._frames.popleft()
            self._pending_bytes -= len(frame)
            try:
                await sink(frame)
            except BaseException:
                # Undelivered frame goes back to the head for the next attempt.
                self._frames.appendleft(frame)
                self._pending_bytes += len(frame)
                raise
            delivered += 1
        return delivered

    def discard(self) -> int:
        """Drop everything buffered. Only used at teardown."""
        dropped = len(self._frames)
        if dropped:
            logger.debug("Discarding buffered audio", frames=dropped, bytes=self._pending_bytes)
        self._frames.clear()
        self._pending_bytes = 0
        return dropped
