"""
Caller transport: the telephony media stream as seen by a call session.
"""

from typing import Protocol

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from src.voiceturn.errors import TransportClosed
from src.voiceturn.plivo_protocol import (
    create_checkpoint_message,
    create_clear_audio_message,
    create_play_audio_message,
)

logger = structlog.get_logger(__name__)


class CallerTransport(Protocol):
    """What a call session needs from the telephony media stream."""

    @property
    def is_open(self) -> bool: ...

    async def send_audio(self, frame: bytes) -> None: ...

    async def send_checkpoint(self, name: str) -> None: ...

    async def clear_audio(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class PlivoWebSocketTransport:
    """CallerTransport over a Plivo bidirectional stream WebSocket."""

    def __init__(self, websocket: WebSocket, *, sample_rate: int = 8000):
        self._ws = websocket
        self._sample_rate = sample_rate
        self._closed = False
        self._ping_count = 0
        self.stream_id = ""

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def _send_text(self, message: str) -> None:
        if not self.is_open:
            raise TransportClosed("Caller transport is closed")
        try:
            await self._ws.send_text(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._closed = True
            raise TransportClosed(f"Caller transport closed during send: {e}") from e

    async def send_audio(self, frame: bytes) -> None:
        await self._send_text(create_play_audio_message(frame, self._sample_rate))

    async def send_checkpoint(self, name: str) -> None:
        await self._send_text(create_checkpoint_message(self.stream_id, name))

    async def clear_audio(self) -> None:
        await self._send_text(create_clear_audio_message(self.stream_id))

    async def ping(self) -> bool:
        """Liveness probe: a checkpoint the far end will acknowledge."""
        self._ping_count += 1
        try:
            await self.send_checkpoint(f"keepalive-{self._ping_count}")
        except TransportClosed:
            return False
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws.application_state == WebSocketState.CONNECTED:
            try:
                await self._ws.close()
            except RuntimeError as e:
                logger.debug("WebSocket already closed", error=str(e))
