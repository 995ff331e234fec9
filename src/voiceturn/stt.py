"""
Deepgram live transcription over a WebSocket.

- Accepts mu-law 8kHz directly from Plivo (no conversion needed)
- Stream parameters (encoding, sample rate, channels, language) are fixed per call
- Emits TranscriptFragment events; parsing stays at this boundary
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.voiceturn.config import get_config
from src.voiceturn.events import TranscriptFragment

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

TranscriptCallback = Callable[[TranscriptFragment], Awaitable[None]]
CloseCallback = Callable[[], Awaitable[None]]


@dataclass
class STTMetrics:
    """Per-connection transcription counters."""
    total_audio_bytes: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


def build_listen_url(config: Any) -> str:
    params = {
        "model": config.deepgram_model,
        "language": config.deepgram_language,
        "encoding": config.audio_encoding,
        "sample_rate": config.audio_sample_rate,
        "channels": config.audio_channels,
        "punctuate": "true",
        "smart_format": "true",
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    One Deepgram live-transcription connection.

    `connect()` raises on failure so the caller can apply its retry policy.
    `on_close` fires only when the remote side ends the stream; an explicit
    `disconnect()` does not trigger it.
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        on_close: Optional[CloseCallback] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript = on_transcript
        self._on_close = on_close
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> None:
        """Open the streaming connection."""
        if self._is_connected:
            return

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        url = build_listen_url(self.config)

        logger.info(
            "Connecting to Deepgram",
            model=self.config.deepgram_model,
            language=self.config.deepgram_language,
        )
        self._closing = False
        self._ws = await websockets.connect(
            url,
            additional_headers=headers,
            open_timeout=self.config.stt_connect_timeout_seconds,
        )
        self._is_connected = True
        logger.info("Deepgram STT connected")

        self._receive_task = asyncio.create_task(self._receive_loop())

    async def disconnect(self) -> None:
        """Close the stream. Sends CloseStream so Deepgram flushes pending results."""
        self._closing = True
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not delivered", error=str(e))

        task = self._receive_task
        self._receive_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Forward one mu-law frame. Raises ConnectionError when not open."""
        if not self._is_connected or not self._ws:
            raise ConnectionError("Deepgram connection is not open")

        self._metrics.total_audio_bytes += len(audio_bytes)
        await self._ws.send(audio_bytes)

    async def _receive_loop(self) -> None:
        """Read until the stream ends; report a remote close through on_close."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                await self._handle_message(data)

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

        if not self._closing and self._on_close:
            await self._on_close()

    async def _handle_message(self, data: dict) -> None:
        """Route one decoded Deepgram message (Results, Error, Metadata)."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            fragment = TranscriptFragment.from_deepgram(data, received_at=time.time())
            if fragment is None:
                return

            self._metrics.record_transcript(fragment.is_final)
            logger.debug(
                "STT transcript",
                text=fragment.text[:50],
                is_final=fragment.is_final,
                confidence=fragment.confidence,
            )

            if self._on_transcript:
                try:
                    await self._on_transcript(fragment)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Transcript handler failed", error=str(e))

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )
