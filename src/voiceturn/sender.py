"""
Outbound reply audio.

Streams synthesized mu-law audio to the caller transport in order, in fixed
20ms frames, whether synthesis delivered one buffer or a stream of chunks.
"""

from dataclasses import dataclass
from typing import AsyncIterable, Union

import structlog

from src.voiceturn.audio import FRAME_SIZE, chunk_audio
from src.voiceturn.errors import TransportClosed
from src.voiceturn.events import SynthesisChunk
from src.voiceturn.transport import CallerTransport

logger = structlog.get_logger(__name__)

AudioSource = Union[bytes, AsyncIterable[SynthesisChunk]]


@dataclass
class SendResult:
    frames: int = 0
    bytes_sent: int = 0
    cancelled: bool = False


class ReplyAudioSender:
    """
    Frames and sends one audio stream at a time.

    Transport state and the cancel flag are checked at every chunk boundary;
    a closed transport raises TransportClosed.
    """

    def __init__(self, transport: CallerTransport, *, frame_size: int = FRAME_SIZE, call_id: str = ""):
        self._transport = transport
        self._frame_size = frame_size
        self._log = logger.bind(call_id=call_id) if call_id else logger
        self._cancelled = False
        self._stream_frames = 0
        self._stream_count = 0

    @property
    def frames_in_current_stream(self) -> int:
        return self._stream_frames

    def cancel(self) -> None:
        """Stop the stream in flight at the next chunk boundary."""
        self._cancelled = True

    def _check_open(self) -> None:
        if not self._transport.is_open:
            raise TransportClosed("Caller transport closed during reply")

    async def send(self, audio: AudioSource) -> SendResult:
        """Send a whole buffer or an async stream of SynthesisChunk."""
        self._cancelled = False
        self._stream_frames = 0
        self._stream_count += 1
        result = SendResult()
        remainder = b""

        self._check_open()

        if isinstance(audio, (bytes, bytearray)):
            remainder = await self._send_frames(bytes(audio), result)
        else:
            async for chunk in audio:
                if self._cancelled:
                    result.cancelled = True
                    break
                self._check_open()
                if chunk.audio_bytes:
                    # Carry the partial frame over; padding between chunks would
                    # insert audible gaps.
                    remainder = await self._send_frames(remainder + chunk.audio_bytes, result)
                if chunk.is_final:
                    break

        if result.cancelled or self._cancelled:
            result.cancelled = True
            self._log.info("Reply audio cancelled", frames=result.frames)
            return result

        if remainder:
            self._check_open()
            frame = next(chunk_audio(remainder, self._frame_size))
            await self._transport.send_audio(frame)
            self._stream_frames += 1
            result.frames += 1
            result.bytes_sent += len(frame)

        if result.frames:
            await self._transport.send_checkpoint(f"reply-{self._stream_count}")

        self._log.debug("Reply audio sent", frames=result.frames, bytes=result.bytes_sent)
        return result

    async def _send_frames(self, data: bytes, result: SendResult) -> bytes:
        """Send every whole frame in `data`; return the leftover bytes."""
        whole = len(data) - len(data) % self._frame_size
        offset = 0
        for frame in chunk_audio(data[:whole], self._frame_size):
            if self._cancelled:
                result.cancelled = True
                break
            self._check_open()
            await self._transport.send_audio(frame)
            offset += self._frame_size
            self._stream_frames += 1
            result.frames += 1
            result.bytes_sent += len(frame)
        return data[offset:]

    async def clear(self) -> None:
        """Drop audio of the current stream still buffered on the caller side."""
        if self._stream_frames == 0 or not self._transport.is_open:
            return
        try:
            await self._transport.clear_audio()
        except TransportClosed:
            return
        self._log.info("Cleared partially played reply audio", frames=self._stream_frames)
        self._stream_frames = 0
