"""
Plivo bidirectional audio stream WebSocket protocol.

Plivo sends JSON messages with events:
- start: Stream started, contains streamId and callId
- media: Audio data as base64 mu-law 8kHz
- dtmf: DTMF tone detected
- playedStream: A checkpoint was reached in playback
- clearedAudio: Buffered playback was cleared
- stop: Stream stopped

Outbound messages:
- playAudio: Send audio as base64 mu-law 8kHz
- checkpoint: Request playback acknowledgment
- clearAudio: Clear buffered audio
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

MULAW_CONTENT_TYPE = "audio/x-mulaw"


class PlivoEventType(str, Enum):
    """Plivo stream event types."""
    START = "start"
    MEDIA = "media"
    DTMF = "dtmf"
    PLAYED_STREAM = "playedStream"
    CLEARED_AUDIO = "clearedAudio"
    STOP = "stop"


@dataclass
class PlivoStartEvent:
    """Parsed Plivo start event."""
    stream_id: str
    call_id: str
    account_id: str
    tracks: List[str] = field(default_factory=list)
    media_format: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlivoStartEvent":
        """Parse from Plivo message."""
        start = message.get("start", {}) or {}
        return cls(
            stream_id=start.get("streamId", "") or message.get("streamId", ""),
            call_id=start.get("callId", ""),
            account_id=start.get("accountId", ""),
            tracks=start.get("tracks", []),
            media_format=start.get("mediaFormat", {}),
        )


@dataclass
class PlivoMediaEvent:
    """Parsed Plivo media event."""
    stream_id: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlivoMediaEvent":
        """Parse from Plivo message."""
        media = message.get("media", {}) or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64)
        except (ValueError, TypeError):
            payload = b""

        return cls(
            stream_id=message.get("streamId", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class PlivoPlayedStreamEvent:
    """Parsed Plivo checkpoint acknowledgment."""
    stream_id: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlivoPlayedStreamEvent":
        return cls(
            stream_id=message.get("streamId", ""),
            name=message.get("name", ""),
        )


@dataclass
class PlivoDTMFEvent:
    """Parsed Plivo DTMF event."""
    stream_id: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlivoDTMFEvent":
        dtmf = message.get("dtmf", {}) or {}
        return cls(
            stream_id=message.get("streamId", ""),
            digit=dtmf.get("digit", ""),
        )


def parse_plivo_message(raw_message: Any) -> Tuple[PlivoEventType, Any]:
    """
    Parse a raw Plivo WebSocket message.

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Plivo message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid JSON: expected an object")

    event_type_str = message.get("event", "")
    try:
        event_type = PlivoEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Plivo event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == PlivoEventType.START:
        return event_type, PlivoStartEvent.from_message(message)
    if event_type == PlivoEventType.MEDIA:
        return event_type, PlivoMediaEvent.from_message(message)
    if event_type == PlivoEventType.PLAYED_STREAM:
        return event_type, PlivoPlayedStreamEvent.from_message(message)
    if event_type == PlivoEventType.DTMF:
        return event_type, PlivoDTMFEvent.from_message(message)
    return event_type, message


def create_play_audio_message(audio_payload: bytes, sample_rate: int = 8000) -> str:
    """
    Create a Plivo playAudio message.

    Args:
        audio_payload: Raw mu-law audio bytes
        sample_rate: Sample rate of the payload
    """
    message = {
        "event": "playAudio",
        "media": {
            "contentType": MULAW_CONTENT_TYPE,
            "sampleRate": sample_rate,
            "payload": base64.b64encode(audio_payload).decode("utf-8"),
        },
    }
    return encoder.encode(message).decode("utf-8")


def create_checkpoint_message(stream_id: str, name: str) -> str:
    """Create a Plivo checkpoint message (acknowledged with playedStream)."""
    message = {
        "event": "checkpoint",
        "streamId": stream_id,
        "name": name,
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_audio_message(stream_id: str) -> str:
    """Create a Plivo clearAudio message to flush buffered playback."""
    message = {
        "event": "clearAudio",
        "streamId": stream_id,
    }
    return encoder.encode(message).decode("utf-8")
