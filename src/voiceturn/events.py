"""
Tagged event variants exchanged with external services.

Parsing of service payloads happens here so the orchestration code only ever
sees these types.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class TranscriptFragment:
    """One partial or final transcript piece from the transcription service."""

    text: str
    is_final: bool
    confidence: Optional[float] = None
    speaker: Optional[int] = None
    received_at: float = field(default_factory=time.time)

    @classmethod
    def from_deepgram(cls, data: dict[str, Any], received_at: Optional[float] = None) -> Optional["TranscriptFragment"]:
        """
        Build a fragment from a Deepgram `Results` message.

        Returns None for messages that carry no transcript.
        """
        channel = data.get("channel")
        if not isinstance(channel, dict):
            return None
        alternatives = channel.get("alternatives") or []
        if not alternatives or not isinstance(alternatives[0], dict):
            return None

        best = alternatives[0]
        text = best.get("transcript") or ""
        if not isinstance(text, str) or not text.strip():
            return None

        confidence = best.get("confidence")
        if not isinstance(confidence, (int, float)):
            confidence = None

        speaker = None
        words = best.get("words") or []
        if words and isinstance(words[0], dict) and isinstance(words[0].get("speaker"), int):
            speaker = words[0]["speaker"]

        return cls(
            text=text,
            is_final=bool(data.get("is_final", False)),
            confidence=float(confidence) if confidence is not None else None,
            speaker=speaker,
            received_at=received_at if received_at is not None else time.time(),
        )


@dataclass
class GenerationResult:
    """A reply produced by the reply-generation service."""

    text: str
    latency_ms: float = 0.0
    model: str = ""


@dataclass
class SynthesisChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is mu-law 8kHz, ready for the caller transport.
    """

    audio_bytes: bytes
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)
