"""
Utterance segmentation (endpointing).

Turns a stream of partial/final transcript fragments into finished caller
utterances. A turn ends on a final fragment when any of these hold:
- the gap since the previous fragment of the turn exceeds the silence threshold
- the pending text ends in terminal punctuation
- the pending text ends with a closing phrase ("okay", "thank you", ...)
"""

import re
from dataclasses import dataclass
from typing import Optional

import structlog

from src.voiceturn.events import TranscriptFragment

logger = structlog.get_logger(__name__)

FILLER_WORDS = frozenset(
    {"um", "umm", "uh", "uhm", "er", "erm", "ah", "hm", "hmm", "mm", "mhm", "uh-huh"}
)

CLOSING_PHRASES = ("okay", "right", "you see", "you know what i mean", "thank you")

_COLLOQUIALISMS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bgonna\b", re.IGNORECASE), "going to"),
    (re.compile(r"\bwanna\b", re.IGNORECASE), "want to"),
    (re.compile(r"\bdunno\b", re.IGNORECASE), "don't know"),
    (re.compile(r"\bgotta\b", re.IGNORECASE), "got to"),
)

_TERMINAL_PUNCT_RE = re.compile(r"[.!?]$")
_WORD_EDGE_PUNCT = ".,!?;:\"'()"
_CLOSING_PHRASE_RE = re.compile(
    r"\b(" + "|".join(re.escape(p) for p in CLOSING_PHRASES) + r")[\s,]*$",
    re.IGNORECASE,
)


def clean_transcript(text: str) -> str:
    """Collapse whitespace and expand a few colloquialisms."""
    text = re.sub(r"\s+", " ", text or "").strip()
    for pattern, replacement in _COLLOQUIALISMS:
        text = pattern.sub(replacement, text)
    return text


def is_filler_only(text: str) -> bool:
    words = [w.strip(_WORD_EDGE_PUNCT).lower() for w in (text or "").split()]
    words = [w for w in words if w]
    return bool(words) and all(w in FILLER_WORDS for w in words)


def is_end_of_thought(text: str, elapsed_ms: Optional[float], silence_threshold_ms: float) -> bool:
    """
    Decide whether `text` (the pending turn) is complete.

    `elapsed_ms` is the gap since the previous fragment of this turn, or None
    when there was none.
    """
    if elapsed_ms is not None and elapsed_ms > silence_threshold_ms:
        return True
    trimmed = text.strip()
    if _TERMINAL_PUNCT_RE.search(trimmed):
        return True
    return bool(_CLOSING_PHRASE_RE.search(trimmed))


@dataclass
class Utterance:
    """A finished caller utterance."""

    text: str
    confidence: Optional[float] = None
    speaking_ms: float = 0.0


class UtteranceSegmenter:
    """
    Accumulates fragments into `pending_text` and emits finished utterances.

    Not thread-safe; each call session feeds it from a single task.
    """

    def __init__(
        self,
        *,
        silence_threshold_ms: float = 1500,
        min_confidence: float = 0.7,
        min_chars: int = 2,
        min_words: int = 1,
    ):
        self.silence_threshold_ms = silence_threshold_ms
        self.min_confidence = min_confidence
        self.min_chars = min_chars
        self.min_words = min_words

        self._pending: list[str] = []
        self._last_fragment_at: Optional[float] = None
        self._turn_started_at: Optional[float] = None
        self._min_seen_confidence: Optional[float] = None

    @property
    def pending_text(self) -> str:
        return " ".join(self._pending)

    @property
    def last_fragment_at(self) -> Optional[float]:
        return self._last_fragment_at

    def passes_quality_gate(self, text: str) -> bool:
        trimmed = text.strip()
        return len(trimmed) >= self.min_chars and len(trimmed.split()) >= self.min_words

    def feed(self, fragment: TranscriptFragment) -> Optional[Utterance]:
        """
        Consume one fragment. Returns the finished utterance when this
        fragment closes the turn and the turn passes the quality gate.
        """
        if fragment.confidence is not None and fragment.confidence < self.min_confidence:
            logger.debug(
                "Dropping low-confidence fragment",
                confidence=round(fragment.confidence, 3),
                is_final=fragment.is_final,
            )
            return None

        cleaned = clean_transcript(fragment.text)
        if not cleaned or is_filler_only(cleaned):
            return None

        now = fragment.received_at
        elapsed_ms = None
        if self._last_fragment_at is not None:
            elapsed_ms = (now - self._last_fragment_at) * 1000

        self._pending.append(cleaned)
        self._last_fragment_at = now
        if self._turn_started_at is None:
            self._turn_started_at = now
        if fragment.confidence is not None:
            if self._min_seen_confidence is None or fragment.confidence < self._min_seen_confidence:
                self._min_seen_confidence = fragment.confidence

        if not fragment.is_final:
            return None

        text = self.pending_text
        if not is_end_of_thought(text, elapsed_ms, self.silence_threshold_ms):
            return None

        speaking_ms = (now - self._turn_started_at) * 1000 if self._turn_started_at is not None else 0.0
        confidence = self._min_seen_confidence
        self.reset()

        text = text.strip()
        if not self.passes_quality_gate(text):
            logger.debug("Discarding utterance below quality gate", text=text)
            return None

        return Utterance(text=text, confidence=confidence, speaking_ms=speaking_ms)

    def reset(self) -> None:
        """Forget the in-progress turn."""
        self._pending = []
        self._last_fragment_at = None
        self._turn_started_at = None
        self._min_seen_confidence = None
