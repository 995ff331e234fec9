"""
Reply pipeline: one caller utterance in, one spoken reply out.

Steps per utterance:
1. Admission control against the process-wide RateLimiter
2. Generate a reply from the bounded conversation history
3. Fall back to a canned line when generation fails
4. Synthesize and deliver, retrying failed attempts with the shared RetryPolicy

Only TransportClosed escapes; every downstream-service failure ends in
something being said to the caller.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

import structlog

from src.voiceturn.errors import GenerationFailed, RetryExhausted, SynthesisFailed
from src.voiceturn.events import SynthesisChunk
from src.voiceturn.llm import ConversationHistory
from src.voiceturn.rate_limit import RateLimiter
from src.voiceturn.retry import RetryPolicy
from src.voiceturn.sender import ReplyAudioSender, SendResult
from src.voiceturn.store import BackgroundWriter

logger = structlog.get_logger(__name__)

FALLBACK_RESPONSES = (
    "Hello, I can hear you.",
    "Yes, I'm listening.",
    "Please go ahead.",
    "I understand.",
    "Please continue.",
    "I'm here to help.",
    "Tell me more.",
    "I'm following.",
)

TOO_MANY_REQUESTS_RESPONSE = "I'm getting a lot of requests right now. Please give me a moment."


class Synthesizer(Protocol):
    def synthesize(self, text: str) -> AsyncIterator[SynthesisChunk]: ...


@dataclass
class ReplyOutcome:
    """What happened for one utterance."""
    text: str
    generated: bool
    rate_limited: bool = False
    generation_ms: Optional[float] = None
    delivered: bool = True
    cancelled: bool = False


class ReplyPipeline:
    """Per-session reply driver. Not re-entrant: the turn worker calls it serially."""

    def __init__(
        self,
        *,
        generator: Any,
        synthesizer: Synthesizer,
        sender: ReplyAudioSender,
        history: ConversationHistory,
        rate_limiter: RateLimiter,
        writer: Optional[BackgroundWriter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        fallback_responses: Sequence[str] = FALLBACK_RESPONSES,
        rng: Optional[random.Random] = None,
        call_id: str = "",
    ):
        self._generator = generator
        self._synthesizer = synthesizer
        self._sender = sender
        self._history = history
        self._rate_limiter = rate_limiter
        self._writer = writer
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=3, delay_seconds=1.0, retry_on=(SynthesisFailed,)
        )
        self._fallbacks = tuple(fallback_responses)
        self._rng = rng or random.Random()
        self._call_id = call_id
        self._log = logger.bind(call_id=call_id) if call_id else logger

    @property
    def history(self) -> ConversationHistory:
        return self._history

    def pick_fallback(self) -> str:
        return self._rng.choice(self._fallbacks)

    async def respond(self, utterance: str) -> ReplyOutcome:
        """
        Produce and speak the reply to one utterance.

        Raises:
            TransportClosed: the caller went away mid-reply
        """
        if not self._rate_limiter.try_acquire():
            self._log.warning("Rate limit exceeded, skipping generation", in_window=self._rate_limiter.in_window)
            sent = await self.speak(TOO_MANY_REQUESTS_RESPONSE)
            return ReplyOutcome(
                text=TOO_MANY_REQUESTS_RESPONSE,
                generated=False,
                rate_limited=True,
                delivered=sent is not None,
            )

        self._history.add_user_message(utterance)

        generation_ms: Optional[float] = None
        try:
            result = await self._generator.generate(self._history.get_messages())
            reply_text = result.text
            generation_ms = result.latency_ms
            generated = True
        except GenerationFailed as e:
            reply_text = self.pick_fallback()
            generated = False
            self._log.warning("Using fallback reply", kind=e.kind, status_code=e.status_code)
        except Exception as e:
            reply_text = self.pick_fallback()
            generated = False
            self._log.error("Reply generation crashed, using fallback reply", error_type=type(e).__name__, error=str(e))

        self._history.add_assistant_message(reply_text)
        if self._writer is not None:
            self._writer.submit(
                self._writer.store.save_turn(self._call_id, utterance, reply_text, generated),
                what="turn",
            )

        outcome = ReplyOutcome(text=reply_text, generated=generated, generation_ms=generation_ms)
        sent = await self.speak(reply_text)
        outcome.delivered = sent is not None
        outcome.cancelled = bool(sent and sent.cancelled)
        return outcome

    async def speak(self, text: str) -> Optional[SendResult]:
        """
        Synthesize and deliver `text` with bounded retry.

        Audio from a failed attempt is cleared from the caller's playback buffer
        before the next one. After the last failure a fallback line is tried once;
        returns None in that case.
        """

        async def attempt(n: int) -> SendResult:
            return await self._deliver(text)

        async def on_failure(n: int, error: BaseException) -> None:
            await self._sender.clear()

        try:
            return await self._retry_policy.run(attempt, name="synthesis", on_failure=on_failure)
        except RetryExhausted as e:
            self._log.error("Synthesis failed, speaking fallback line", attempts=e.attempts, error=str(e.last_error))

        await self._speak_without_retry(self.pick_fallback())
        return None

    async def _speak_without_retry(self, text: str) -> None:
        try:
            await self._deliver(text)
        except SynthesisFailed as e:
            self._log.error("Fallback line could not be spoken", error=str(e))
            await self._sender.clear()

    async def _deliver(self, text: str) -> SendResult:
        stream = self._synthesizer.synthesize(text)
        try:
            return await self._sender.send(stream)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._log.debug("Error closing synthesis stream", error=str(e))
