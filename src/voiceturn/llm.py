"""
OpenAI reply generation.

Provides:
- Conversation history bounded to the system prompt plus the most recent turns
- A reply client that maps every failure onto GenerationFailed with a kind
  the reply pipeline can branch on
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.voiceturn.config import get_config
from src.voiceturn.errors import GenerationFailed
from src.voiceturn.events import GenerationResult

logger = structlog.get_logger(__name__)


@dataclass
class ConversationTurn:
    """A single message in the conversation."""
    role: str  # "system", "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """
    Role-tagged message history.

    The first (system) message is always kept; after it, only the most recent
    `max_messages` entries survive.
    """

    def __init__(self, system_prompt: str, max_messages: int = 9):
        self.max_messages = max_messages
        self._system = ConversationTurn(role="system", content=system_prompt)
        self._turns: List[ConversationTurn] = []
        self._transcript: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> None:
        """Add a user message."""
        self._append(ConversationTurn(role="user", content=content))

    def add_assistant_message(self, content: str) -> None:
        """Add an assistant message."""
        self._append(ConversationTurn(role="assistant", content=content))

    def _append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)
        self._transcript.append(turn)
        if len(self._turns) > self.max_messages:
            self._turns = self._turns[-self.max_messages:]

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format, system prompt first."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in [self._system, *self._turns]
        ]

    def transcript(self) -> List[Dict[str, Any]]:
        """Every user/assistant message of the call, untruncated."""
        return [
            {"role": turn.role, "content": turn.content, "timestamp": turn.timestamp}
            for turn in self._transcript
        ]

    def __len__(self) -> int:
        return 1 + len(self._turns)


def classify_openai_error(error: BaseException) -> GenerationFailed:
    """Translate an OpenAI SDK exception into GenerationFailed."""
    status = getattr(error, "status_code", None)

    if isinstance(error, openai.APITimeoutError):
        kind = "timeout"
    elif isinstance(error, openai.RateLimitError):
        kind = "rate_limit"
    elif isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = "auth"
    elif isinstance(error, openai.APIConnectionError):
        kind = "connection"
    elif isinstance(error, openai.APIStatusError):
        kind = "status"
    else:
        kind = "status"

    return GenerationFailed(kind, str(error), status_code=status)


class ReplyGenerator:
    """OpenAI chat-completions client producing one reply per request."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.llm_timeout_seconds,
            max_retries=0,
        )

    async def generate(self, messages: List[Dict[str, str]]) -> GenerationResult:
        """
        Generate a reply for the full (bounded) message history.

        Raises:
            GenerationFailed: on timeout, non-success status, quota/auth errors
                or an empty reply
        """
        start_time = time.time()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
                top_p=self.config.llm_top_p,
            )
        except openai.OpenAIError as e:
            failure = classify_openai_error(e)
            logger.error(
                "LLM generation failed",
                kind=failure.kind,
                status_code=failure.status_code,
                error=str(e),
            )
            raise failure from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise GenerationFailed("empty", "Model returned an empty reply")

        latency_ms = (time.time() - start_time) * 1000
        logger.debug("LLM reply generated", latency_ms=round(latency_ms, 2), chars=len(text))
        return GenerationResult(text=text, latency_ms=latency_ms, model=self.model)

    async def close(self) -> None:
        await self._client.close()
