"""
Bounded retry with a fixed delay between attempts.

One policy object is shared by the transcription link (connect attempts) and
the reply pipeline (synthesis attempts) so both retry the same way.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from src.voiceturn.errors import RetryExhausted

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Run an async operation up to `max_attempts` times, `delay_seconds` apart."""

    max_attempts: int = 3
    delay_seconds: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        name: str = "operation",
        on_failure: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    ) -> T:
        """
        Call `operation(attempt)` until it succeeds.

        Errors not listed in `retry_on` (and cancellation) propagate immediately.
        `on_failure` runs after each retryable failure, before the delay.

        Raises:
            RetryExhausted: every attempt failed with a retryable error
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(attempt)
            except asyncio.CancelledError:
                raise
            except self.retry_on as e:
                last_error = e
                logger.warning(
                    "Attempt failed",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if on_failure is not None:
                    await on_failure(attempt, e)
                if attempt < self.max_attempts and self.delay_seconds > 0:
                    await self.sleep(self.delay_seconds)

        assert last_error is not None
        raise RetryExhausted(self.max_attempts, last_error)
