"""
Best-effort persistence of call records.

Writes go to Supabase (PostgREST over HTTP). Every failure surfaces as
PersistenceFailed; callers log it and carry on with the call.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set

import httpx
import structlog

from src.voiceturn.config import get_config
from src.voiceturn.errors import PersistenceFailed

logger = structlog.get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CallStore(ABC):
    """Destination for transcripts, turns and per-call metrics."""

    @abstractmethod
    async def start_call(self, call_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def save_transcript(self, call_id: str, text: str, confidence: Optional[float]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def save_turn(self, call_id: str, user_message: str, reply: str, generated: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    async def finish_call(self, call_id: str, metrics: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingStore(CallStore):
    """Used when no database is configured: records go to the log only."""

    async def start_call(self, call_id: str) -> None:
        logger.debug("Call started (not persisted)", call_id=call_id)

    async def save_transcript(self, call_id: str, text: str, confidence: Optional[float]) -> None:
        logger.debug("Transcript (not persisted)", call_id=call_id, chars=len(text), confidence=confidence)

    async def save_turn(self, call_id: str, user_message: str, reply: str, generated: bool) -> None:
        logger.debug("Turn (not persisted)", call_id=call_id, generated=generated)

    async def finish_call(self, call_id: str, metrics: Dict[str, Any]) -> None:
        logger.info("Call metrics (not persisted)", call_id=call_id, metrics=metrics)


class SupabaseStore(CallStore):
    """Supabase REST client for the conversations/transcripts/turns/metrics tables."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(
            base_url=f"{self.config.supabase_url}/rest/v1",
            headers={
                "apikey": self.config.supabase_service_key,
                "Authorization": f"Bearer {self.config.supabase_service_key}",
                "Content-Type": "application/json",
                "Prefer": "return=minimal",
            },
            timeout=self.config.store_timeout_seconds,
        )

    async def _request(self, method: str, table: str, *, json: Any, params: Optional[Dict[str, str]] = None) -> None:
        try:
            response = await self._client.request(method, f"/{table}", json=json, params=params)
        except httpx.HTTPError as e:
            raise PersistenceFailed(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            raise PersistenceFailed(
                f"{method} {table} returned {response.status_code}: {response.text[:200]}"
            )

    async def _insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        await self._request("POST", table, json=rows)

    async def start_call(self, call_id: str) -> None:
        await self._insert(
            "conversations",
            [{"call_id": call_id, "start_time": _now_iso(), "status": "active"}],
        )

    async def save_transcript(self, call_id: str, text: str, confidence: Optional[float]) -> None:
        await self._insert(
            "transcripts",
            [{
                "call_uuid": call_id,
                "transcript": text,
                "speaker": "user",
                "confidence": round(confidence if confidence is not None else 1.0, 3),
                "is_processed": True,
                "timestamp": _now_iso(),
            }],
        )

    async def save_turn(self, call_id: str, user_message: str, reply: str, generated: bool) -> None:
        await self._insert(
            "conversation_turns",
            [{
                "call_id": call_id,
                "user_message": user_message,
                "ai_response": reply,
                "is_openai": generated,
                "timestamp": _now_iso(),
            }],
        )

    async def finish_call(self, call_id: str, metrics: Dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            "conversations",
            json={"end_time": _now_iso(), "status": "completed"},
            params={"call_id": f"eq.{call_id}"},
        )
        await self._insert(
            "call_metrics",
            [{
                "call_id": call_id,
                "total_duration": metrics.get("total_duration_ms", 0),
                "user_speaking_time": metrics.get("user_speaking_ms", 0),
                "ai_response_time": metrics.get("ai_response_ms", 0),
                "silence_time": metrics.get("silence_ms", 0),
                "turn_count": metrics.get("turn_count", 0),
                "average_response_time": metrics.get("avg_response_ms", 0),
            }],
        )

    async def close(self) -> None:
        await self._client.aclose()


def create_store(config: Optional[Any] = None) -> CallStore:
    config = config or get_config()
    if config.persistence_enabled:
        logger.info("Persistence enabled", backend="supabase")
        return SupabaseStore(config)
    logger.info("Persistence disabled; records are logged only")
    return LoggingStore()


class BackgroundWriter:
    """
    Runs store writes off the audio path.

    Failures are logged, never raised. `drain()` waits (bounded) for whatever
    is still in flight when the call ends.
    """

    def __init__(self, store: CallStore, *, call_id: str = ""):
        self.store = store
        self._log = logger.bind(call_id=call_id) if call_id else logger
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, write: Awaitable[None], *, what: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(write, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, write: Awaitable[None], what: str) -> None:
        try:
            await write
        except asyncio.CancelledError:
            raise
        except PersistenceFailed as e:
            self._log.warning("Persistence failed", what=what, error=str(e))
        except Exception as e:
            self._log.error("Unexpected persistence error", what=what, error_type=type(e).__name__, error=str(e))

    async def drain(self, timeout: float) -> None:
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._log.warning("Abandoned unfinished writes", count=len(pending))
