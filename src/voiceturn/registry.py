"""Registry of live call sessions, keyed by call id."""

import asyncio
import threading
from typing import Dict, List, Optional

import structlog

from src.voiceturn.errors import DuplicateSession
from src.voiceturn.session import CallSession, SessionDeps
from src.voiceturn.transport import CallerTransport

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """
    Exactly one CallSession per call id.

    Sessions remove themselves when their teardown finishes; `remove()` is
    idempotent so the server can also call it on disconnect.
    """

    def __init__(self, deps: SessionDeps):
        self.deps = deps
        self._sessions: Dict[str, CallSession] = {}
        self._lock = threading.Lock()

    def create(self, call_id: str, transport: CallerTransport) -> CallSession:
        """
        Register a new session for `call_id`.

        Raises:
            DuplicateSession: a session for `call_id` is already registered
        """
        with self._lock:
            if call_id in self._sessions:
                raise DuplicateSession(call_id)
            session = CallSession(call_id, transport, self.deps, on_closed=self.remove)
            self._sessions[call_id] = session
            active = len(self._sessions)

        logger.info("Session registered", call_id=call_id, active_sessions=active)
        return session

    def remove(self, call_id: str) -> Optional[CallSession]:
        with self._lock:
            session = self._sessions.pop(call_id, None)
        if session is not None:
            logger.info("Session removed", call_id=call_id, active_sessions=self.active_count)
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        with self._lock:
            return self._sessions.get(call_id)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def call_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    async def broadcast_shutdown(self) -> None:
        """Close every live session (process shutdown)."""
        with self._lock:
            sessions = list(self._sessions.values())
        if not sessions:
            return

        logger.info("Shutting down sessions", count=len(sessions))
        results = await asyncio.gather(
            *(session.close("server_shutdown") for session in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error("Session shutdown failed", call_id=session.call_id, error=str(result))
            self.remove(session.call_id)
