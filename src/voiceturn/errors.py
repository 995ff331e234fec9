"""
Error taxonomy for the voice-turn orchestrator.

Only ConnectionFailed and unexpected transport errors end a call. Everything
raised by a downstream service is absorbed with a spoken fallback.
"""

from typing import Optional


class VoiceTurnError(Exception):
    """Base class for orchestrator errors."""
    pass


class ConnectionFailed(VoiceTurnError):
    """The transcription link exhausted its connect attempts."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class GenerationFailed(VoiceTurnError):
    """
    The reply-generation service did not produce a reply.

    `kind` is one of: timeout, status, rate_limit, auth, connection, empty.
    """

    def __init__(self, kind: str, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or kind)
        self.kind = kind
        self.status_code = status_code


class SynthesisFailed(VoiceTurnError):
    """Speech synthesis (or delivery of its audio) failed."""
    pass


class PersistenceFailed(VoiceTurnError):
    """A best-effort write to the external store failed."""
    pass


class TransportClosed(VoiceTurnError):
    """The caller transport is closed; audio can no longer be delivered."""
    pass


class DuplicateSession(VoiceTurnError):
    """A session already exists for this call id."""

    def __init__(self, call_id: str):
        super().__init__(f"Session already registered for call {call_id}")
        self.call_id = call_id


class InvalidTransition(VoiceTurnError):
    """A session event is not allowed in the current state."""

    def __init__(self, state: str, event: str):
        super().__init__(f"Event {event} not allowed in state {state}")
        self.state = state
        self.event = event


class RetryExhausted(VoiceTurnError):
    """All attempts of a RetryPolicy failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
