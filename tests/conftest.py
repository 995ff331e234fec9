"""
Pytest configuration and fixtures.
"""

import dataclasses
import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest

from src.voiceturn.errors import SynthesisFailed, TransportClosed
from src.voiceturn.events import GenerationResult, SynthesisChunk
from src.voiceturn.rate_limit import RateLimiter
from src.voiceturn.store import CallStore


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "SUPABASE_URL": "",
        "SUPABASE_SERVICE_KEY": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voiceturn.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    """Config with instant retries and no greeting."""
    from src.voiceturn.config import get_config
    return dataclasses.replace(
        get_config(),
        greeting_text="",
        stt_retry_delay_seconds=0.0,
        tts_retry_delay_seconds=0.0,
        teardown_timeout_seconds=0.5,
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


class FakeTransport:
    """Caller transport that records everything sent to it in order."""

    def __init__(self, *, close_after_frames: Optional[int] = None):
        self.is_open = True
        self.sent: List[tuple] = []
        self.ping_ok = True
        self.closed = False
        self._close_after_frames = close_after_frames

    @property
    def frames(self) -> List[bytes]:
        return [item[1] for item in self.sent if item[0] == "audio"]

    @property
    def clears(self) -> int:
        return sum(1 for item in self.sent if item[0] == "clear")

    async def send_audio(self, frame: bytes) -> None:
        if not self.is_open:
            raise TransportClosed("closed")
        self.sent.append(("audio", frame))
        if self._close_after_frames is not None and len(self.frames) >= self._close_after_frames:
            self.is_open = False

    async def send_checkpoint(self, name: str) -> None:
        if not self.is_open:
            raise TransportClosed("closed")
        self.sent.append(("checkpoint", name))

    async def clear_audio(self) -> None:
        if not self.is_open:
            raise TransportClosed("closed")
        self.sent.append(("clear",))

    async def ping(self) -> bool:
        return self.is_open and self.ping_ok

    async def close(self) -> None:
        self.closed = True
        self.is_open = False


class FakeConnection:
    """Transcription connection controlled by a FakeConnectionFactory."""

    def __init__(self, factory: "FakeConnectionFactory", on_result, on_close):
        self.factory = factory
        self.on_result = on_result
        self.on_close = on_close
        self.sent: List[bytes] = []
        self.disconnected = False

    async def connect(self) -> None:
        self.factory.connect_calls += 1
        if self.factory.failures_remaining > 0:
            self.factory.failures_remaining -= 1
            raise ConnectionError("transcription service unavailable")

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.sent.append(audio_bytes)

    async def disconnect(self) -> None:
        self.disconnected = True

    async def drop(self) -> None:
        """Simulate the remote side closing the stream."""
        await self.on_close()


class FakeConnectionFactory:
    def __init__(self, failures: int = 0):
        self.failures_remaining = failures
        self.connect_calls = 0
        self.connections: List[FakeConnection] = []

    def __call__(self, on_result, on_close) -> FakeConnection:
        conn = FakeConnection(self, on_result, on_close)
        self.connections.append(conn)
        return conn

    @property
    def all_sent(self) -> List[bytes]:
        return [frame for conn in self.connections for frame in conn.sent]


class FakeGenerator:
    """Reply generator returning canned replies or raising GenerationFailed."""

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or ["Sure, I can help with that."])
        self.calls: List[List[Dict[str, str]]] = []

    async def generate(self, messages):
        self.calls.append(list(messages))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return GenerationResult(text=reply, latency_ms=120.0, model="fake")

    async def close(self) -> None:
        pass


class FakeSynthesizer:
    """
    Yields `chunks_per_reply` chunks of 320 bytes per synthesize() call.

    `fail_attempts` lists the 1-based calls that raise SynthesisFailed after
    `fail_after_chunks` chunks.
    """

    def __init__(self, *, chunks_per_reply: int = 3, fail_attempts=(), fail_after_chunks: int = 1):
        self.chunks_per_reply = chunks_per_reply
        self.fail_attempts = set(fail_attempts)
        self.fail_after_chunks = fail_after_chunks
        self.calls: List[str] = []
        self.cancelled = False
        self.stopped = False

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None):
        self.calls.append(text)
        attempt = len(self.calls)
        marker = bytes([attempt % 250])
        for i in range(self.chunks_per_reply):
            if attempt in self.fail_attempts and i == self.fail_after_chunks:
                raise SynthesisFailed(f"synthesis attempt {attempt} failed")
            yield SynthesisChunk(audio_bytes=marker * 320, is_final=False)
        yield SynthesisChunk(audio_bytes=b"", is_final=True)

    def cancel_current(self) -> None:
        self.cancelled = True

    async def stop(self) -> None:
        self.stopped = True


class RecordingStore(CallStore):
    def __init__(self):
        self.calls: List[tuple] = []

    async def start_call(self, call_id):
        self.calls.append(("start_call", call_id))

    async def save_transcript(self, call_id, text, confidence):
        self.calls.append(("save_transcript", call_id, text, confidence))

    async def save_turn(self, call_id, user_message, reply, generated):
        self.calls.append(("save_turn", call_id, user_message, reply, generated))

    async def finish_call(self, call_id, metrics):
        self.calls.append(("finish_call", call_id, metrics))

    def named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connection_factory():
    return FakeConnectionFactory()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def deps(config, connection_factory, generator, synthesizer, store, no_sleep):
    from src.voiceturn.session import SessionDeps
    return SessionDeps(
        config=config,
        connection_factory=connection_factory,
        generator=generator,
        rate_limiter=RateLimiter(max_requests=50, window_seconds=60),
        store=store,
        synthesizer_factory=lambda: synthesizer,
        sleep=no_sleep,
    )


@pytest.fixture
def plivo_start_message():
    """Sample Plivo start message."""
    import json
    return json.dumps({
        "event": "start",
        "sequenceNumber": 0,
        "start": {
            "callId": "call-123",
            "streamId": "stream-456",
            "accountId": "MA789",
            "tracks": ["inbound"],
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000},
        },
    })


@pytest.fixture
def plivo_media_message(sample_ulaw_audio):
    """Sample Plivo media message."""
    import base64
    import json
    return json.dumps({
        "event": "media",
        "sequenceNumber": 1,
        "streamId": "stream-456",
        "media": {
            "track": "inbound",
            "timestamp": "1700000000000",
            "chunk": 1,
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        },
    })


@pytest.fixture
def plivo_stop_message():
    """Sample Plivo stop message."""
    import json
    return json.dumps({"event": "stop", "sequenceNumber": 2, "streamId": "stream-456"})


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_connection_factory():
    return FakeConnectionFactory


@pytest.fixture
def make_synthesizer():
    return FakeSynthesizer


@pytest.fixture
def make_generator():
    return FakeGenerator
