from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.voiceturn.config import get_config
from src.voiceturn.errors import SynthesisFailed
from src.voiceturn.events import SynthesisChunk
from src.voiceturn.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"
# 100ms of mu-law 8kHz per read
STREAM_READ_SIZE = 800


@dataclass
class DeepgramTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_bytes: int = 0
    avg_first_byte_ms: float = 0.0

    def record_synthesis(self, *, characters: int, audio_bytes: int, first_byte_ms: float) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_bytes += audio_bytes

        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura text-to-speech over HTTP.

    Requests raw mu-law 8kHz (no container) so the bytes can go straight to the
    caller. With `streaming` the body is yielded as it arrives; otherwise the
    whole buffer is yielded as a single final chunk.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        streaming: Optional[bool] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self.streaming = self.config.tts_streaming if streaming is None else streaming
        self._client = client
        self._owns_client = client is None
        self._metrics = DeepgramTTSMetrics()
        self._is_cancelled = False

    @property
    def metrics(self) -> DeepgramTTSMetrics:
        return self._metrics

    def cancel(self) -> None:
        self._is_cancelled = True
        logger.debug("Deepgram TTS cancelled")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=5.0))
        return self._client

    def _request_params(self, voice_id: Optional[str]) -> dict[str, Any]:
        return {
            "model": voice_id or self.config.tts_model,
            "encoding": self.config.audio_encoding,
            "sample_rate": self.config.audio_sample_rate,
            "container": "none",
        }

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[SynthesisChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        client = self._get_client()
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }
        params = self._request_params(voice_id)

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        try:
            if self.streaming:
                async with client.stream(
                    "POST", DEEPGRAM_SPEAK_URL, json={"text": text}, headers=headers, params=params
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise SynthesisFailed(
                            f"Deepgram TTS returned {response.status_code}: {response.text[:200]}"
                        )

                    async for audio in response.aiter_bytes(chunk_size=STREAM_READ_SIZE):
                        if self._is_cancelled:
                            break
                        if not audio:
                            continue
                        if first_byte_time is None:
                            first_byte_time = time.time()
                        total_audio_bytes += len(audio)
                        yield SynthesisChunk(audio_bytes=audio, is_final=False)

                if self._is_cancelled:
                    return
                if total_audio_bytes == 0:
                    raise SynthesisFailed("Deepgram TTS returned no audio")
                self._record(text, total_audio_bytes, start_time, first_byte_time)
                yield SynthesisChunk(audio_bytes=b"", is_final=True)
            else:
                response = await client.post(
                    DEEPGRAM_SPEAK_URL, json={"text": text}, headers=headers, params=params
                )
                if response.status_code >= 400:
                    raise SynthesisFailed(
                        f"Deepgram TTS returned {response.status_code}: {response.text[:200]}"
                    )
                first_byte_time = time.time()
                audio = response.content
                if not audio:
                    raise SynthesisFailed("Deepgram TTS returned no audio")
                self._record(text, len(audio), start_time, first_byte_time)
                if not self._is_cancelled:
                    yield SynthesisChunk(audio_bytes=audio, is_final=True)

        except httpx.HTTPError as e:
            logger.error("Deepgram synthesis failed", error_type=type(e).__name__, error=str(e))
            raise SynthesisFailed(f"Deepgram TTS request failed: {e}") from e

    def _record(self, text: str, audio_bytes: int, start_time: float, first_byte_time: Optional[float]) -> None:
        self._metrics.record_synthesis(
            characters=len(text),
            audio_bytes=audio_bytes,
            first_byte_ms=((first_byte_time or time.time()) - start_time) * 1000,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
