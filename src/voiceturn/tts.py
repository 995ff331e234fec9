from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import structlog

from src.voiceturn.config import get_config
from src.voiceturn.events import SynthesisChunk
from src.voiceturn.tts_providers.base import TTSProvider
from src.voiceturn.tts_providers.deepgram import DeepgramTTS, DeepgramTTSMetrics

logger = structlog.get_logger(__name__)


class TTSManager:
    """
    Per-process speech synthesis front end.

    Delivery mode follows the provider: incremental chunks when streaming,
    one final chunk otherwise. Failures surface as SynthesisFailed.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider

    def _get_provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = DeepgramTTS(self.config)
            logger.info(
                "TTS provider ready",
                provider="deepgram",
                model=self.config.tts_model,
                streaming=self.config.tts_streaming,
            )
        return self._provider

    @property
    def metrics(self) -> Optional[DeepgramTTSMetrics]:
        provider = self._provider
        if isinstance(provider, DeepgramTTS):
            return provider.metrics
        return None

    async def synthesize(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[SynthesisChunk, None]:
        async for chunk in self._get_provider().synthesize_streaming(text, voice_id=voice_id):
            yield chunk

    def cancel_current(self) -> None:
        if self._provider:
            self._provider.cancel()

    async def stop(self) -> None:
        if self._provider:
            await self._provider.close()
            self._provider = None
