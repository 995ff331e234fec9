from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

from src.voiceturn.events import SynthesisChunk


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[SynthesisChunk, None]:
        """
        Yield mu-law 8kHz audio for `text`.

        Raises SynthesisFailed when the service cannot produce audio.
        """
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
