"""
Audio framing helpers.

Caller audio and synthesized audio are both mu-law 8kHz end to end:
Plivo streams mu-law, Deepgram transcribes it natively and Deepgram Aura
synthesizes it directly. No transcoding happens in this process.
"""

from typing import Generator

TELEPHONY_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
FRAME_SIZE = int(TELEPHONY_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def chunk_audio(audio_bytes: bytes, chunk_size: int = FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames, padding the last one with mu-law silence.

    Args:
        audio_bytes: Raw mu-law audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms)
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk

