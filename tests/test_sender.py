"""
Tests for outbound reply audio framing.
"""

import pytest

from src.voiceturn.errors import TransportClosed
from src.voiceturn.events import SynthesisChunk
from src.voiceturn.sender import ReplyAudioSender


async def chunks(*parts, final=True):
    for part in parts:
        yield SynthesisChunk(audio_bytes=part)
    if final:
        yield SynthesisChunk(audio_bytes=b"", is_final=True)


@pytest.mark.asyncio
async def test_whole_buffer_is_framed_and_padded(transport):
    sender = ReplyAudioSender(transport)

    result = await sender.send(b"\x01" * 400)

    assert result.frames == 3
    assert result.bytes_sent == 480
    assert [len(f) for f in transport.frames] == [160, 160, 160]
    assert transport.frames[-1] == b"\x01" * 80 + b"\xff" * 80
    assert transport.sent[-1] == ("checkpoint", "reply-1")


@pytest.mark.asyncio
async def test_stream_carries_partial_frames_across_chunks(transport):
    sender = ReplyAudioSender(transport)

    result = await sender.send(chunks(b"\x01" * 100, b"\x02" * 100, b"\x03" * 120))

    assert result.frames == 2
    assert transport.frames[0] == b"\x01" * 100 + b"\x02" * 60
    assert transport.frames[1] == b"\x02" * 40 + b"\x03" * 120
    assert transport.sent[-1] == ("checkpoint", "reply-1")


@pytest.mark.asyncio
async def test_stream_and_buffer_produce_the_same_frames(make_transport):
    audio = bytes(range(256)) * 3
    buffered, streamed = make_transport(), make_transport()

    await ReplyAudioSender(buffered).send(audio)
    await ReplyAudioSender(streamed).send(chunks(audio[:100], audio[100:500], audio[500:]))

    assert buffered.frames == streamed.frames


@pytest.mark.asyncio
async def test_closed_transport_raises(make_transport):
    transport = make_transport(close_after_frames=2)
    sender = ReplyAudioSender(transport)

    with pytest.raises(TransportClosed):
        await sender.send(b"\x01" * 800)

    assert len(transport.frames) == 2


@pytest.mark.asyncio
async def test_cancel_stops_at_next_chunk_boundary(transport):
    sender = ReplyAudioSender(transport)

    async def stream():
        yield SynthesisChunk(audio_bytes=b"\x01" * 320)
        sender.cancel()
        yield SynthesisChunk(audio_bytes=b"\x02" * 320)
        yield SynthesisChunk(audio_bytes=b"", is_final=True)

    result = await sender.send(stream())

    assert result.cancelled
    assert result.frames == 2
    assert all(item[0] == "audio" for item in transport.sent)


@pytest.mark.asyncio
async def test_clear_only_when_frames_were_sent(transport):
    sender = ReplyAudioSender(transport)

    await sender.clear()
    assert transport.clears == 0

    await sender.send(b"\x01" * 160)
    await sender.clear()
    await sender.clear()

    assert transport.clears == 1
