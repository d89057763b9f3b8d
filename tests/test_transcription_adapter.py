"""
Tests for the transcription adapter.

Verifies:
- Partials are forwarded with clamped / defaulted confidence
- Nothing is forwarded while paused, but the transcript keeps advancing
- Capability errors and timeouts degrade to the last good partial
- Language changes are refused mid-utterance
"""
import asyncio

import numpy as np
import pytest

from capture_pipeline.errors import ErrorCategory
from capture_pipeline.streams import EventChannel
from capture_pipeline.transcription import (
    DEFAULT_CONFIDENCE,
    GroqTranscriber,
    TranscriptionAdapter,
    TranscriptionCapability,
    TranscriptionHandle,
    segment_confidence,
)

from conftest import FakeTranscriber


class HangingHandle(TranscriptionHandle):
    """Never finishes its final flush."""

    def __init__(self):
        self.events = EventChannel()
        self.aborted = False

    def push_audio(self, frame):
        pass

    async def end(self):
        await asyncio.Event().wait()

    def abort(self):
        self.aborted = True
        self.events.close()


class HangingTranscriber(TranscriptionCapability):
    def __init__(self):
        self.handle = HangingHandle()

    def begin_transcription(self, language_tag):
        return self.handle


async def next_partial(partials):
    return await asyncio.wait_for(partials.__aiter__().__anext__(), 1.0)


@pytest.mark.asyncio
async def test_partials_forwarded_with_default_confidence():
    transcriber = FakeTranscriber(script=[])
    adapter = TranscriptionAdapter(transcriber)
    partials = adapter.start(session_id="cap_1")
    handle = transcriber.handles[-1]

    handle.partial("new roof", None)
    event = await next_partial(partials)
    assert event.text == "new roof"
    assert event.confidence == DEFAULT_CONFIDENCE

    handle.partial("new roof for the garage", 1.7)
    event = await next_partial(partials)
    assert event.confidence == 1.0
    assert adapter.current.text == "new roof for the garage"
    adapter.cancel()


@pytest.mark.asyncio
async def test_empty_partials_are_ignored():
    transcriber = FakeTranscriber(script=[("hello there", 0.8), ("   ", 0.9)])
    adapter = TranscriptionAdapter(transcriber)
    adapter.start()

    transcript = await adapter.finalize(timeout=1.0)

    assert transcript.text == "hello there"
    assert transcript.confidence == 0.8
    assert transcript.degraded is False


@pytest.mark.asyncio
async def test_paused_adapter_forwards_nothing_and_drops_frames():
    transcriber = FakeTranscriber(script=[("roof repair", 0.9)])
    adapter = TranscriptionAdapter(transcriber)
    partials = adapter.start()
    handle = transcriber.handles[-1]

    adapter.feed(np.zeros(160, dtype=np.int16))
    adapter.pause()
    adapter.feed(np.zeros(160, dtype=np.int16))
    transcript = await adapter.finalize(timeout=1.0)

    assert len(handle.frames) == 1
    assert transcript.text == "roof repair"
    assert [event async for event in partials] == []


@pytest.mark.asyncio
async def test_capability_error_keeps_last_partial_marked_degraded(capsys):
    transcriber = FakeTranscriber(script=[("Maria Lopez needs a fence", 0.85)],
                                  fail_on_end=ConnectionError("socket closed"))
    adapter = TranscriptionAdapter(transcriber)
    adapter.start(session_id="cap_2")

    transcript = await adapter.finalize(timeout=1.0)

    assert transcript.text == "Maria Lopez needs a fence"
    assert transcript.degraded is True
    assert adapter.failure.category == ErrorCategory.TRANSCRIPTION_FAILED
    out = capsys.readouterr().out
    assert "transcription.degraded" in out
    assert "Maria" not in out


@pytest.mark.asyncio
async def test_timeout_aborts_and_degrades():
    transcriber = HangingTranscriber()
    adapter = TranscriptionAdapter(transcriber)
    adapter.start()

    transcript = await adapter.finalize(timeout=0.05)

    assert transcript.degraded is True
    assert transcript.is_empty
    assert transcriber.handle.aborted
    assert "timed out" in adapter.failure.detail


@pytest.mark.asyncio
async def test_language_change_refused_mid_utterance():
    transcriber = FakeTranscriber(script=[("hola", 0.9)])
    adapter = TranscriptionAdapter(transcriber)

    assert adapter.set_language("es-ES")
    adapter.start()
    assert transcriber.languages == ["es-ES"]
    assert adapter.set_language("de-DE") is False

    transcript = await adapter.finalize(timeout=1.0)
    assert transcript.language == "es-ES"
    assert adapter.set_language("de-DE")


def test_unsupported_language():
    with pytest.raises(ValueError):
        TranscriptionAdapter(FakeTranscriber(), language="tlh")
    assert TranscriptionAdapter(FakeTranscriber()).set_language("xx-XX") is False


@pytest.mark.asyncio
async def test_cancel_drops_everything():
    transcriber = FakeTranscriber(script=[])
    adapter = TranscriptionAdapter(transcriber)
    partials = adapter.start()
    transcriber.handles[-1].partial("half a sentence", 0.9)
    await next_partial(partials)

    adapter.cancel()

    assert adapter.active is False
    assert adapter.current.is_empty
    assert transcriber.handles[-1].aborted
    assert [event async for event in partials] == []


def test_segment_confidence():
    assert segment_confidence({"segments": []}) is None
    assert segment_confidence({}) is None
    body = {"segments": [{"avg_logprob": 0.0}, {"avg_logprob": -0.6931471805599453}]}
    assert segment_confidence(body) == pytest.approx(0.75)


class FakeWhisperClient:
    def __init__(self, body=None, error=None):
        self.body = body or {"text": " hello there ", "segments": [{"avg_logprob": 0.0}]}
        self.error = error
        self.requests = []

    async def transcribe(self, wav_bytes, language, *, timeout):
        self.requests.append((wav_bytes, language, timeout))
        if self.error is not None:
            raise self.error
        return self.body


@pytest.mark.asyncio
async def test_groq_handle_flushes_final_pass_on_end():
    client = FakeWhisperClient()
    handle = GroqTranscriber(client, partial_interval=60.0, request_timeout=7.0).begin_transcription("es-ES")

    handle.push_audio(np.zeros(1600, dtype=np.int16))
    handle.push_audio(np.zeros(1600, dtype=np.int16))
    await handle.end()

    events = [event async for event in handle.events]
    assert [(e.text, e.confidence) for e in events] == [("hello there", 1.0)]
    wav_bytes, language, timeout = client.requests[0]
    assert wav_bytes[:4] == b"RIFF"
    assert len(wav_bytes) == 44 + 3200 * 2
    assert (language, timeout) == ("es", 7.0)


@pytest.mark.asyncio
async def test_groq_handle_error_closes_channel_with_error():
    client = FakeWhisperClient(error=ConnectionError("connection reset"))
    handle = GroqTranscriber(client, partial_interval=60.0).begin_transcription("en-US")
    handle.push_audio(np.zeros(160, dtype=np.int16))

    await handle.end()

    with pytest.raises(ConnectionError):
        [event async for event in handle.events]


@pytest.mark.asyncio
async def test_groq_handle_without_audio_sends_nothing():
    client = FakeWhisperClient()
    handle = GroqTranscriber(client, partial_interval=60.0).begin_transcription("en-US")

    await handle.end()

    assert client.requests == []
    assert [event async for event in handle.events] == []
