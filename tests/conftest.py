"""
Shared fakes for the capture tests.

The device, transcription, extraction and contact store capabilities are
replaced by in-process fakes so the controller can be driven end to end
without a microphone or network.
"""
import asyncio
from typing import List, Optional

import numpy as np
import pytest

from capture_pipeline.audio import AudioConstraints, AudioDevice, StreamHandle
from capture_pipeline.config import PipelineConfig
from capture_pipeline.entities import ExtractedEntities, ExtractedEntity
from capture_pipeline.errors import DeviceUnavailable
from capture_pipeline.extraction import EntityExtractor
from capture_pipeline.streams import EventChannel
from capture_pipeline.transcription import TranscriptEvent, TranscriptionCapability, TranscriptionHandle
from lead_control.config import ControlConfig
from lead_control.contact_store import ContactStoreError, InMemoryContactStore
from lead_control.controller import CaptureController
from observability.event_store import event_store

MARIA = (
    "Name is Maria Lopez, phone 512 555 0199, needs drywall repair, "
    "budget two thousand, pretty urgent"
)


class FakeStream(StreamHandle):
    """Stream whose frames and faults are triggered by the test."""

    def __init__(self, tracks: int = 1):
        self.tracks = tracks
        self.release_count = 0
        self._frame_cb = None
        self._fault_cb = None

    @property
    def track_count(self) -> int:
        return self.tracks

    def on_frame(self, callback) -> None:
        self._frame_cb = callback

    def on_fault(self, callback) -> None:
        self._fault_cb = callback

    def release(self) -> None:
        self.release_count += 1

    def emit(self, frame: Optional[np.ndarray] = None) -> None:
        if self._frame_cb is not None:
            self._frame_cb(frame if frame is not None else np.zeros(1600, dtype=np.int16))

    def fault(self, error: Optional[BaseException] = None) -> None:
        self._fault_cb(error or DeviceUnavailable("microphone unplugged"))


class FakeAudioDevice(AudioDevice):
    """`gate`, when set, holds every acquisition until the event fires."""

    def __init__(self, deny: bool = False, tracks: int = 1, gate: Optional[asyncio.Event] = None):
        self.deny = deny
        self.gate = gate
        self.tracks = tracks
        self.calls = 0
        self.streams: List[FakeStream] = []
        self.constraints: List[AudioConstraints] = []

    async def acquire_audio_stream(self, constraints: AudioConstraints) -> StreamHandle:
        self.calls += 1
        self.constraints.append(constraints)
        if self.gate is not None:
            await self.gate.wait()
        if self.deny:
            raise PermissionError("NotAllowedError: permission denied by user")
        stream = FakeStream(self.tracks)
        self.streams.append(stream)
        return stream

    @property
    def live(self) -> FakeStream:
        return self.streams[-1]


class FakeHandle(TranscriptionHandle):
    """Pushes its scripted events when the utterance ends (after `gate`, if any)."""

    def __init__(self, script, fail_on_end: Optional[BaseException] = None,
                 gate: Optional[asyncio.Event] = None):
        self.events: EventChannel = EventChannel()
        self.script = list(script)
        self.fail_on_end = fail_on_end
        self.gate = gate
        self.frames: List[np.ndarray] = []
        self.aborted = False

    def push_audio(self, frame: np.ndarray) -> None:
        self.frames.append(frame)

    def partial(self, text: str, confidence: Optional[float] = None) -> None:
        self.events.push(TranscriptEvent(text=text, confidence=confidence))

    async def end(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.events.closed:
            return
        for text, confidence in self.script:
            self.partial(text, confidence)
        self.events.close(self.fail_on_end)

    def abort(self) -> None:
        self.aborted = True
        self.events.close()


class FakeTranscriber(TranscriptionCapability):
    """`script` is read when an utterance begins; tests swap it between utterances."""

    def __init__(self, script=((MARIA, 0.92),), fail_on_end: Optional[BaseException] = None,
                 gate: Optional[asyncio.Event] = None):
        self.script = list(script)
        self.fail_on_end = fail_on_end
        self.gate = gate
        self.handles: List[FakeHandle] = []
        self.languages: List[str] = []

    def begin_transcription(self, language_tag: str) -> TranscriptionHandle:
        self.languages.append(language_tag)
        handle = FakeHandle(self.script, self.fail_on_end, self.gate)
        self.handles.append(handle)
        return handle


class FakeExtractor(EntityExtractor):
    """Returns the given results in order (the last one repeats)."""

    def __init__(self, *results: ExtractedEntities, error: Optional[BaseException] = None,
                 gate: Optional[asyncio.Event] = None):
        self.results = list(results) or [ExtractedEntities()]
        self.error = error
        self.gate = gate
        self.calls: List[tuple] = []

    async def extract(self, transcript: str, language_tag: str) -> ExtractedEntities:
        self.calls.append((transcript, language_tag))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return result.copy()


class FlakyContactStore(InMemoryContactStore):
    """Rejects appends while `fail` is set."""

    def __init__(self, fail: bool = True):
        super().__init__()
        self.fail = fail
        self.attempts = 0

    async def append_lead(self, record) -> None:
        self.attempts += 1
        if self.fail:
            raise ContactStoreError("contact store answered 503")
        await super().append_lead(record)


def lead_entities(**overrides) -> ExtractedEntities:
    """A complete, committable entity set; pass field=None to drop one."""
    entities = ExtractedEntities(
        name=ExtractedEntity(value="Maria Lopez", confidence=0.92),
        phone=ExtractedEntity(value="512-555-0199", confidence=0.95, normalized="+15125550199"),
        email=ExtractedEntity(value="maria@example.com", confidence=0.9),
        project=ExtractedEntity(value="drywall repair", confidence=0.85),
        budget=ExtractedEntity(value=2000.0, confidence=0.8),
        urgency=ExtractedEntity(value="high", confidence=0.8, alternatives=["medium"]),
    )
    for field_name, entity in overrides.items():
        entities.set(field_name, entity)
    return entities


class SleepRecorder:
    """Injectable sleep that returns at once and records the delays asked for."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def clear_events():
    yield
    event_store.clear()


@pytest.fixture
def device():
    return FakeAudioDevice()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def contact_store():
    return InMemoryContactStore()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def make_controller(device, transcriber, contact_store, sleep):
    """Controller factory; any capability can be overridden per test."""

    def _make(**overrides) -> CaptureController:
        return CaptureController(
            overrides.pop("device", device),
            overrides.pop("transcriber", transcriber),
            overrides.pop("extractor", None) or FakeExtractor(lead_entities()),
            overrides.pop("contact_store", contact_store),
            pipeline_config=overrides.pop("pipeline_config", PipelineConfig()),
            control_config=overrides.pop("control_config", ControlConfig()),
            sleep=overrides.pop("sleep", sleep),
        )

    return _make
