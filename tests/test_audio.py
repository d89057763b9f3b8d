"""
Tests for microphone access.

Verifies:
- The resource guard owns one handle and releases it exactly once
- Failed and zero-track acquisitions surface as DeviceUnavailable
- The capture session records, pauses, stops, cancels and reports faults
- Level metering and WAV packaging
"""
import struct

import numpy as np
import pytest

from capture_pipeline.audio import (
    AudioConstraints,
    AudioLevelMeter,
    AudioResourceGuard,
    CaptureSession,
    pcm_to_wav,
)
from capture_pipeline.errors import DeviceUnavailable
from capture_pipeline.permissions import PermissionNegotiator, PermissionStatus

from conftest import FakeAudioDevice


def tone(n: int = 256, freq: float = 1000.0, sample_rate: int = 16000) -> np.ndarray:
    t = np.arange(n) / sample_rate
    return (np.sin(2 * np.pi * freq * t) * 20000).astype(np.int16)


@pytest.mark.asyncio
async def test_guard_releases_once():
    device = FakeAudioDevice()
    guard = AudioResourceGuard(device)

    handle = await guard.acquire("cap_1")
    assert guard.held
    assert guard.handle is handle

    assert guard.release("stopped") is True
    assert guard.release("cancelled") is False
    assert handle.release_count == 1
    assert not guard.held


@pytest.mark.asyncio
async def test_guard_is_exclusive():
    device = FakeAudioDevice()
    guard = AudioResourceGuard(device)
    await guard.acquire()

    with pytest.raises(DeviceUnavailable):
        await guard.acquire()
    assert device.calls == 1
    guard.release()


@pytest.mark.asyncio
async def test_guard_requests_fixed_constraints():
    device = FakeAudioDevice()
    guard = AudioResourceGuard(device, AudioConstraints(sample_rate=16000))
    await guard.acquire()

    constraints = device.constraints[0]
    assert constraints.echo_cancellation
    assert constraints.noise_suppression
    assert constraints.auto_gain_control
    guard.release()


@pytest.mark.asyncio
async def test_guard_wraps_device_errors():
    guard = AudioResourceGuard(FakeAudioDevice(deny=True))

    with pytest.raises(DeviceUnavailable) as exc_info:
        await guard.acquire()

    assert "PermissionError" in exc_info.value.detail
    assert not guard.held


@pytest.mark.asyncio
async def test_guard_rejects_zero_tracks_and_releases_them():
    device = FakeAudioDevice(tracks=0)
    guard = AudioResourceGuard(device)

    with pytest.raises(DeviceUnavailable):
        await guard.acquire()

    assert device.streams[0].release_count == 1
    assert not guard.held


@pytest.mark.asyncio
async def test_scoped_releases_on_error():
    device = FakeAudioDevice()
    guard = AudioResourceGuard(device)

    with pytest.raises(RuntimeError):
        async with guard.scoped("cap_1"):
            raise RuntimeError("boom")

    assert device.streams[0].release_count == 1
    assert not guard.held


@pytest.mark.asyncio
async def test_permission_probe_is_cached():
    device = FakeAudioDevice(deny=True)
    negotiator = PermissionNegotiator(AudioResourceGuard(device))

    assert await negotiator.request_permission() == PermissionStatus.DENIED
    assert await negotiator.request_permission() == PermissionStatus.DENIED
    assert device.calls == 1

    negotiator.reset()
    device.deny = False
    assert await negotiator.request_permission() == PermissionStatus.GRANTED
    assert negotiator.granted
    assert device.streams[0].release_count == 1


@pytest.mark.asyncio
async def test_session_requires_permission():
    session = CaptureSession(AudioResourceGuard(FakeAudioDevice()), lambda: False)
    with pytest.raises(DeviceUnavailable):
        await session.start()


@pytest.mark.asyncio
async def test_session_records_and_stops():
    device = FakeAudioDevice()
    session = CaptureSession(AudioResourceGuard(device), lambda: True)
    received = []
    session.add_frame_listener(received.append)

    handle = await session.start("cap_1")
    assert handle.session_id == "cap_1"
    stream = device.live
    stream.emit(np.ones(1600, dtype=np.int16))
    assert session.pause()
    stream.emit(np.ones(1600, dtype=np.int16))
    assert session.level == 0.0
    assert session.resume()
    stream.emit(np.ones(800, dtype=np.int16))

    clip = session.stop()

    assert clip.frames == 2400
    assert clip.duration_seconds == pytest.approx(0.15)
    assert len(received) == 2
    assert stream.release_count == 1
    assert not session.active

    # frames after stop go nowhere
    stream.emit(np.ones(1600, dtype=np.int16))
    assert len(received) == 2


@pytest.mark.asyncio
async def test_second_session_on_same_guard_is_refused():
    guard = AudioResourceGuard(FakeAudioDevice())
    first = CaptureSession(guard, lambda: True)
    second = CaptureSession(guard, lambda: True)
    await first.start()

    with pytest.raises(DeviceUnavailable):
        await second.start()

    first.cancel()
    await second.start()
    second.cancel()


@pytest.mark.asyncio
async def test_fault_releases_and_notifies():
    device = FakeAudioDevice()
    session = CaptureSession(AudioResourceGuard(device), lambda: True)
    faults = []
    session.add_fault_listener(faults.append)
    await session.start()

    device.live.fault()

    assert len(faults) == 1
    assert isinstance(faults[0], DeviceUnavailable)
    assert device.live.release_count == 1
    assert not session.active


def test_level_meter_silence_and_tone():
    meter = AudioLevelMeter()
    assert meter.update(np.zeros(256, dtype=np.int16)) == 0.0

    level = meter.update(tone())
    assert 0.0 < level <= 1.0
    assert len(meter.spectrum) == AudioLevelMeter.BINS
    assert max(meter.spectrum) > 0.5

    meter.reset()
    assert meter.level == 0.0
    assert meter.spectrum == [0.0] * AudioLevelMeter.BINS


def test_level_meter_short_frame_and_empty():
    meter = AudioLevelMeter()
    assert meter.update(np.zeros(0, dtype=np.int16)) == 0.0
    assert meter.update(tone(n=100)) >= 0.0


def test_pcm_to_wav_header():
    pcm = np.arange(10, dtype=np.int16)
    wav = pcm_to_wav(pcm, 16000)

    assert len(wav) == 44 + 20
    riff, size, wave = struct.unpack("<4sI4s", wav[:12])
    assert (riff, wave) == (b"RIFF", b"WAVE")
    assert size == 36 + 20
    sample_rate, = struct.unpack("<I", wav[24:28])
    assert sample_rate == 16000
