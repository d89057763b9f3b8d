"""
Microphone access: device boundary, Audio Resource Guard, Capture Session.

The device boundary is `AudioDevice.acquire_audio_stream(constraints)` which
returns a StreamHandle. The guard is the only owner of a live handle and
releases it exactly once on every exit path; a second release is a no-op.
The capture session records frames over the guard and derives a lossy,
best-effort audio level (0..1) for the waveform renderer.

Frames arrive on the PortAudio thread and are handed to the event loop with
call_soon_threadsafe; everything downstream runs on the loop thread.
"""
from __future__ import annotations

import asyncio
import struct
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

import numpy as np

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .errors import DeviceUnavailable

logger = get_logger(Component.AUDIO)
emitter = EventEmitter(ObsComponent.CAPTURE_PIPELINE)

FrameCallback = Callable[[np.ndarray], None]
FaultCallback = Callable[[BaseException], None]


@dataclass(frozen=True)
class AudioConstraints:
    """Fixed capture constraints."""

    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 16000
    channels: int = 1


class StreamHandle(ABC):
    """A live microphone stream. Frames are mono int16 numpy arrays."""

    sample_rate: int = 16000

    @property
    @abstractmethod
    def track_count(self) -> int:
        """Number of audio tracks the device delivered (0 means unusable)."""

    @abstractmethod
    def on_frame(self, callback: FrameCallback) -> None:
        """Register the frame consumer (replaces any previous one)."""

    @abstractmethod
    def on_fault(self, callback: FaultCallback) -> None:
        """Register a callback for an unexpected end of the stream."""

    @abstractmethod
    def release(self) -> None:
        """Disable every track, then stop the stream. Must be idempotent."""


class AudioDevice(ABC):
    """Device capability boundary."""

    @abstractmethod
    async def acquire_audio_stream(self, constraints: AudioConstraints) -> StreamHandle:
        """Open a stream or raise (unsupported API, no device, denied)."""


class SoundDeviceStream(StreamHandle):
    """StreamHandle backed by a sounddevice.InputStream."""

    def __init__(self, stream, sample_rate: int, loop: asyncio.AbstractEventLoop):
        self._stream = stream
        self.sample_rate = sample_rate
        self._loop = loop
        self._enabled = True
        self._released = False
        self._frame_cb: Optional[FrameCallback] = None
        self._fault_cb: Optional[FaultCallback] = None

    @property
    def track_count(self) -> int:
        return int(getattr(self._stream, "channels", 0) or 0)

    def on_frame(self, callback: FrameCallback) -> None:
        self._frame_cb = callback

    def on_fault(self, callback: FaultCallback) -> None:
        self._fault_cb = callback

    def _callback(self, indata, _frames, _time_info, status) -> None:
        # PortAudio thread
        if status:
            logger.debug("Audio stream status", status=str(status))
        if not self._enabled or self._frame_cb is None:
            return
        frame = _to_mono_int16(indata)
        try:
            self._loop.call_soon_threadsafe(self._deliver, frame)
        except RuntimeError:
            # loop closed; frame dropped
            pass

    def _deliver(self, frame: np.ndarray) -> None:
        if self._enabled and self._frame_cb is not None:
            self._frame_cb(frame)

    def _finished(self) -> None:
        # PortAudio thread; fires on stop/close too
        if self._released:
            return
        try:
            self._loop.call_soon_threadsafe(self._report_fault)
        except RuntimeError:
            pass

    def _report_fault(self) -> None:
        if not self._released and self._fault_cb is not None:
            self._fault_cb(DeviceUnavailable("audio stream ended unexpectedly"))

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._enabled = False
        try:
            self._stream.abort()
        finally:
            self._stream.close()


class SoundDeviceAudioDevice(AudioDevice):
    """
    Local microphone through PortAudio (sounddevice).

    PortAudio exposes no echo cancellation / noise suppression / AGC switches;
    those constraints are requested from the OS input chain when available
    and otherwise logged as unsupported.
    """

    def __init__(self, device: Optional[str] = None, blocksize: int = 1600):
        self.device = int(device) if device and device.isdigit() else device
        self.blocksize = blocksize

    async def acquire_audio_stream(self, constraints: AudioConstraints) -> StreamHandle:
        import sounddevice as sd

        loop = asyncio.get_running_loop()
        logger.debug(
            "Opening input stream",
            device=str(self.device or "default"),
            sample_rate=constraints.sample_rate,
            echo_cancellation=constraints.echo_cancellation,
            noise_suppression=constraints.noise_suppression,
            auto_gain_control=constraints.auto_gain_control,
            backend_dsp_supported=False,
        )
        holder: dict = {}

        def _cb(indata, frames, time_info, status):
            handle = holder.get("handle")
            if handle is not None:
                handle._callback(indata, frames, time_info, status)

        def _finished():
            handle = holder.get("handle")
            if handle is not None:
                handle._finished()

        stream = sd.InputStream(
            device=self.device,
            samplerate=constraints.sample_rate,
            channels=constraints.channels,
            dtype="int16",
            blocksize=self.blocksize,
            callback=_cb,
            finished_callback=_finished,
        )
        handle = SoundDeviceStream(stream, constraints.sample_rate, loop)
        holder["handle"] = handle
        try:
            stream.start()
        except Exception:
            handle.release()
            raise
        return handle


def _to_mono_int16(indata) -> np.ndarray:
    """Mono int16 copy of a sounddevice block (first channel only)."""
    x = np.asarray(indata)
    mono = x[:, 0] if x.ndim == 2 else x.reshape(-1)
    if mono.dtype != np.int16:
        mono = (np.clip(mono.astype(np.float32), -1.0, 1.0) * 32767.0).astype(np.int16)
    return mono.copy()


class AudioResourceGuard:
    """
    Exclusive owner of the microphone handle.

    acquire() fails with DeviceUnavailable while a handle is held, so the
    previous capture must have released before the next one starts.
    release() calls the handle's release exactly once.
    """

    def __init__(self, device: AudioDevice, constraints: Optional[AudioConstraints] = None):
        self.device = device
        self.constraints = constraints or AudioConstraints()
        self._handle: Optional[StreamHandle] = None
        self._acquiring = False
        self.session_id: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._handle is not None or self._acquiring

    @property
    def handle(self) -> Optional[StreamHandle]:
        return self._handle

    async def acquire(self, session_id: Optional[str] = None) -> StreamHandle:
        if self.held:
            raise DeviceUnavailable("audio device is already claimed by another capture")
        self._acquiring = True
        start_ts = time.time()
        try:
            handle = await self.device.acquire_audio_stream(self.constraints)
        except asyncio.CancelledError:
            raise
        except DeviceUnavailable:
            raise
        except Exception as e:
            raise DeviceUnavailable("could not open audio stream", detail=f"{type(e).__name__}: {e}") from e
        finally:
            self._acquiring = False

        if handle.track_count < 1:
            handle.release()
            raise DeviceUnavailable("device returned no audio tracks")

        self._handle = handle
        self.session_id = session_id
        logger.info(
            "Audio stream acquired",
            session_id=session_id,
            sample_rate=self.constraints.sample_rate,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        emitter.emit("audio.acquired", session_id, sample_rate=self.constraints.sample_rate)
        return handle

    def release(self, reason: str = "released") -> bool:
        """Release the handle if held. Returns False when nothing was held."""
        handle = self._handle
        if handle is None:
            return False
        self._handle = None
        session_id = self.session_id
        self.session_id = None
        try:
            handle.release()
        except Exception as e:
            logger.warning(
                "Audio handle release raised",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        logger.info("Audio stream released", session_id=session_id, reason=reason)
        emitter.emit("audio.released", session_id, severity=Severity.DEBUG, reason=reason)
        return True

    @asynccontextmanager
    async def scoped(self, session_id: Optional[str] = None, reason: str = "scope_exit") -> AsyncIterator[StreamHandle]:
        """acquire -> use -> release on every exit path, exceptions included."""
        handle = await self.acquire(session_id)
        try:
            yield handle
        finally:
            self.release(reason)


class AudioLevelMeter:
    """
    Normalized level (0..1) from frequency-domain analysis.

    Mirrors a browser AnalyserNode: Hann-windowed FFT, magnitudes mapped
    from [-100 dB, -30 dB] to [0, 1], time smoothing 0.8. Only the latest
    value is kept; nothing is buffered.
    """

    MIN_DB = -100.0
    MAX_DB = -30.0
    BINS = 20

    def __init__(self, fft_size: int = 256, smoothing: float = 0.8):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._window = np.hanning(fft_size)
        self._smoothed = np.zeros(fft_size // 2 + 1)
        self.level: float = 0.0
        self.spectrum: List[float] = [0.0] * self.BINS

    def update(self, frame: np.ndarray) -> float:
        if frame.size == 0:
            return self.level
        x = frame[-self.fft_size:].astype(np.float32) / 32768.0
        if x.size < self.fft_size:
            x = np.pad(x, (self.fft_size - x.size, 0))
        magnitude = np.abs(np.fft.rfft(x * self._window)) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
        db = 20.0 * np.log10(self._smoothed + 1e-12)
        scaled = np.clip((db - self.MIN_DB) / (self.MAX_DB - self.MIN_DB), 0.0, 1.0)
        bins = scaled[: self.BINS]
        self.spectrum = [float(v) for v in bins]
        self.level = float(bins.mean())
        return self.level

    def reset(self) -> None:
        self._smoothed = np.zeros(self.fft_size // 2 + 1)
        self.level = 0.0
        self.spectrum = [0.0] * self.BINS


@dataclass(frozen=True)
class SessionHandle:
    """Identifies one started capture."""

    capture_id: str
    session_id: Optional[str]
    sample_rate: int
    started_at: float


@dataclass
class FinalizedClip:
    """Audio captured between start and stop (paused stretches excluded)."""

    pcm: np.ndarray
    sample_rate: int
    frames: int = field(init=False)

    def __post_init__(self):
        self.frames = int(self.pcm.size)

    @property
    def duration_seconds(self) -> float:
        return self.frames / float(self.sample_rate) if self.sample_rate else 0.0

    def to_wav_bytes(self) -> bytes:
        return pcm_to_wav(self.pcm, self.sample_rate)


def pcm_to_wav(pcm: np.ndarray, sample_rate: int) -> bytes:
    """16-bit mono PCM -> WAV container."""
    data = pcm.astype("<i2").tobytes()
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF", 36 + len(data), b"WAVE",
        b"fmt ", 16, 1, 1, sample_rate, sample_rate * 2, 2, 16,
        b"data", len(data),
    )
    return header + data


class CaptureSession:
    """
    Drives record / pause / resume / stop / cancel over the guard.

    `permission_granted` is consulted on start; start fails with
    DeviceUnavailable without permission or while another capture holds
    the device. Frames are kept only while recording and not paused, and are
    forwarded to frame listeners (the transcription adapter).
    """

    def __init__(
        self,
        guard: AudioResourceGuard,
        permission_granted: Callable[[], bool],
        *,
        meter: Optional[AudioLevelMeter] = None,
    ):
        self.guard = guard
        self._permission_granted = permission_granted
        self.meter = meter or AudioLevelMeter()
        self._frames: List[np.ndarray] = []
        self._listeners: List[FrameCallback] = []
        self._fault_listeners: List[FaultCallback] = []
        self.handle: Optional[SessionHandle] = None
        self.recording = False
        self.paused = False

    @property
    def active(self) -> bool:
        return self.handle is not None

    @property
    def level(self) -> float:
        return self.meter.level if self.recording and not self.paused else 0.0

    @property
    def spectrum(self) -> List[float]:
        if self.recording and not self.paused:
            return list(self.meter.spectrum)
        return [0.0] * AudioLevelMeter.BINS

    def add_frame_listener(self, callback: FrameCallback) -> None:
        self._listeners.append(callback)

    def add_fault_listener(self, callback: FaultCallback) -> None:
        self._fault_listeners.append(callback)

    async def start(self, session_id: Optional[str] = None) -> SessionHandle:
        if not self._permission_granted():
            raise DeviceUnavailable("microphone permission has not been granted")
        if self.active or self.guard.held:
            raise DeviceUnavailable("another capture is already active")

        stream = await self.guard.acquire(session_id)
        self._frames = []
        self.meter.reset()
        self.paused = False
        self.recording = True
        self.handle = SessionHandle(
            capture_id=f"cap_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            sample_rate=stream.sample_rate,
            started_at=time.time(),
        )
        stream.on_frame(self._on_frame)
        stream.on_fault(self._on_fault)
        return self.handle

    def _on_frame(self, frame: np.ndarray) -> None:
        if not self.recording or self.paused:
            return
        self._frames.append(frame)
        self.meter.update(frame)
        for listener in list(self._listeners):
            listener(frame)

    def _on_fault(self, error: BaseException) -> None:
        if not self.active:
            return
        logger.error(
            "Audio stream fault",
            session_id=self.handle.session_id if self.handle else None,
            error=str(error),
        )
        listeners = list(self._fault_listeners)
        self._teardown("fault")
        for listener in listeners:
            listener(error)

    def pause(self) -> bool:
        if not self.recording or self.paused:
            return False
        self.paused = True
        self.meter.reset()
        return True

    def resume(self) -> bool:
        if not self.recording or not self.paused:
            return False
        self.paused = False
        return True

    def stop(self) -> FinalizedClip:
        sample_rate = self.handle.sample_rate if self.handle else self.guard.constraints.sample_rate
        frames = self._frames
        self._teardown("stopped")
        pcm = np.concatenate(frames) if frames else np.zeros(0, dtype=np.int16)
        return FinalizedClip(pcm=pcm, sample_rate=sample_rate)

    def cancel(self) -> None:
        self._teardown("cancelled")

    def _teardown(self, reason: str) -> None:
        self.recording = False
        self.paused = False
        self.handle = None
        self._frames = []
        self._listeners = []
        self._fault_listeners = []
        self.meter.reset()
        self.guard.release(reason)
