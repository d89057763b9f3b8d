"""
Transcription Adapter and the Groq Whisper transcription capability.

The capability boundary is `begin_transcription(language_tag) -> handle`;
the handle accepts audio frames, pushes `{text, confidence}` events into an
EventChannel and flushes a final result on `end()`.

The adapter sits between the capture session and the capability:
- forwards frames while capture is live,
- keeps the last good partial transcript,
- forwards nothing to its consumer while paused,
- on capability error or timeout surfaces the last good partial, marked
  degraded, instead of discarding progress.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .audio import pcm_to_wav
from .config import SUPPORTED_LANGUAGES
from .entities import clamp_confidence
from .errors import TranscriptionFailure, classify_remote_error, redact_detail
from .streams import CancellationToken, EventChannel

logger = get_logger(Component.TRANSCRIPTION)
emitter = EventEmitter(ObsComponent.CAPTURE_PIPELINE)

# Reported when the capability gives no confidence of its own.
DEFAULT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class Transcript:
    """Accumulated transcript with its confidence and language."""

    text: str = ""
    confidence: float = 0.0
    language: str = "en-US"
    degraded: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class TranscriptionHandle(ABC):
    """One streaming transcription. `events` is closed by end() or abort()."""

    events: EventChannel

    @abstractmethod
    def push_audio(self, frame: np.ndarray) -> None:
        ...

    @abstractmethod
    async def end(self) -> None:
        """Flush the final result, then close `events`."""

    @abstractmethod
    def abort(self) -> None:
        """Drop everything in flight and close `events`."""


class TranscriptionCapability(ABC):
    @abstractmethod
    def begin_transcription(self, language_tag: str) -> TranscriptionHandle:
        ...

    async def aclose(self) -> None:
        return None


def segment_confidence(body: Dict[str, Any]) -> Optional[float]:
    """
    Confidence from a Whisper verbose_json body: mean token probability
    (exp of avg_logprob) over segments. None when there are no segments.
    """
    segments = body.get("segments") or []
    probs: List[float] = []
    for seg in segments:
        logprob = seg.get("avg_logprob") if isinstance(seg, dict) else None
        if isinstance(logprob, (int, float)):
            probs.append(math.exp(min(0.0, float(logprob))))
    if not probs:
        return None
    return sum(probs) / len(probs)


class GroqTranscriptionHandle(TranscriptionHandle):
    """
    Pseudo-streaming over the Groq batch endpoint: every `partial_interval`
    seconds the audio collected so far is re-transcribed and pushed as a
    partial; end() runs a last pass over the complete clip.
    """

    def __init__(
        self,
        client,
        language_tag: str,
        *,
        sample_rate: int,
        partial_interval: float,
        request_timeout: float,
    ):
        self.events: EventChannel[TranscriptEvent] = EventChannel()
        self._client = client
        self._language = language_tag.split("-")[0]
        self._sample_rate = sample_rate
        self._interval = partial_interval
        self._timeout = request_timeout
        self._frames: List[np.ndarray] = []
        self._dirty = False
        self._task: Optional[asyncio.Task] = asyncio.ensure_future(self._partials_loop())

    def push_audio(self, frame: np.ndarray) -> None:
        if self.events.closed:
            return
        self._frames.append(frame)
        self._dirty = True

    async def _partials_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                if self._dirty:
                    self._dirty = False
                    await self._transcribe_and_push()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Partial transcription failed",
                error_type=type(e).__name__,
                category=classify_remote_error(e),
            )
            self.events.close(e)

    async def _transcribe_and_push(self) -> None:
        if not self._frames:
            return
        pcm = np.concatenate(self._frames)
        body = await self._client.transcribe(
            pcm_to_wav(pcm, self._sample_rate), self._language, timeout=self._timeout
        )
        if self.events.closed:
            return
        text = (body.get("text") or "").strip()
        self.events.push(TranscriptEvent(text=text, confidence=segment_confidence(body)))

    async def _stop_partials(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def end(self) -> None:
        await self._stop_partials()
        if self.events.closed:
            return
        try:
            await self._transcribe_and_push()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.events.close(e)
            return
        self.events.close()

    def abort(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._frames = []
        self.events.close()


class GroqTranscriber(TranscriptionCapability):
    """Groq Whisper transcription capability."""

    def __init__(self, client, *, sample_rate: int = 16000, partial_interval: float = 2.0, request_timeout: float = 20.0):
        self.client = client
        self.sample_rate = sample_rate
        self.partial_interval = partial_interval
        self.request_timeout = request_timeout

    def begin_transcription(self, language_tag: str) -> TranscriptionHandle:
        return GroqTranscriptionHandle(
            self.client,
            language_tag,
            sample_rate=self.sample_rate,
            partial_interval=self.partial_interval,
            request_timeout=self.request_timeout,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


class TranscriptionAdapter:
    """Feeds captured audio to a transcription capability and tracks the transcript."""

    def __init__(
        self,
        capability: TranscriptionCapability,
        language: str = "en-US",
        *,
        default_confidence: float = DEFAULT_CONFIDENCE,
    ):
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"unsupported language tag: {language}")
        self.capability = capability
        self.language = language
        self.default_confidence = min(default_confidence, DEFAULT_CONFIDENCE)
        self.paused = False
        self.failure: Optional[TranscriptionFailure] = None
        self.session_id: Optional[str] = None
        self._handle: Optional[TranscriptionHandle] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        self._current = Transcript(language=language)
        self._started_at = 0.0
        self._log = logger

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def current(self) -> Transcript:
        return self._current

    def set_language(self, tag: str) -> bool:
        """Change the language between utterances. Rejected mid-utterance."""
        if self.active:
            logger.warning("Language change rejected mid-utterance", requested=tag, current=self.language)
            return False
        if tag not in SUPPORTED_LANGUAGES:
            logger.warning("Unsupported language rejected", requested=tag)
            return False
        self.language = tag
        return True

    def start(self, language: Optional[str] = None, session_id: Optional[str] = None) -> EventChannel:
        """Begin a transcription; returns the channel of partial transcripts."""
        if self.active:
            raise RuntimeError("transcription already active")
        if language is not None and not self.set_language(language):
            raise ValueError(f"unsupported language tag: {language}")

        self.session_id = session_id
        self.failure = None
        self.paused = False
        self._current = Transcript(language=self.language)
        self._token = CancellationToken()
        partials: EventChannel[TranscriptEvent] = EventChannel(self._token)
        self._handle = self.capability.begin_transcription(self.language)
        self._pump_task = asyncio.ensure_future(self._pump(self._handle, partials))
        self._started_at = time.time()

        self._log = logger.bind(language=self.language)
        if session_id:
            self._log = self._log.with_session(session_id)
        self._log.info("Transcription started")
        emitter.emit("transcription.started", session_id, language=self.language)
        return partials

    def feed(self, frame: np.ndarray) -> None:
        if self._handle is not None and not self.paused:
            self._handle.push_audio(frame)

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    async def _pump(self, handle: TranscriptionHandle, partials: EventChannel) -> None:
        try:
            async for event in handle.events:
                self._apply(event, partials)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._degrade(e)
        finally:
            partials.close()

    def _apply(self, event: TranscriptEvent, partials: EventChannel) -> None:
        text = (event.text or "").strip()
        if not text:
            return
        if event.confidence is None:
            confidence = self.default_confidence
        else:
            confidence = clamp_confidence(event.confidence, default=self.default_confidence)
        self._current = Transcript(text=text, confidence=confidence, language=self.language)
        if not self.paused and not partials.closed:
            partials.push(TranscriptEvent(text=text, confidence=confidence))

    def _degrade(self, error: BaseException) -> None:
        if self.failure is not None:
            return
        category = classify_remote_error(error)
        self.failure = TranscriptionFailure(
            "transcription capability failed",
            detail=redact_detail(error),
        )
        self._log.warning(
            "Transcription degraded; keeping last partial",
            error_type=type(error).__name__,
            category=category,
            partial_length=len(self._current.text),
        )
        emitter.emit(
            "transcription.degraded",
            self.session_id,
            severity=Severity.WARN,
            category=category,
            partial_length=len(self._current.text),
        )

    async def finalize(self, timeout: float) -> Transcript:
        """
        Stop accepting audio and return the final transcript. On error or
        timeout the last good partial is returned with degraded=True and
        `failure` set.
        """
        handle = self._handle
        if handle is None:
            return self._current
        self._handle = None

        try:
            await asyncio.wait_for(self._finish(handle), timeout)
        except asyncio.TimeoutError:
            handle.abort()
            self._degrade(TimeoutError(f"transcription timed out after {timeout}s"))
            if self._pump_task is not None:
                self._pump_task.cancel()
        self._pump_task = None

        transcript = Transcript(
            text=self._current.text,
            confidence=self._current.confidence,
            language=self.language,
            degraded=self.failure is not None,
        )
        self._log.info(
            "Transcription finalized",
            transcript_length=len(transcript.text),
            confidence=round(transcript.confidence, 3),
            degraded=transcript.degraded,
            latency_ms=int((time.time() - self._started_at) * 1000),
        )
        self._log.debug_pii("Final transcript", transcript=transcript.text)
        return transcript

    async def _finish(self, handle: TranscriptionHandle) -> None:
        try:
            await handle.end()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            handle.abort()
            self._degrade(e)
        if self._pump_task is not None:
            await self._pump_task

    def cancel(self) -> None:
        """Abandon the transcription; nothing in flight may land afterwards."""
        if self._token is not None:
            self._token.cancel("capture cancelled")
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.abort()
        task, self._pump_task = self._pump_task, None
        if task is not None:
            task.cancel()
        self._current = Transcript(language=self.language)
        self.failure = None
        self.paused = False
