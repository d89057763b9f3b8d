"""
Capture controller.

Orchestrates one capture at a time across permission, recording,
transcription, extraction, validation and commit. It is the only component
that decides between "abort to Idle" and "continue with degraded data".

Every capture gets a generation number; cancel bumps it, cancels the
in-flight tasks and releases the microphone synchronously. Results that
arrive for an older generation are discarded.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from capture_pipeline.audio import AudioConstraints, AudioDevice, AudioResourceGuard, CaptureSession
from capture_pipeline.config import PipelineConfig
from capture_pipeline.entities import ExtractedEntities
from capture_pipeline.errors import (
    CaptureError,
    CaptureFailure,
    CommitFailure,
    DeviceUnavailable,
    ExtractionFailure,
    PermissionDenied,
    TranscriptionFailure,
    ValidationBlocked,
    classify_remote_error,
    redact_detail,
)
from capture_pipeline.extraction import EntityExtractor
from capture_pipeline.permissions import PermissionNegotiator, PermissionStatus
from capture_pipeline.streams import EventChannel
from capture_pipeline.transcription import TranscriptionAdapter, TranscriptionCapability
from logging_setup import get_logger, Component
from observability.events import Severity
from .committer import LeadCommitter, LeadRecord
from .config import ControlConfig
from .contact_store import ContactStore
from .state_machine import (
    CaptureEvent,
    CapturePhase,
    CaptureState,
    CaptureStateStore,
    PermissionState,
    transition,
)
from .validation import ValidationStage

logger = get_logger(Component.CAPTURE_CONTROL)

SleepFn = Callable[[float], Awaitable[Any]]


class CaptureController:
    def __init__(
        self,
        device: AudioDevice,
        transcriber: TranscriptionCapability,
        extractor: EntityExtractor,
        contact_store: ContactStore,
        *,
        pipeline_config: Optional[PipelineConfig] = None,
        control_config: Optional[ControlConfig] = None,
        store: Optional[CaptureStateStore] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.config = control_config or ControlConfig()
        self.store = store or CaptureStateStore(CaptureState(language=self.pipeline_config.language))
        self.guard = AudioResourceGuard(
            device, AudioConstraints(sample_rate=self.pipeline_config.sample_rate)
        )
        self.permissions = PermissionNegotiator(self.guard)
        self.session = CaptureSession(self.guard, lambda: self.permissions.granted)
        self.transcriber = transcriber
        self.adapter = TranscriptionAdapter(transcriber, self.store.state.language)
        self.extractor = extractor
        self.committer = LeadCommitter(contact_store, threshold=self.config.required_confidence)
        self._sleep = sleep

        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._validation: Optional[ValidationStage] = None
        # entities kept across an add-more cycle
        self._retained: Optional[ExtractedEntities] = None
        # transcripts of earlier utterances in this session
        self._history: List[str] = []
        self._saving = False

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self.store.state

    @property
    def audio_level(self) -> float:
        return self.session.level

    @property
    def audio_spectrum(self) -> List[float]:
        return self.session.spectrum

    @property
    def validation(self) -> Optional[ValidationStage]:
        return self._validation

    def _log(self):
        return logger.with_session(self.state.session_id) if self.state.session_id else logger

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background capture task failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    async def settle(self) -> None:
        """Wait until no background work (processing, timers) is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- capture -------------------------------------------------------------

    async def request_capture(self) -> bool:
        """
        Idle -> PermissionPrompt/Recording. Rejected unless Idle. A cached
        denial is reported without prompting again.
        """
        state = self.state
        if state.phase != CapturePhase.IDLE:
            return self.store.dispatch(CaptureEvent.REQUEST_CAPTURE)

        if self.permissions.status == PermissionStatus.DENIED or state.permission == PermissionState.DENIED:
            err = PermissionDenied("microphone permission was denied earlier", detail=self.permissions.reason)
            self.store.patch(error=CaptureFailure.from_error(err), permission=PermissionState.DENIED)
            self.store.emitter.phase_failed(None, err.phase, err.category, "cached_denial")
            logger.warning("Capture refused: permission denied earlier; waiting for explicit retry")
            return False

        self._generation += 1
        generation = self._generation
        session_id = f"cap_{uuid.uuid4().hex[:12]}"
        if not self.store.dispatch(
            CaptureEvent.REQUEST_CAPTURE, session_id=session_id, language=self.adapter.language
        ):
            return False
        self._history = []
        self._retained = None

        if self.state.phase == CapturePhase.PERMISSION_PROMPT:
            status = await self.permissions.request_permission(session_id)
            if generation != self._generation:
                return False
            if status != PermissionStatus.GRANTED:
                err = PermissionDenied("microphone permission denied", detail=self.permissions.reason)
                self.store.dispatch(CaptureEvent.PERMISSION_DENIED, error=CaptureFailure.from_error(err))
                self.store.emitter.phase_failed(session_id, err.phase, err.category, err.detail)
                return False
            self.store.dispatch(CaptureEvent.PERMISSION_GRANTED)

        return await self._begin_recording(generation)

    async def _begin_recording(self, generation: int) -> bool:
        session_id = self.state.session_id
        try:
            await self.session.start(session_id)
        except DeviceUnavailable as e:
            if generation == self._generation:
                self._fail(e)
            return False
        if generation != self._generation:
            # cancelled while the device was opening
            self.session.cancel()
            return False

        self.session.add_frame_listener(self.adapter.feed)
        self.session.add_fault_listener(self._on_audio_fault)
        partials = self.adapter.start(session_id=session_id)
        self._spawn(self._follow_partials(partials, generation))
        self._log().info("Recording started", language=self.adapter.language, utterance=len(self._history) + 1)
        return True

    async def _follow_partials(self, partials: EventChannel, generation: int) -> None:
        async for event in partials:
            if generation != self._generation:
                return
            # once the final transcript is in, late partials must not overwrite it
            if self.state.phase not in (CapturePhase.RECORDING, CapturePhase.PROCESSING):
                return
            self.store.patch(
                transcript=self._joined(event.text),
                transcript_confidence=event.confidence,
            )

    def _joined(self, text: str) -> str:
        return " ".join(t for t in (*self._history, text) if t)

    def _on_audio_fault(self, error: BaseException) -> None:
        if self.state.phase != CapturePhase.RECORDING:
            return
        self._generation += 1
        self.adapter.cancel()
        err = error if isinstance(error, DeviceUnavailable) else DeviceUnavailable(
            "audio device stopped delivering audio", detail=str(error)
        )
        self._fail(err)

    def pause(self) -> bool:
        if not self.store.dispatch(CaptureEvent.PAUSE):
            return False
        self.session.pause()
        self.adapter.pause()
        return True

    def resume(self) -> bool:
        if not self.store.dispatch(CaptureEvent.RESUME):
            return False
        self.session.resume()
        self.adapter.resume()
        return True

    def stop(self) -> bool:
        """Recording -> Processing. Releases the microphone; processing runs in the background."""
        if not self.store.dispatch(CaptureEvent.STOP):
            return False
        clip = self.session.stop()
        self._log().info(
            "Recording stopped",
            duration_seconds=round(clip.duration_seconds, 2),
        )
        self._spawn(self._process(self._generation))
        return True

    async def _process(self, generation: int) -> None:
        session_id = self.state.session_id
        transcript = await self.adapter.finalize(self.pipeline_config.transcription_timeout_seconds)
        if generation != self._generation:
            return

        if transcript.is_empty:
            self._fail(self.adapter.failure or TranscriptionFailure("no speech was transcribed"))
            return

        warnings = list(self.state.warnings)
        if transcript.degraded:
            warnings.append("transcription_degraded")
        if transcript.confidence < self.config.transcript_min_confidence:
            warnings.append("transcription_low_confidence")
            self._log().warning(
                "Low transcript confidence; continuing",
                confidence=round(transcript.confidence, 3),
                threshold=self.config.transcript_min_confidence,
            )
            self.store.emitter.emit(
                "transcription.low_confidence",
                session_id,
                severity=Severity.WARN,
                confidence=round(transcript.confidence, 3),
                transcript_length=len(transcript.text),
            )

        self.store.dispatch(
            CaptureEvent.TRANSCRIPT_READY,
            transcript=self._joined(transcript.text),
            transcript_confidence=transcript.confidence,
            warnings=tuple(dict.fromkeys(warnings)),
        )

        start_ts = time.time()
        error: Optional[ExtractionFailure] = None
        entities: Optional[ExtractedEntities] = None
        try:
            entities = await asyncio.wait_for(
                self.extractor.extract(transcript.text, transcript.language),
                self.pipeline_config.extraction_timeout_seconds,
            )
        except asyncio.CancelledError:
            self.store.emitter.emit(
                "extraction.discarded", session_id, severity=Severity.DEBUG, reason="cancelled"
            )
            raise
        except asyncio.TimeoutError:
            error = ExtractionFailure("extraction timed out", detail="remote.timeout")
        except ExtractionFailure as e:
            error = e
        except Exception as e:
            error = ExtractionFailure(
                "extraction capability failed",
                detail=f"{classify_remote_error(e)}: {redact_detail(e)}",
            )
        latency_ms = int((time.time() - start_ts) * 1000)

        if generation != self._generation:
            self.store.emitter.emit(
                "extraction.discarded", session_id, severity=Severity.DEBUG, reason="stale"
            )
            return

        if error is not None:
            self.store.emitter.emit(
                "extraction.failed",
                session_id,
                severity=Severity.ERROR,
                latency_ms=latency_ms,
                detail=error.detail,
            )
            self._fail(error)
            return

        merged = self._retained.merged_with(entities) if self._retained is not None else entities
        self._retained = None
        self._history.append(transcript.text)
        self._validation = ValidationStage(
            merged,
            required_confidence=self.config.required_confidence,
            assisted_confidence=self.config.assisted_confidence,
            alternatives_cutoff=self.config.alternatives_cutoff,
        )
        self.store.emitter.emit(
            "extraction.completed",
            session_id,
            fields=entities.present_fields(),
            field_count=len(entities.present_fields()),
            latency_ms=latency_ms,
        )
        self.store.dispatch(CaptureEvent.ENTITIES_READY, entities=self._validation.entities.copy())

    # -- validation ------------------------------------------------------------

    def _reviewing(self) -> bool:
        return self.state.phase == CapturePhase.VALIDATION and self._validation is not None

    def edit_field(self, field_name: str, value) -> bool:
        """Manual correction; the field's confidence becomes 1.0."""
        if not self._reviewing():
            return self.store.reject("edit_field")
        entity = self._validation.edit(field_name, value)
        self._after_correction(field_name, entity.source.value, entity.confidence)
        return True

    def select_alternative(self, field_name: str, alternative: str) -> bool:
        """Pick one of the listed alternatives; confidence becomes the assisted level."""
        if not self._reviewing():
            return self.store.reject("select_alternative")
        entity = self._validation.select_alternative(field_name, alternative)
        self._after_correction(field_name, entity.source.value, entity.confidence)
        return True

    def _after_correction(self, field_name: str, source: str, confidence: float) -> None:
        updates: Dict[str, Any] = {"entities": self._validation.entities.copy()}
        error = self.state.error
        if error is not None and error.category == ValidationBlocked.category and self._validation.validate().ok:
            updates["error"] = None
        self.store.patch(**updates)
        self.store.emitter.emit(
            "validation.entity_corrected",
            self.state.session_id,
            field=field_name,
            source=source,
            confidence=confidence,
        )

    async def save(self) -> bool:
        """
        Validation -> Complete when the commit rule holds and the store accepts
        the lead. A store failure keeps everything for a retry.
        """
        if not self._reviewing() or self._saving:
            return self.store.reject(CaptureEvent.SAVE.value)

        session_id = self.state.session_id
        result = self._validation.validate()
        if not result.ok:
            err = ValidationBlocked(result.failing_fields)
            self.store.patch(error=CaptureFailure.from_error(err))
            self._log().info("Save blocked", failing_fields=list(result.failing_fields))
            self.store.emitter.emit(
                "validation.blocked",
                session_id,
                severity=Severity.WARN,
                failing_fields=list(result.failing_fields),
            )
            return False

        generation = self._generation
        self._saving = True
        try:
            record: LeadRecord = await self.committer.commit(self._validation.entities, session_id=session_id)
        except (CommitFailure, ValidationBlocked) as e:
            if generation == self._generation:
                self.store.patch(error=CaptureFailure.from_error(e))
                self.store.emitter.phase_failed(session_id, e.phase, e.category, e.detail)
            return False
        finally:
            self._saving = False

        if generation != self._generation:
            logger.warning("Capture cancelled while saving; lead was already appended", lead_id=record.id)
            return True

        self._validation = None
        self._history = []
        self.store.dispatch(CaptureEvent.SAVE, entities=None, error=None, last_lead_id=record.id)
        self._spawn(self._reset_after_complete(generation))
        return True

    async def _reset_after_complete(self, generation: int) -> None:
        await self._sleep(self.config.complete_reset_seconds)
        if generation == self._generation and self.state.phase == CapturePhase.COMPLETE:
            self.store.dispatch(CaptureEvent.RESET_TIMER)

    async def add_more(self) -> bool:
        """
        Validation -> Recording, keeping the reviewed entities. The next
        utterance's extraction overwrites only the fields it detects.
        """
        if not self._reviewing():
            return self.store.reject(CaptureEvent.ADD_MORE.value)
        self._retained = self._validation.entities.copy()
        if not self.store.dispatch(CaptureEvent.ADD_MORE, error=None):
            return False
        self._validation = None
        return await self._begin_recording(self._generation)

    # -- cancel / failures -------------------------------------------------------

    def cancel(self) -> bool:
        """
        Abandon the capture: in-flight work is cancelled, the microphone is
        released before this returns, transcript and entities are cleared.
        """
        if transition(self.state, CaptureEvent.CANCEL) is None:
            return self.store.dispatch(CaptureEvent.CANCEL)
        self._teardown()
        return self.store.dispatch(CaptureEvent.CANCEL)

    def _teardown(self) -> None:
        self._generation += 1
        for task in list(self._tasks):
            task.cancel()
        self.session.cancel()
        self.guard.release("cancelled")
        self.adapter.cancel()
        self._validation = None
        self._retained = None
        self._history = []

    def _fail(self, error: CaptureError) -> None:
        """Abort to Idle with a user-visible failure naming the phase."""
        session_id = self.state.session_id
        failure = CaptureFailure.from_error(error)
        self._log().error(
            "Capture failed",
            phase=error.phase,
            category=error.category,
            detail=error.detail,
        )
        self.session.cancel()
        self.adapter.cancel()
        self._validation = None
        self._retained = None
        self._history = []
        self.store.emitter.phase_failed(session_id, error.phase, error.category, error.detail)
        self.store.dispatch(CaptureEvent.FAULT, error=failure)

    # -- settings ------------------------------------------------------------

    def retry_permission(self) -> bool:
        """Explicit user retry after a denial; only while Idle."""
        if self.state.phase != CapturePhase.IDLE:
            return self.store.reject("retry_permission")
        self.permissions.reset()
        self.store.patch(permission=PermissionState.UNKNOWN, error=None)
        return True

    def set_language(self, tag: str) -> bool:
        """Change the transcription language; rejected mid-utterance."""
        if self.state.phase not in (CapturePhase.IDLE, CapturePhase.VALIDATION):
            return self.store.reject("set_language")
        if not self.adapter.set_language(tag):
            return False
        self.store.patch(language=tag)
        return True

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view of the capture for the host UI."""
        state = self.state
        validation = self._validation
        entities = state.entities
        data: Dict[str, Any] = {
            "phase": state.phase.value,
            "paused": state.paused,
            "permission": state.permission.value,
            "session_id": state.session_id,
            "language": state.language,
            "transcript": state.transcript,
            "transcript_confidence": state.transcript_confidence,
            "entities": entities.to_dict() if entities is not None else None,
            "fields": validation.field_statuses() if validation is not None else None,
            "committable": validation.validate().ok if validation is not None else False,
            "warnings": list(state.warnings),
            "error": None,
            "last_lead_id": state.last_lead_id,
            "audio_level": self.audio_level,
        }
        if state.error is not None:
            data["error"] = {
                "phase": state.error.phase,
                "category": state.error.category,
                "message": state.error.message,
                "failing_fields": list(state.error.failing_fields),
            }
        return data

    async def aclose(self) -> None:
        if transition(self.state, CaptureEvent.CANCEL) is not None:
            self.cancel()
        for task in list(self._tasks):
            task.cancel()
        await self.settle()
        await self.extractor.aclose()
        await self.transcriber.aclose()

