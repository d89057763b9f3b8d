"""
Capture state machine.

`transition(state, event)` is the single, pure transition function: it
returns the next CaptureState or None when the event is illegal in the
current phase. CaptureStateStore is the injectable container that holds the
current state, applies transitions, and reports rejected events instead of
raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from capture_pipeline.entities import ExtractedEntities
from capture_pipeline.errors import CaptureFailure
from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter

logger = get_logger(Component.CAPTURE_CONTROL)


class CapturePhase(str, Enum):
    IDLE = "idle"
    PERMISSION_PROMPT = "permission_prompt"
    RECORDING = "recording"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    VALIDATION = "validation"
    COMPLETE = "complete"


class CaptureEvent(str, Enum):
    REQUEST_CAPTURE = "request_capture"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    TRANSCRIPT_READY = "transcript_ready"
    ENTITIES_READY = "entities_ready"
    SAVE = "save"
    ADD_MORE = "add_more"
    CANCEL = "cancel"
    FAULT = "fault"
    RESET_TIMER = "reset_timer"


class PermissionState(str, Enum):
    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class CaptureState:
    """Immutable snapshot of the single capture."""

    phase: CapturePhase = CapturePhase.IDLE
    paused: bool = False
    permission: PermissionState = PermissionState.UNKNOWN
    session_id: Optional[str] = None
    language: str = "en-US"
    transcript: str = ""
    transcript_confidence: float = 0.0
    entities: Optional[ExtractedEntities] = None
    error: Optional[CaptureFailure] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    last_lead_id: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.phase != CapturePhase.IDLE


# Phases that drop transcript and entities when left towards Idle.
_CANCELLABLE = {
    CapturePhase.PERMISSION_PROMPT,
    CapturePhase.RECORDING,
    CapturePhase.PROCESSING,
    CapturePhase.EXTRACTING,
    CapturePhase.VALIDATION,
}
_FAULTABLE = {
    CapturePhase.PERMISSION_PROMPT,
    CapturePhase.RECORDING,
    CapturePhase.PROCESSING,
    CapturePhase.EXTRACTING,
}


def _to_idle(state: CaptureState, **updates) -> CaptureState:
    base = dict(
        phase=CapturePhase.IDLE,
        paused=False,
        session_id=None,
        transcript="",
        transcript_confidence=0.0,
        entities=None,
        warnings=(),
    )
    base.update(updates)
    return replace(state, **base)


def transition(state: CaptureState, event: CaptureEvent, **updates) -> Optional[CaptureState]:
    """
    Next state for `event`, or None if `event` is not legal in `state.phase`.
    `updates` carries payload fields (session_id, transcript, entities, error, ...).
    """
    phase = state.phase

    if event == CaptureEvent.REQUEST_CAPTURE:
        if phase != CapturePhase.IDLE or state.permission == PermissionState.DENIED:
            return None
        target = (
            CapturePhase.RECORDING
            if state.permission == PermissionState.GRANTED
            else CapturePhase.PERMISSION_PROMPT
        )
        return replace(
            state,
            **{"error": None, "warnings": (), "transcript": "", "entities": None, **updates},
            phase=target,
            paused=False,
        )

    if event == CaptureEvent.PERMISSION_GRANTED and phase == CapturePhase.PERMISSION_PROMPT:
        return replace(state, **updates, phase=CapturePhase.RECORDING, permission=PermissionState.GRANTED)

    if event == CaptureEvent.PERMISSION_DENIED and phase == CapturePhase.PERMISSION_PROMPT:
        return _to_idle(state, permission=PermissionState.DENIED, **updates)

    if event == CaptureEvent.PAUSE and phase == CapturePhase.RECORDING and not state.paused:
        return replace(state, paused=True)

    if event == CaptureEvent.RESUME and phase == CapturePhase.RECORDING and state.paused:
        return replace(state, paused=False)

    if event == CaptureEvent.STOP and phase == CapturePhase.RECORDING:
        return replace(state, **updates, phase=CapturePhase.PROCESSING, paused=False)

    if event == CaptureEvent.TRANSCRIPT_READY and phase == CapturePhase.PROCESSING:
        return replace(state, **updates, phase=CapturePhase.EXTRACTING)

    if event == CaptureEvent.ENTITIES_READY and phase == CapturePhase.EXTRACTING:
        return replace(state, **updates, phase=CapturePhase.VALIDATION)

    if event == CaptureEvent.SAVE and phase == CapturePhase.VALIDATION:
        return replace(state, **updates, phase=CapturePhase.COMPLETE)

    if event == CaptureEvent.ADD_MORE and phase == CapturePhase.VALIDATION:
        return replace(state, **updates, phase=CapturePhase.RECORDING, paused=False)

    if event == CaptureEvent.RESET_TIMER and phase == CapturePhase.COMPLETE:
        return _to_idle(state, **updates)

    if event == CaptureEvent.CANCEL and phase in _CANCELLABLE:
        return _to_idle(state, error=None, **updates)

    if event == CaptureEvent.FAULT and phase in _FAULTABLE:
        return _to_idle(state, **updates)

    return None


Listener = Callable[[CaptureState, CaptureState, CaptureEvent], None]


class CaptureStateStore:
    """
    Holds the one CaptureState. All phase changes go through `dispatch`;
    `patch` updates payload fields without changing the phase.
    """

    def __init__(self, initial: Optional[CaptureState] = None):
        self._state = initial or CaptureState()
        self._listeners: List[Listener] = []
        self.emitter = EventEmitter(ObsComponent.CAPTURE_CONTROL)

    @property
    def state(self) -> CaptureState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def dispatch(self, event: CaptureEvent, **updates) -> bool:
        """Apply `event`. Illegal events are rejected (logged, emitted) and return False."""
        previous = self._state
        nxt = transition(previous, event, **updates)
        if nxt is None:
            return self.reject(event.value)

        self._state = nxt
        session_id = nxt.session_id or previous.session_id
        if previous.phase != nxt.phase or previous.paused != nxt.paused:
            logger.info(
                "Capture state changed",
                session_id=session_id,
                from_state=previous.phase.value,
                to_state=nxt.phase.value,
                trigger=event.value,
                paused=nxt.paused,
            )
            self.emitter.state_changed(
                session_id,
                previous.phase.value,
                nxt.phase.value,
                event.value,
                paused=nxt.paused,
            )
        for listener in list(self._listeners):
            listener(previous, nxt, event)
        return True

    def patch(self, **updates) -> CaptureState:
        """Update payload fields (transcript, entities, error, ...) in place."""
        if "phase" in updates or "paused" in updates:
            raise ValueError("phase changes must go through dispatch()")
        self._state = replace(self._state, **updates)
        return self._state

    def reject(self, command: str) -> bool:
        """Record a command that is not legal in the current phase. Always False."""
        state = self._state
        logger.warning(
            "Command rejected",
            session_id=state.session_id,
            command=command,
            phase=state.phase.value,
        )
        self.emitter.command_rejected(state.session_id, command, state.phase.value)
        return False
