"""
Capture control API.

HTTP surface through which the host application drives the one capture
controller and reads its state and session events.

- Write API: start, pause, resume, stop, cancel, add-more, save, field
  edits, alternative selection, language, permission retry
- Read API: current state, recent capture sessions, events of a session

Commands that are illegal in the current phase answer 409 with a stable
`detail`; nothing internal leaks into error bodies.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from capture_pipeline.config import SUPPORTED_LANGUAGES
from capture_pipeline.errors import ErrorCategory
from logging_setup import get_logger, Component as LogComponent
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .controller import CaptureController

logger = get_logger(LogComponent.CONTROL_API)
emitter = EventEmitter(ObsComponent.CONTROL_API)


class CommandResponse(BaseModel):
    status: str
    phase: str


class EditRequest(BaseModel):
    value: Any = Field(..., description="New value typed by the user")


class AlternativeRequest(BaseModel):
    alternative: str = Field(..., min_length=1)


class LanguageRequest(BaseModel):
    language: str = Field(..., description=f"One of {', '.join(SUPPORTED_LANGUAGES)}")


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in cleaned and "-" not in cleaned[-6:]:
            cleaned += "+00:00"
        return datetime.fromisoformat(cleaned)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


def build_router(controller: CaptureController) -> APIRouter:
    router = APIRouter(prefix="/capture", tags=["capture"])

    def _applied(command: str, ok: bool, correlation_id: str, previous_error=None) -> CommandResponse:
        """previous_error: the state error before the command, for commands that can fail."""
        state = controller.state
        emitter.emit(
            "control.command_applied",
            session_id=state.session_id,
            severity=Severity.INFO if ok else Severity.WARN,
            correlation_id=correlation_id,
            command=command,
            result="ok" if ok else "rejected",
        )
        if not ok:
            error = state.error if state.error is not previous_error else None
            if error is not None and error.category == ErrorCategory.VALIDATION_BLOCKED:
                raise HTTPException(status_code=409, detail="validation_blocked")
            if error is not None and error.category == ErrorCategory.COMMIT_FAILED:
                raise HTTPException(status_code=502, detail="commit_failed")
            if error is not None and error.category == ErrorCategory.PERMISSION_DENIED:
                raise HTTPException(status_code=409, detail="permission_denied")
            if error is not None and error.category == ErrorCategory.DEVICE_UNAVAILABLE:
                raise HTTPException(status_code=409, detail="device_unavailable")
            raise HTTPException(status_code=409, detail="command_rejected")
        return CommandResponse(status="ok", phase=state.phase.value)

    def _received(command: str) -> str:
        correlation_id = _new_correlation_id()
        emitter.emit(
            "control.command_received",
            session_id=controller.state.session_id,
            correlation_id=correlation_id,
            command=command,
        )
        logger.debug("Command received", command=command, phase=controller.state.phase.value)
        return correlation_id

    @router.get("/state")
    async def get_state() -> Dict[str, Any]:
        return controller.snapshot()

    @router.post("/start", response_model=CommandResponse)
    async def start_capture() -> CommandResponse:
        cid = _received("start")
        previous_error = controller.state.error
        ok = await controller.request_capture()
        return _applied("start", ok, cid, previous_error)

    @router.post("/pause", response_model=CommandResponse)
    async def pause_capture() -> CommandResponse:
        cid = _received("pause")
        return _applied("pause", controller.pause(), cid)

    @router.post("/resume", response_model=CommandResponse)
    async def resume_capture() -> CommandResponse:
        cid = _received("resume")
        return _applied("resume", controller.resume(), cid)

    @router.post("/stop", response_model=CommandResponse)
    async def stop_capture() -> CommandResponse:
        cid = _received("stop")
        return _applied("stop", controller.stop(), cid)

    @router.post("/cancel", response_model=CommandResponse)
    async def cancel_capture() -> CommandResponse:
        cid = _received("cancel")
        return _applied("cancel", controller.cancel(), cid)

    @router.post("/add-more", response_model=CommandResponse)
    async def add_more() -> CommandResponse:
        cid = _received("add_more")
        return _applied("add_more", await controller.add_more(), cid)

    @router.post("/save", response_model=CommandResponse)
    async def save_lead() -> CommandResponse:
        cid = _received("save")
        previous_error = controller.state.error
        ok = await controller.save()
        return _applied("save", ok, cid, previous_error)

    @router.put("/entities/{field_name}", response_model=CommandResponse)
    async def edit_entity(field_name: str, req: EditRequest) -> CommandResponse:
        cid = _received("edit_field")
        try:
            ok = controller.edit_field(field_name, req.value)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid_field")
        return _applied("edit_field", ok, cid)

    @router.post("/entities/{field_name}/alternative", response_model=CommandResponse)
    async def select_alternative(field_name: str, req: AlternativeRequest) -> CommandResponse:
        cid = _received("select_alternative")
        try:
            ok = controller.select_alternative(field_name, req.alternative)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid_alternative")
        return _applied("select_alternative", ok, cid)

    @router.put("/language", response_model=CommandResponse)
    async def set_language(req: LanguageRequest) -> CommandResponse:
        cid = _received("set_language")
        if req.language not in SUPPORTED_LANGUAGES:
            raise HTTPException(status_code=400, detail="unsupported_language")
        return _applied("set_language", controller.set_language(req.language), cid)

    @router.post("/permission/retry", response_model=CommandResponse)
    async def retry_permission() -> CommandResponse:
        cid = _received("retry_permission")
        return _applied("retry_permission", controller.retry_permission(), cid)

    @router.get("/sessions")
    async def list_sessions() -> dict:
        counts = event_store.sessions()
        counts.pop("none", None)
        return {"sessions": [{"session_id": sid, "event_count": n} for sid, n in counts.items()]}

    @router.get("/sessions/{session_id}/events")
    async def get_session_events(
        session_id: str,
        event_type: Optional[str] = Query(None, description="Filter by event_type"),
        component: Optional[str] = Query(None, description="Filter by component"),
        min_severity: Optional[str] = Query(
            None, pattern="^(debug|info|warn|error)$", description="Lowest severity to include"
        ),
        since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
        until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
        limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
    ) -> dict:
        events = event_store.query(
            session_id=session_id,
            event_type=event_type,
            component=component,
            since=_parse_ts(since, "since"),
            until=_parse_ts(until, "until"),
            limit=limit,
            min_severity=min_severity,
        )
        if not events:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session_id": session_id, "events": events, "count": len(events)}

    return router


def create_app(controller: CaptureController) -> FastAPI:
    """FastAPI app exposing the capture router, for hosts that mount a sub-app."""
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await controller.aclose()

    app = FastAPI(title="Voice Lead Capture", lifespan=lifespan)
    app.include_router(build_router(controller))

    @app.get("/health")
    async def health():
        return {"status": "ok", "component": "lead_capture", "phase": controller.state.phase.value}

    return app
