"""
Structured JSON event emission (shared).

Shared by the capture pipeline and lead control. Every event carries the same
envelope: ts, session_id, component, event_type, severity, correlation_id, pii.
Transcript content never goes into an event; only lengths, language and
confidence do.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .event_store import NO_PII, event_store


class Component(str, Enum):
    """Event-producing components."""

    CAPTURE_CONTROL = "capture_control"
    CAPTURE_PIPELINE = "capture_pipeline"
    CONTROL_API = "control_api"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def pii_marker(fields: Iterable[str]) -> Dict[str, Any]:
    """PII envelope for events that carry personal fields (redacted on export)."""
    return {"contains_pii": True, "fields": list(fields), "handling": "redact_on_export"}


class EventEmitter:
    """Emits structured JSON events and records them in the event store."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: Optional[str],
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        session_id = session_id or "none"
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or dict(NO_PII),
        }

        event.update(kwargs)

        # stdout for log aggregation
        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)

    def state_changed(
        self,
        session_id: Optional[str],
        from_state: str,
        to_state: str,
        trigger: str,
        paused: bool = False,
    ) -> None:
        """Emit capture.state_changed."""
        self.emit(
            "capture.state_changed",
            session_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            paused=paused,
        )

    def command_rejected(
        self,
        session_id: Optional[str],
        command: str,
        state: str,
    ) -> None:
        """Emit capture.command_rejected (illegal event for the current phase)."""
        self.emit(
            "capture.command_rejected",
            session_id,
            severity=Severity.WARN,
            command=command,
            state=state,
        )

    def phase_failed(
        self,
        session_id: Optional[str],
        phase: str,
        category: str,
        detail: Optional[str] = None,
    ) -> None:
        """Emit capture.failed; the phase is always named."""
        self.emit(
            "capture.failed",
            session_id,
            severity=Severity.ERROR,
            phase=phase,
            category=category,
            detail=detail,
        )
