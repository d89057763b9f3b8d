"""
In-memory store of capture events.

Bounded (oldest events fall off first) and queryable by capture session,
event type, component, minimum severity and time window. The control router
serves it at GET /capture/sessions/{session_id}/events.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ENVELOPE_KEYS = ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii")
NO_PII = {"contains_pii": False, "fields": [], "handling": "none"}
SEVERITY_ORDER = {"debug": 0, "info": 1, "warn": 2, "error": 3}


def _parse_event_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return datetime.now(timezone.utc)
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class StoredEvent:
    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    pii: Dict[str, Any] = field(default_factory=lambda: dict(NO_PII))
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_envelope(cls, event: Dict[str, Any]) -> "StoredEvent":
        session_id = event.get("session_id") or "none"
        return cls(
            ts=_parse_event_ts(event.get("ts")),
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id") or session_id,
            pii=event.get("pii") or dict(NO_PII),
            payload={k: v for k, v in event.items() if k not in ENVELOPE_KEYS},
        )

    def matches(
        self,
        event_type: Optional[str],
        component: Optional[str],
        min_severity: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> bool:
        if event_type and self.event_type != event_type:
            return False
        if component and self.component != component:
            return False
        if min_severity and SEVERITY_ORDER.get(self.severity, 1) < SEVERITY_ORDER.get(min_severity, 0):
            return False
        if since and self.ts < _parse_event_ts(since):
            return False
        if until and self.ts > _parse_event_ts(until):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
            "pii": self.pii,
            **self.payload,
        }


class EventStore:
    """
    Keeps the last `max_events` events (10 000 by default) in arrival order.
    A per-session counter lets the host list recent captures without a scan.
    """

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self._events: deque[StoredEvent] = deque()
        self._per_session: Counter = Counter()

    def store(self, event: Dict[str, Any]) -> None:
        stored = StoredEvent.from_envelope(event)
        if len(self._events) >= self.max_events:
            dropped = self._events.popleft()
            self._per_session[dropped.session_id] -= 1
            if self._per_session[dropped.session_id] <= 0:
                del self._per_session[dropped.session_id]
        self._events.append(stored)
        self._per_session[stored.session_id] += 1

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        min_severity: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Matching events as dicts, oldest first, at most `limit` of them."""
        if session_id and session_id not in self._per_session:
            return []
        found: List[Dict[str, Any]] = []
        for event in self._events:
            if session_id and event.session_id != session_id:
                continue
            if not event.matches(event_type, component, min_severity, since, until):
                continue
            found.append(event.to_dict())
            if limit and len(found) >= limit:
                break
        return found

    def sessions(self) -> Dict[str, int]:
        """Event count per capture session still held in the store."""
        return dict(self._per_session)

    def clear(self) -> None:
        self._events.clear()
        self._per_session.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_events": len(self._events),
            "max_events": self.max_events,
            "sessions": len(self._per_session),
            "oldest_event_ts": self._events[0].ts.isoformat() if self._events else None,
            "newest_event_ts": self._events[-1].ts.isoformat() if self._events else None,
        }


event_store = EventStore()
