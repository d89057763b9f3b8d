"""
Event emission tests.

Every event carries the same JSON envelope on stdout and is queryable from
the in-memory event store by session.
"""
import json
import sys
from datetime import datetime, timedelta, timezone
from io import StringIO

from observability.event_store import EventStore, event_store
from observability.events import Component, EventEmitter, Severity, pii_marker


class TestEventFormat:
    """Envelope fields."""

    def test_required_fields(self):
        old_stdout = sys.stdout
        sys.stdout = captured_output = StringIO()

        try:
            emitter = EventEmitter(Component.CAPTURE_CONTROL)
            emitter.emit(
                event_type="test.event",
                session_id="cap_123",
                severity=Severity.INFO,
            )

            event = json.loads(captured_output.getvalue().strip())

            for key in ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii"):
                assert key in event
            assert event["session_id"] == "cap_123"
            assert event["component"] == "capture_control"
            assert event["event_type"] == "test.event"
            assert event["severity"] == "info"
            # correlation defaults to the session
            assert event["correlation_id"] == "cap_123"
            assert event["pii"]["contains_pii"] is False

        finally:
            sys.stdout = old_stdout

    def test_timestamp_format(self):
        old_stdout = sys.stdout
        sys.stdout = captured_output = StringIO()

        try:
            EventEmitter(Component.CAPTURE_PIPELINE).emit("test.event", "cap_123")
            event = json.loads(captured_output.getvalue().strip())
            datetime.fromisoformat(event["ts"].replace("Z", "+00:00"))

        finally:
            sys.stdout = old_stdout

    def test_missing_session_is_none(self):
        old_stdout = sys.stdout
        sys.stdout = captured_output = StringIO()

        try:
            EventEmitter(Component.CONTROL_API).emit("test.event", None, correlation_id="cmd_1")
            event = json.loads(captured_output.getvalue().strip())
            assert event["session_id"] == "none"
            assert event["correlation_id"] == "cmd_1"

        finally:
            sys.stdout = old_stdout

    def test_pii_marker(self):
        old_stdout = sys.stdout
        sys.stdout = captured_output = StringIO()

        try:
            EventEmitter(Component.CAPTURE_CONTROL).emit(
                "test.event", "cap_123", pii=pii_marker(["phone"]), latency_ms=42,
            )
            event = json.loads(captured_output.getvalue().strip())
            assert event["pii"] == {"contains_pii": True, "fields": ["phone"], "handling": "redact_on_export"}
            assert event["latency_ms"] == 42

        finally:
            sys.stdout = old_stdout


class TestEventTaxonomy:
    def test_state_changed(self, capsys):
        EventEmitter(Component.CAPTURE_CONTROL).state_changed("cap_1", "idle", "recording", "request_capture")
        event = json.loads(capsys.readouterr().out.strip())

        assert event["event_type"] == "capture.state_changed"
        assert event["from_state"] == "idle"
        assert event["to_state"] == "recording"
        assert event["trigger"] == "request_capture"
        assert event["paused"] is False

    def test_command_rejected(self, capsys):
        EventEmitter(Component.CAPTURE_CONTROL).command_rejected("cap_1", "save", "recording")
        event = json.loads(capsys.readouterr().out.strip())

        assert event["event_type"] == "capture.command_rejected"
        assert event["severity"] == "warn"
        assert event["command"] == "save"

    def test_phase_failed(self, capsys):
        EventEmitter(Component.CAPTURE_CONTROL).phase_failed("cap_1", "extraction", "extraction.failed", "remote.timeout")
        event = json.loads(capsys.readouterr().out.strip())

        assert event["event_type"] == "capture.failed"
        assert event["severity"] == "error"
        assert event["phase"] == "extraction"
        assert event["detail"] == "remote.timeout"


class TestEventStore:
    def test_emitted_events_are_queryable(self, capsys):
        emitter = EventEmitter(Component.CAPTURE_PIPELINE)
        emitter.emit("audio.acquired", "cap_a")
        emitter.emit("audio.released", "cap_a", severity=Severity.DEBUG)
        emitter.emit("audio.acquired", "cap_b")

        events = event_store.query(session_id="cap_a")
        assert [e["event_type"] for e in events] == ["audio.acquired", "audio.released"]
        assert event_store.query(event_type="audio.acquired", limit=1)[0]["session_id"] == "cap_a"
        assert event_store.query(component="control_api") == []

    def test_time_window(self):
        store = EventStore()
        now = datetime.now(timezone.utc)
        store.store({"ts": (now - timedelta(minutes=5)).isoformat(), "session_id": "cap_1", "event_type": "old"})
        store.store({"ts": now.isoformat(), "session_id": "cap_1", "event_type": "new"})

        recent = store.query(session_id="cap_1", since=now - timedelta(minutes=1))
        assert [e["event_type"] for e in recent] == ["new"]
        older = store.query(until=now - timedelta(minutes=1))
        assert [e["event_type"] for e in older] == ["old"]

    def test_bounded(self):
        store = EventStore(max_events=3)
        for i in range(5):
            store.store({"session_id": "cap_1", "event_type": f"e{i}"})

        assert [e["event_type"] for e in store.query()] == ["e2", "e3", "e4"]
        assert store.get_stats()["total_events"] == 3

    def test_min_severity_and_session_counts(self):
        store = EventStore()
        store.store({"session_id": "cap_1", "event_type": "audio.acquired", "severity": "info"})
        store.store({"session_id": "cap_1", "event_type": "transcription.degraded", "severity": "warn"})
        store.store({"session_id": "cap_2", "event_type": "capture.failed", "severity": "error"})

        assert [e["event_type"] for e in store.query(min_severity="warn")] == [
            "transcription.degraded",
            "capture.failed",
        ]
        assert store.sessions() == {"cap_1": 2, "cap_2": 1}
        assert store.query(session_id="cap_9") == []

    def test_evicted_sessions_are_forgotten(self):
        store = EventStore(max_events=2)
        store.store({"session_id": "cap_old", "event_type": "audio.acquired"})
        store.store({"session_id": "cap_new", "event_type": "audio.acquired"})
        store.store({"session_id": "cap_new", "event_type": "audio.released"})

        assert store.sessions() == {"cap_new": 2}
        assert store.query(session_id="cap_old") == []
