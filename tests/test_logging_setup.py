"""
Tests for logging_setup.

Verifies:
- One JSON object per line with component, severity and session tagging
- Bound fields and session binding
- PII kept under its own key, redactable as a whole
- Root logger configuration (level from argument or LOG_LEVEL)
"""
import json
import logging
from datetime import datetime
from io import StringIO

import pytest

from logging_setup import (
    PII_PLACEHOLDER,
    Component,
    JSONFormatter,
    Severity,
    StructuredLogger,
    get_logger,
    setup_logging,
)


@pytest.fixture
def root_logger():
    """Root logger state is restored after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def log_lines(root_logger):
    """Route root output through a JSONFormatter into a buffer; returns a reader."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG)

    def read():
        return [json.loads(line) for line in buffer.getvalue().splitlines() if line]

    return read


class TestJSONLines:
    def test_envelope(self, log_lines):
        get_logger(Component.CAPTURE_CONTROL).info("Recording started", utterance=1)

        (entry,) = log_lines()
        assert entry["severity"] == "info"
        assert entry["component"] == "capture_control"
        assert entry["message"] == "Recording started"
        assert entry["utterance"] == 1
        assert "session_id" not in entry
        datetime.fromisoformat(entry["timestamp"])

    def test_every_level(self, log_lines):
        logger = get_logger(Component.TRANSCRIPTION)
        logger.debug("d")
        logger.info("i")
        logger.warning("w")
        logger.error("e")
        logger.critical("c")

        assert [e["severity"] for e in log_lines()] == [s.value for s in Severity]

    def test_nested_and_typed_fields(self, log_lines):
        get_logger(Component.EXTRACTION).info(
            "Extraction completed",
            fields=["name", "phone"],
            latency_ms=812,
            degraded=False,
            usage={"prompt_tokens": 310},
        )

        (entry,) = log_lines()
        assert entry["fields"] == ["name", "phone"]
        assert entry["latency_ms"] == 812
        assert entry["degraded"] is False
        assert entry["usage"] == {"prompt_tokens": 310}

    def test_plain_string_component(self, log_lines):
        get_logger("host_app").info("Mounted capture router")
        assert log_lines()[0]["component"] == "host_app"

    def test_component_values(self):
        assert Component.CAPTURE_CONTROL.value == "capture_control"
        assert Component.PERMISSION.value == "permission"
        assert Component.AUDIO.value == "audio"
        assert Component.COMMITTER.value == "committer"
        assert Component.CONTROL_API.value == "control_api"


class TestSessionBinding:
    def test_session_from_get_logger(self, log_lines):
        get_logger(Component.AUDIO, session_id="cap_123").info("Audio stream acquired")
        assert log_lines()[0]["session_id"] == "cap_123"

    def test_with_session_keeps_bound_fields(self, log_lines):
        base = get_logger(Component.TRANSCRIPTION).bind(language="es-ES")
        base.with_session("cap_456").info("Transcription started")

        (entry,) = log_lines()
        assert entry["session_id"] == "cap_456"
        assert entry["language"] == "es-ES"
        assert base.session_id is None

    def test_bind_does_not_mutate_parent(self, log_lines):
        parent = get_logger(Component.VALIDATION)
        child = parent.bind(field="email")
        parent.info("parent")
        child.info("child", confidence=1.0)

        first, second = log_lines()
        assert "field" not in first
        assert second["field"] == "email"
        assert second["confidence"] == 1.0

    def test_call_fields_override_bound_fields(self, log_lines):
        get_logger(Component.AUDIO).bind(reason="stop").info("Audio released", reason="fault")
        assert log_lines()[0]["reason"] == "fault"


class TestPII:
    def test_pii_kept_under_its_own_key(self, log_lines):
        logger = get_logger(Component.COMMITTER, session_id="cap_789")
        logger.info_pii("Lead contents", phone="+15125550199", name="Maria Lopez")

        (entry,) = log_lines()
        assert entry["pii"] == {"phone": "+15125550199", "name": "Maria Lopez"}
        assert "phone" not in entry

    def test_debug_pii(self, log_lines):
        get_logger(Component.TRANSCRIPTION).debug_pii("Final transcript", transcript="needs a fence")

        (entry,) = log_lines()
        assert entry["severity"] == "debug"
        assert entry["pii"]["transcript"] == "needs a fence"

    def test_redacting_formatter(self):
        record = logging.LogRecord("committer", logging.INFO, __file__, 1, "Lead contents", None, None)
        record.component = "committer"
        record.pii = {"email": "maria@example.com"}

        entry = json.loads(JSONFormatter(redact_pii=True).format(record))

        assert entry["pii"] == {"email": PII_PLACEHOLDER}
        assert "maria@example.com" not in json.dumps(entry)


class TestExceptions:
    def test_exc_info_is_serialized(self, log_lines):
        logger = get_logger(Component.COMMITTER)
        try:
            raise ValueError("contact store answered 503")
        except ValueError:
            logger.error("Commit failed", exc_info=True)

        assert "ValueError: contact store answered 503" in log_lines()[0]["exception"]

    def test_exception_method(self, log_lines):
        logger = get_logger(Component.EXTRACTION, session_id="cap_321")
        try:
            raise RuntimeError("model reply was not JSON")
        except RuntimeError:
            logger.exception("Extraction failed", category="remote.bad_response")

        (entry,) = log_lines()
        assert entry["severity"] == "error"
        assert entry["category"] == "remote.bad_response"
        assert "RuntimeError: model reply was not JSON" in entry["exception"]


class TestSetupLogging:
    def test_json(self, root_logger):
        setup_logging(level="DEBUG", use_json=True)

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_text(self, root_logger):
        setup_logging(level="WARNING", use_json=False)

        assert root_logger.level == logging.WARNING
        assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_level_and_redaction_from_env(self, root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "error")
        monkeypatch.setenv("LOG_REDACT_PII", "true")

        setup_logging()

        assert root_logger.level == logging.ERROR
        assert root_logger.handlers[0].formatter.redact_pii is True

    def test_unknown_level_falls_back_to_info(self, root_logger):
        setup_logging(level="chatty")
        assert root_logger.level == logging.INFO

    def test_logger_name_defaults_to_component(self):
        logger = StructuredLogger(Component.AUDIO)
        assert logger.logger.name == "audio"
        assert StructuredLogger("audio", logger_name="capture.audio").logger.name == "capture.audio"
