"""
Shared logging for the voice lead capture pipeline.

Both halves log through here: the capture pipeline (device, transcription,
extraction I/O) and lead control (state machine, validation, commit).

One JSON object per line with `timestamp`, `severity`, `component`,
`session_id` (when bound), `message` and any keyword fields. Transcripts,
names, phone numbers and e-mail addresses are PII: they go through the
`*_pii` helpers only, which put them under a separate `pii` key that the
formatter can redact wholesale (LOG_REDACT_PII=1).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

PII_PLACEHOLDER = "[redacted]"


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """Log tag per capture component."""
    CAPTURE_CONTROL = "capture_control"
    CAPTURE_PIPELINE = "capture_pipeline"
    PERMISSION = "permission"
    AUDIO = "audio"
    TRANSCRIPTION = "transcription"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    COMMITTER = "committer"
    CONTROL_API = "control_api"


# anything on a record that is not in a blank LogRecord was passed as a field
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message", "asctime", "component", "session_id", "taskName",
}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


class JSONFormatter(logging.Formatter):
    """
    Formats a record as one JSON line.

    With `redact_pii` the values under `pii` are replaced by a placeholder;
    the field names stay so audits can still see what was withheld.
    """

    def __init__(self, redact_pii: bool = False):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
        }
        session_id = getattr(record, "session_id", None)
        if session_id:
            entry["session_id"] = session_id
        entry["message"] = record.getMessage()

        entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        )

        pii = entry.get("pii")
        if self.redact_pii and isinstance(pii, dict):
            entry["pii"] = {key: PII_PLACEHOLDER for key in pii}

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Logger bound to a component, optionally to a capture session and to a
    set of fixed fields.

        logger = get_logger(Component.AUDIO, session_id="cap_123")
        logger.info("Audio stream acquired", sample_rate=16000)
        logger.bind(utterance=2).warning("Transcription degraded", error_type="TimeoutError")
        logger.debug_pii("Transcript received", transcript="Maria Lopez ...")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.fields: Dict[str, Any] = dict(fields or {})
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(self, level: int, message: str, pii: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        extra: Dict[str, Any] = {"component": self.component, **self.fields, **kwargs}
        if self.session_id:
            extra.setdefault("session_id", self.session_id)
        if pii:
            extra["pii"] = pii
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Error level with the exception being handled attached."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Debug line whose keyword fields are PII.

            logger.debug_pii("Entity corrected", field_value="Maria Lopez")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        self._log(logging.INFO, message, pii=pii_fields)

    def bind(self, **fields) -> "StructuredLogger":
        """Copy of this logger that adds `fields` to every line."""
        return StructuredLogger(
            self.component,
            session_id=self.session_id,
            logger_name=self.logger.name,
            fields={**self.fields, **fields},
        )

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Copy of this logger bound to a capture session."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name,
            fields=self.fields,
        )


def setup_logging(
    level: Optional[str] = None,
    use_json: bool = True,
    include_timestamp: bool = True,
    redact_pii: Optional[bool] = None,
) -> None:
    """
    Configure the root logger. The host application calls this once at
    start-up; existing root handlers are replaced.

    Args:
        level: DEBUG/INFO/WARNING/ERROR/CRITICAL, defaults to LOG_LEVEL or INFO
        use_json: JSON lines (True) or plain text (False)
        include_timestamp: prefix plain text lines with a timestamp
        redact_pii: hide values logged through the *_pii helpers,
            defaults to LOG_REDACT_PII
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    if redact_pii is None:
        redact_pii = _env_flag("LOG_REDACT_PII")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter(redact_pii=redact_pii))
    else:
        fmt = "%(levelname)s [%(component)s] %(message)s"
        if include_timestamp:
            fmt = "%(asctime)s " + fmt
        handler.setFormatter(logging.Formatter(fmt, defaults={"component": "-"}))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(component: str | Component, session_id: Optional[str] = None) -> StructuredLogger:
    """
    Structured logger for a component:

        logger = get_logger(Component.CAPTURE_CONTROL, session_id="cap_123")
        logger.info("Capture started")
    """
    return StructuredLogger(component, session_id=session_id)
