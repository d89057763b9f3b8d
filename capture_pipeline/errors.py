"""
Capture error taxonomy.

Every failure names the phase it happened in (permission, recording,
transcription, extraction, validation, saving) and maps to a stable category
string. Provider exceptions are classified into stable sub-categories for logs
and events without leaking secrets.
"""
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple


class Phase:
    """Pipeline phases a failure can be attributed to."""

    PERMISSION = "permission"
    RECORDING = "recording"
    TRANSCRIPTION = "transcription"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    SAVING = "saving"


class ErrorCategory:
    """Stable error categories."""

    PERMISSION_DENIED = "permission.denied"
    DEVICE_UNAVAILABLE = "recording.device_unavailable"
    TRANSCRIPTION_FAILED = "transcription.failed"
    EXTRACTION_FAILED = "extraction.failed"
    VALIDATION_BLOCKED = "validation.blocked"
    COMMIT_FAILED = "saving.failed"


class RemoteErrorCategory:
    """Sub-categories for failures of remote capabilities."""

    TIMEOUT = "remote.timeout"
    NETWORK_ERROR = "remote.network_error"
    AUTH_FAILED = "remote.auth_failed"
    RATE_LIMITED = "remote.rate_limited"
    UNAVAILABLE = "remote.unavailable"
    BAD_RESPONSE = "remote.bad_response"
    UNKNOWN_ERROR = "remote.unknown_error"


class CaptureError(Exception):
    """Base class for every failure of a capture session."""

    category: str = "capture.unknown"
    phase: str = Phase.RECORDING

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class PermissionDenied(CaptureError):
    """User or OS refused microphone access."""

    category = ErrorCategory.PERMISSION_DENIED
    phase = Phase.PERMISSION


class DeviceUnavailable(CaptureError):
    """No audio track could be obtained, or the device is already claimed."""

    category = ErrorCategory.DEVICE_UNAVAILABLE
    phase = Phase.RECORDING


class TranscriptionFailure(CaptureError):
    """Streaming transcription errored or timed out."""

    category = ErrorCategory.TRANSCRIPTION_FAILED
    phase = Phase.TRANSCRIPTION


class ExtractionFailure(CaptureError):
    """Entity extraction errored or timed out. Terminal for the session."""

    category = ErrorCategory.EXTRACTION_FAILED
    phase = Phase.EXTRACTION


class ValidationBlocked(CaptureError):
    """Required fields are missing or below the confidence threshold."""

    category = ErrorCategory.VALIDATION_BLOCKED
    phase = Phase.VALIDATION

    def __init__(self, failing_fields: Sequence[str]):
        self.failing_fields: Tuple[str, ...] = tuple(failing_fields)
        super().__init__(
            "Required fields need attention: " + ", ".join(self.failing_fields),
        )


class CommitFailure(CaptureError):
    """The contact store append failed. Entities are kept for a retry."""

    category = ErrorCategory.COMMIT_FAILED
    phase = Phase.SAVING


@dataclass(frozen=True)
class CaptureFailure:
    """User-visible failure record kept in the capture state."""

    phase: str
    category: str
    message: str
    detail: Optional[str] = None
    failing_fields: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_error(cls, error: CaptureError) -> "CaptureFailure":
        return cls(
            phase=error.phase,
            category=error.category,
            message=get_user_message(error.category),
            detail=error.detail or error.message,
            failing_fields=getattr(error, "failing_fields", ()),
        )


def get_user_message(category: str) -> str:
    """
    User-facing message per category. Each names the phase that failed.
    """
    messages = {
        ErrorCategory.PERMISSION_DENIED: (
            "Microphone access was denied. Enable it in your device settings, then try again."
        ),
        ErrorCategory.DEVICE_UNAVAILABLE: (
            "Recording could not start: no microphone is available or it is in use."
        ),
        ErrorCategory.TRANSCRIPTION_FAILED: (
            "Transcription failed. Please record your description again."
        ),
        ErrorCategory.EXTRACTION_FAILED: (
            "Reading the lead details from your recording failed. Please record again."
        ),
        ErrorCategory.VALIDATION_BLOCKED: (
            "Some required fields need review before the lead can be saved."
        ),
        ErrorCategory.COMMIT_FAILED: (
            "Saving the lead failed. Your details are kept; try saving again."
        ),
    }
    return messages.get(category, "The voice capture failed.")


def classify_remote_error(error: BaseException) -> str:
    """
    Classify a remote capability error into a stable sub-category.
    Never raises; unknown errors map to UNKNOWN_ERROR.
    """
    if isinstance(error, TimeoutError):
        return RemoteErrorCategory.TIMEOUT

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if "timeout" in error_str or "timeout" in error_type or "timed out" in error_str:
        return RemoteErrorCategory.TIMEOUT

    if "auth" in error_str or "unauthorized" in error_str or "401" in error_str or "403" in error_str:
        return RemoteErrorCategory.AUTH_FAILED

    if "rate limit" in error_str or "429" in error_str or "throttle" in error_str:
        return RemoteErrorCategory.RATE_LIMITED

    if "503" in error_str or "502" in error_str or "unavailable" in error_str:
        return RemoteErrorCategory.UNAVAILABLE

    if "connect" in error_str or "network" in error_str or "connect" in error_type:
        return RemoteErrorCategory.NETWORK_ERROR

    if "json" in error_str or "parse" in error_str or "validation" in error_type:
        return RemoteErrorCategory.BAD_RESPONSE

    return RemoteErrorCategory.UNKNOWN_ERROR


def redact_detail(error: BaseException) -> str:
    """Error detail safe for logs: drops messages that may contain secrets."""
    detail = str(error)
    lowered = detail.lower()
    if "secret" in lowered or "password" in lowered or "key" in lowered or "bearer" in lowered:
        return "[redacted: potential secret]"
    return detail
