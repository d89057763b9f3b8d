"""
Lead control configuration.

Confidence thresholds, the Complete -> Idle delay and the contact store
endpoint. Same environment conventions as the capture pipeline (.env_local
loading, comment-tolerant numeric parsing).
"""
import os
from dataclasses import dataclass
from typing import Optional

from capture_pipeline.config import _parse_float_env, load_local_env


@dataclass
class ControlConfig:
    """Lead control configuration."""

    # Required fields must reach this confidence before commit
    required_confidence: float = 0.7
    # Confidence given to a value picked from the alternatives
    assisted_confidence: float = 0.85
    # Alternatives are offered below this confidence
    alternatives_cutoff: float = 0.85

    # Complete -> Idle
    complete_reset_seconds: float = 1.0

    # Transcripts below this confidence proceed with a warning
    transcript_min_confidence: float = 0.3

    # Contact store (in-memory when unset)
    contact_store_url: Optional[str] = None
    contact_store_timeout_seconds: float = 10.0

    def __post_init__(self):
        for name in ("required_confidence", "assisted_confidence", "alternatives_cutoff", "transcript_min_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        if self.assisted_confidence < self.required_confidence:
            raise ValueError("assisted_confidence must not be below required_confidence")
        if self.complete_reset_seconds < 0:
            raise ValueError("complete_reset_seconds must be >= 0")

    @classmethod
    def from_env(cls) -> "ControlConfig":
        """Load configuration from environment variables."""
        load_local_env()
        url = os.environ.get("CONTACT_STORE_URL") or None
        return cls(
            required_confidence=_parse_float_env("LEAD_REQUIRED_CONFIDENCE", default=0.7),
            assisted_confidence=_parse_float_env("LEAD_ASSISTED_CONFIDENCE", default=0.85),
            alternatives_cutoff=_parse_float_env("LEAD_ALTERNATIVES_CUTOFF", default=0.85),
            complete_reset_seconds=_parse_float_env("CAPTURE_COMPLETE_RESET_SECONDS", default=1.0),
            transcript_min_confidence=_parse_float_env("TRANSCRIPT_MIN_CONFIDENCE", default=0.3),
            contact_store_url=url.rstrip("/") if url else None,
            contact_store_timeout_seconds=_parse_float_env("CONTACT_STORE_TIMEOUT_SECONDS", default=10.0),
        )


def get_config() -> ControlConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = ControlConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[ControlConfig] = None
