"""
Capture pipeline configuration.

Loads provider and audio configuration from environment variables.
Local development values may live in .env_local / .env.local at the repo root;
they never override variables already set in the process environment.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


SUPPORTED_LANGUAGES = ("en-US", "es-ES", "fr-FR", "de-DE", "pt-BR", "it-IT")


def load_local_env() -> None:
    """Best-effort load of .env_local / .env.local (local dev convenience)."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """Raw env value with inline comments and whitespace stripped."""
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "16000  # comment" -> 16000
    - "16000" -> 16000
    - None -> default
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    """Parse float environment variable; same tolerance as _parse_int_env."""
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class PipelineConfig:
    """Capture pipeline configuration."""

    # Groq (STT + LLM extraction)
    groq_api_key: Optional[str] = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model_stt: str = "whisper-large-v3"
    groq_model_llm: str = "llama-3.3-70b-versatile"

    # "rules" (local, offline) | "groq" (remote LLM)
    extraction_backend: str = "rules"

    # Audio
    language: str = "en-US"
    sample_rate: int = 16000
    audio_device: Optional[str] = None
    audio_blocksize: int = 1600  # 100 ms at 16 kHz

    # Transcription / extraction timing
    transcription_partial_interval_seconds: float = 2.0
    transcription_timeout_seconds: float = 20.0
    extraction_timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"language must be one of {', '.join(SUPPORTED_LANGUAGES)}")
        if self.extraction_backend not in ("rules", "groq"):
            raise ValueError("extraction_backend must be 'rules' or 'groq'")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables."""
        load_local_env()
        return cls(
            groq_api_key=os.environ.get("GROQ_API_KEY") or None,
            groq_base_url=os.environ.get("GROQ_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/"),
            groq_model_stt=os.environ.get("GROQ_MODEL_STT", "whisper-large-v3"),
            groq_model_llm=os.environ.get("GROQ_MODEL_LLM", "llama-3.3-70b-versatile"),
            extraction_backend=os.environ.get("EXTRACTION_BACKEND", "rules").lower(),
            language=os.environ.get("CAPTURE_LANGUAGE", "en-US"),
            sample_rate=_parse_int_env("AUDIO_SAMPLE_RATE", default=16000),
            audio_device=os.environ.get("AUDIO_DEVICE") or None,
            audio_blocksize=_parse_int_env("AUDIO_BLOCKSIZE", default=1600),
            transcription_partial_interval_seconds=_parse_float_env(
                "TRANSCRIPTION_PARTIAL_INTERVAL_SECONDS", default=2.0
            ),
            transcription_timeout_seconds=_parse_float_env("TRANSCRIPTION_TIMEOUT_SECONDS", default=20.0),
            extraction_timeout_seconds=_parse_float_env("EXTRACTION_TIMEOUT_SECONDS", default=30.0),
        )


def get_config() -> PipelineConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[PipelineConfig] = None
