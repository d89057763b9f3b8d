"""
Entity Extraction Engine.

Boundary: `extract(transcript, language_tag) -> ExtractedEntities`. Stateless
between calls; completes or fails as a whole. Any failure is raised as
ExtractionFailure and ends the session.

Two engines:
- GroqEntityExtractor: remote LLM, strict JSON prompt from prompts/extraction.yaml
- RuleBasedExtractor (rule_extractor.py): local, offline
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from logging_setup import get_logger, Component
from .entities import FIELD_NAMES, ExtractedEntities, ExtractedEntity
from .errors import ExtractionFailure, classify_remote_error, redact_detail

logger = get_logger(Component.EXTRACTION)

URGENCY_LEVELS = ("low", "medium", "high")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class EntityExtractor(ABC):
    """Extraction capability boundary."""

    @abstractmethod
    async def extract(self, transcript: str, language_tag: str) -> ExtractedEntities:
        ...

    async def aclose(self) -> None:
        return None


def normalize_phone_number(phone: str) -> str:
    """
    E.164 form of a spoken/typed phone number.

    "+44 20 7946 0958" -> "+442079460958"
    "1 512 555 0199"   -> "+15125550199"
    "512-555-0199"     -> "+15125550199"
    Anything else is returned unchanged.
    """
    cleaned = re.sub(r"[^\d+]", "", phone)
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("1") and len(cleaned) == 11:
        return f"+{cleaned}"
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    return phone


def format_phone_digits(digits: str) -> str:
    """Group North American digits as 512-555-0199; other lengths are returned as-is."""
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    if len(digits) == 7:
        return f"{digits[:3]}-{digits[3:]}"
    return digits


def coerce_amount(value: Any) -> Optional[float]:
    """Number from 2000, "2000", "$2,000", "2k"; None when not a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    text = value.strip().lower().replace(",", "").replace("$", "")
    multiplier = 1.0
    if text.endswith("k"):
        multiplier, text = 1000.0, text[:-1]
    try:
        return float(text) * multiplier
    except ValueError:
        return None


def parse_json_payload(text: str) -> Dict[str, Any]:
    """
    JSON object from a model reply. Tolerates markdown code fences and prose
    around the object. Raises ValueError when no object can be parsed.
    """
    match = _FENCE_RE.search(text)
    candidate = match.group(1) if match else text
    try:
        data = json.loads(candidate.strip())
    except json.JSONDecodeError:
        obj = _OBJECT_RE.search(text)
        if not obj:
            raise ValueError("model reply contains no JSON object")
        data = json.loads(obj.group(0))
    if not isinstance(data, dict):
        raise ValueError("model reply JSON is not an object")
    return data


class RawEntity(BaseModel):
    """One field as reported by the model."""

    model_config = ConfigDict(extra="ignore")

    value: Union[str, float, int, None] = None
    confidence: float = 0.0
    alternatives: List[str] = []
    normalized: Optional[str] = None
    range: Optional[List[float]] = None
    notes: Optional[str] = None

    @field_validator("alternatives", mode="before")
    @classmethod
    def _stringify_alternatives(cls, v):
        if v is None:
            return []
        return [str(a) for a in v if a is not None]

    @field_validator("confidence", mode="before")
    @classmethod
    def _null_confidence(cls, v):
        return 0.0 if v is None else v

    @field_validator("range", mode="before")
    @classmethod
    def _two_point_range(cls, v):
        if not isinstance(v, (list, tuple)) or len(v) != 2:
            return None
        return v


class RawExtraction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[RawEntity] = None
    phone: Optional[RawEntity] = None
    email: Optional[RawEntity] = None
    project: Optional[RawEntity] = None
    budget: Optional[RawEntity] = None
    urgency: Optional[RawEntity] = None


def entities_from_payload(payload: Dict[str, Any]) -> ExtractedEntities:
    """
    Validated ExtractedEntities from the model's JSON. Fields reported with a
    null/blank value or zero confidence are left absent.
    """
    raw = RawExtraction.model_validate(payload)
    entities = ExtractedEntities()
    for field_name in FIELD_NAMES:
        item: Optional[RawEntity] = getattr(raw, field_name)
        if item is None or item.value is None or item.confidence <= 0:
            continue
        value: Union[str, float, None]
        normalized = None
        if field_name == "budget":
            value = coerce_amount(item.value)
        elif field_name == "urgency":
            value = str(item.value).strip().lower()
            if value not in URGENCY_LEVELS:
                value = None
        else:
            value = str(item.value).strip() or None
        if value is None:
            continue
        if field_name == "phone":
            normalized = item.normalized or normalize_phone_number(str(value))
            if not normalized.startswith("+"):
                normalized = None
        entities.set(
            field_name,
            ExtractedEntity(
                value=value,
                confidence=item.confidence,
                alternatives=item.alternatives,
                notes=item.notes,
                normalized=normalized,
                range=tuple(item.range) if field_name == "budget" and item.range else None,
            ),
        )
    return entities


def _get_prompts_dir() -> Path:
    return Path(__file__).parent / "prompts"


def load_prompt(name: str = "extraction") -> Dict[str, Any]:
    """Load a prompt file (YAML mapping with `system` and `user`)."""
    path = _get_prompts_dir() / f"{name}.yaml"
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or "system" not in data or "user" not in data:
        raise ValueError(f"Prompt file {path} must be a mapping with 'system' and 'user'")
    return data


class GroqEntityExtractor(EntityExtractor):
    """LLM extraction through the Groq chat completions API."""

    def __init__(self, client, *, timeout: float = 30.0, prompt: Optional[Dict[str, Any]] = None):
        self.client = client
        self.timeout = timeout
        self.prompt = prompt or load_prompt("extraction")

    async def extract(self, transcript: str, language_tag: str) -> ExtractedEntities:
        start_ts = time.time()
        user = self.prompt["user"].format(transcript=transcript.replace('"', "'"), language=language_tag)
        try:
            reply = await self.client.chat_json(self.prompt["system"].strip(), user, timeout=self.timeout)
            entities = entities_from_payload(parse_json_payload(reply))
        except asyncio.CancelledError:
            raise
        except (ValueError, ValidationError) as e:
            logger.error(
                "Extraction reply could not be parsed",
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise ExtractionFailure("extraction reply was not valid JSON", detail=type(e).__name__) from e
        except Exception as e:
            category = classify_remote_error(e)
            logger.error(
                "Extraction request failed",
                error_type=type(e).__name__,
                category=category,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise ExtractionFailure("extraction capability failed", detail=f"{category}: {redact_detail(e)}") from e

        logger.info(
            "Groq extraction completed",
            fields=entities.present_fields(),
            transcript_length=len(transcript),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return entities

    async def aclose(self) -> None:
        await self.client.aclose()
