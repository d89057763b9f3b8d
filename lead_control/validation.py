"""
Validation & Correction Stage.

`is_committable` is the single commit rule, called both to gate the save
action and again at the committer boundary. Display policy (confidence bands,
whether to offer alternatives) is a pure function of the entity; entities
always keep their alternatives.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from capture_pipeline.entities import (
    ADVISORY_FIELDS,
    FIELD_NAMES,
    REQUIRED_FIELDS,
    EntitySource,
    ExtractedEntities,
    ExtractedEntity,
)
from capture_pipeline.extraction import coerce_amount, normalize_phone_number
from logging_setup import get_logger, Component

logger = get_logger(Component.VALIDATION)

MANUAL_CONFIDENCE = 1.0
DEFAULT_REQUIRED_CONFIDENCE = 0.7
DEFAULT_ASSISTED_CONFIDENCE = 0.85
DEFAULT_ALTERNATIVES_CUTOFF = 0.85


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    failing_fields: Tuple[str, ...] = ()


def is_committable(
    entities: Optional[ExtractedEntities],
    threshold: float = DEFAULT_REQUIRED_CONFIDENCE,
    required: Sequence[str] = REQUIRED_FIELDS,
) -> ValidationResult:
    """
    Every required field must be present, non-empty and at or above
    `threshold`. Advisory fields never block.
    """
    failing: List[str] = []
    for field_name in required:
        entity = entities.get(field_name) if entities is not None else None
        if entity is None or not entity.has_value or entity.confidence < threshold:
            failing.append(field_name)
    return ValidationResult(ok=not failing, failing_fields=tuple(failing))


def confidence_band(confidence: float) -> str:
    if confidence >= 0.9:
        return "high"
    if confidence >= 0.7:
        return "medium"
    return "low"


def offers_alternatives(entity: Optional[ExtractedEntity], cutoff: float = DEFAULT_ALTERNATIVES_CUTOFF) -> bool:
    """Show the alternatives picker? Never after a manual edit."""
    if entity is None or not entity.alternatives:
        return False
    if entity.source == EntitySource.MANUAL:
        return False
    return entity.confidence < cutoff


class ValidationStage:
    """
    Holds the entity set under review and applies human corrections.
    The only mutator of entities besides the add-more merge.
    """

    def __init__(
        self,
        entities: Optional[ExtractedEntities] = None,
        *,
        required_confidence: float = DEFAULT_REQUIRED_CONFIDENCE,
        assisted_confidence: float = DEFAULT_ASSISTED_CONFIDENCE,
        alternatives_cutoff: float = DEFAULT_ALTERNATIVES_CUTOFF,
    ):
        self.entities = entities.copy() if entities is not None else ExtractedEntities()
        self.required_confidence = required_confidence
        self.assisted_confidence = assisted_confidence
        self.alternatives_cutoff = alternatives_cutoff

    def validate(self) -> ValidationResult:
        return is_committable(self.entities, self.required_confidence)

    def edit(self, field_name: str, value) -> ExtractedEntity:
        """
        Manual edit: confidence becomes 1.0 regardless of the previous value.
        Editing an absent field creates it.
        """
        if field_name not in FIELD_NAMES:
            raise ValueError(f"unknown field: {field_name!r}")
        value = _coerce_edit(field_name, value)
        current = self.entities.get(field_name)
        if current is None:
            entity = ExtractedEntity(value=value, confidence=MANUAL_CONFIDENCE, source=EntitySource.MANUAL)
        else:
            entity = current.copy()
            entity.value = value
            entity.confidence = MANUAL_CONFIDENCE
            entity.source = EntitySource.MANUAL
            entity.range = None
        if field_name == "phone" and isinstance(value, str):
            normalized = normalize_phone_number(value)
            entity.normalized = normalized if normalized.startswith("+") else None
        self.entities.set(field_name, entity)
        logger.debug("Field edited", field=field_name, previous_present=current is not None)
        return entity

    def select_alternative(self, field_name: str, alternative: str) -> ExtractedEntity:
        """
        Replace the value with one of the listed alternatives at the assisted
        confidence. The previous value becomes an alternative.
        """
        current = self.entities.get(field_name)
        if current is None:
            raise ValueError(f"field {field_name!r} is not present")
        if current.source == EntitySource.MANUAL:
            raise ValueError(f"field {field_name!r} was edited manually; alternatives no longer apply")
        if alternative not in current.alternatives:
            raise ValueError(f"{alternative!r} is not an alternative for {field_name!r}")

        entity = current.copy()
        previous = current.display_value()
        entity.value = _coerce_edit(field_name, alternative)
        entity.confidence = self.assisted_confidence
        entity.source = EntitySource.ASSISTED
        entity.alternatives = [a for a in current.alternatives if a != alternative]
        if previous and previous not in entity.alternatives:
            entity.alternatives.append(previous)
        if field_name == "phone":
            normalized = normalize_phone_number(alternative)
            entity.normalized = normalized if normalized.startswith("+") else None
        self.entities.set(field_name, entity)
        logger.debug("Alternative selected", field=field_name)
        return entity

    def field_statuses(self) -> Dict[str, Dict[str, object]]:
        """Per-field display state, failing required fields flagged individually."""
        failing = set(self.validate().failing_fields)
        statuses: Dict[str, Dict[str, object]] = {}
        for field_name in FIELD_NAMES:
            entity = self.entities.get(field_name)
            statuses[field_name] = {
                "present": entity is not None,
                "required": field_name not in ADVISORY_FIELDS,
                "band": confidence_band(entity.confidence) if entity is not None else None,
                "offer_alternatives": offers_alternatives(entity, self.alternatives_cutoff),
                "blocking": field_name in failing,
            }
        return statuses


def _coerce_edit(field_name: str, value):
    if field_name == "budget":
        amount = coerce_amount(value)
        if amount is not None:
            return amount
    if isinstance(value, str):
        value = value.strip()
        if field_name == "urgency":
            value = value.lower()
        elif field_name == "email":
            value = value.lower()
    return value
