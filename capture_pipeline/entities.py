"""
Extracted entity data model.

One ExtractedEntity per semantic field; ExtractedEntities is the fixed-shape
record of all six lead fields. A field that is None was not detected, which is
different from a detected entity with an empty value.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

EntityValue = Union[str, int, float, None]

FIELD_NAMES: Tuple[str, ...] = ("name", "phone", "email", "project", "budget", "urgency")
REQUIRED_FIELDS: Tuple[str, ...] = ("name", "phone", "email", "project")
ADVISORY_FIELDS: Tuple[str, ...] = ("budget", "urgency")


class EntitySource(str, Enum):
    """Provenance of an entity's current value."""

    MACHINE = "machine"
    ASSISTED = "assisted"  # human picked one of the machine alternatives
    MANUAL = "manual"      # human typed the value


def clamp_confidence(value: Any, default: float = 0.0) -> float:
    """Confidence as a float in [0, 1]; unparseable input becomes `default`."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence != confidence:  # NaN
        return default
    return max(0.0, min(1.0, confidence))


@dataclass
class ExtractedEntity:
    """A single extracted field with its confidence and runner-up readings."""

    value: EntityValue
    confidence: float
    alternatives: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    # E.164 form for phones
    normalized: Optional[str] = None
    # (low, high) for budgets given as a range
    range: Optional[Tuple[float, float]] = None
    source: EntitySource = EntitySource.MACHINE

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)
        self.alternatives = [str(a) for a in self.alternatives if a is not None and str(a).strip()]

    @property
    def has_value(self) -> bool:
        if self.value is None:
            return False
        if isinstance(self.value, str):
            return bool(self.value.strip())
        return True

    def display_value(self) -> str:
        if self.value is None:
            return ""
        if isinstance(self.value, float) and self.value.is_integer():
            return str(int(self.value))
        return str(self.value)

    def copy(self) -> "ExtractedEntity":
        return replace(self, alternatives=list(self.alternatives))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "value": self.value,
            "confidence": self.confidence,
            "alternatives": list(self.alternatives),
            "source": self.source.value,
        }
        if self.notes:
            data["notes"] = self.notes
        if self.normalized:
            data["normalized"] = self.normalized
        if self.range:
            data["range"] = list(self.range)
        return data


@dataclass
class ExtractedEntities:
    """Fixed-shape record of lead fields; absent fields are None."""

    name: Optional[ExtractedEntity] = None
    phone: Optional[ExtractedEntity] = None
    email: Optional[ExtractedEntity] = None
    project: Optional[ExtractedEntity] = None
    budget: Optional[ExtractedEntity] = None
    urgency: Optional[ExtractedEntity] = None

    def get(self, field_name: str) -> Optional[ExtractedEntity]:
        _check_field(field_name)
        return getattr(self, field_name)

    def set(self, field_name: str, entity: Optional[ExtractedEntity]) -> None:
        _check_field(field_name)
        setattr(self, field_name, entity)

    def items(self) -> Iterator[Tuple[str, ExtractedEntity]]:
        """Present fields in display order."""
        for name in FIELD_NAMES:
            entity = getattr(self, name)
            if entity is not None:
                yield name, entity

    def present_fields(self) -> List[str]:
        return [name for name, _ in self.items()]

    def is_empty(self) -> bool:
        return not self.present_fields()

    def copy(self) -> "ExtractedEntities":
        return ExtractedEntities(**{
            f.name: (getattr(self, f.name).copy() if getattr(self, f.name) is not None else None)
            for f in fields(self)
        })

    def merged_with(self, newer: "ExtractedEntities") -> "ExtractedEntities":
        """
        Per-field overwrite: a field detected in `newer` replaces ours,
        fields `newer` did not detect are kept unchanged.
        """
        merged = self.copy()
        for name, entity in newer.items():
            merged.set(name, entity.copy())
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {name: entity.to_dict() for name, entity in self.items()}


def _check_field(field_name: str) -> None:
    if field_name not in FIELD_NAMES:
        raise ValueError(f"unknown field: {field_name!r}")
