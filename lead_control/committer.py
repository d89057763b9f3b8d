"""
Lead Committer.

Maps validated entities to a lead record and appends it to the contact
store. Every string field passes the sanitizer first. The commit rule is
checked again here, with the same function the validation stage uses.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from capture_pipeline.entities import ExtractedEntities
from capture_pipeline.errors import CommitFailure, ValidationBlocked, redact_detail
from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .contact_store import ContactStore
from .sanitize import sanitize_field
from .validation import DEFAULT_REQUIRED_CONFIDENCE, is_committable

logger = get_logger(Component.COMMITTER)
emitter = EventEmitter(ObsComponent.CAPTURE_CONTROL)

SOURCE_TAG = "voice_capture"


@dataclass
class LeadRecord:
    id: str
    name: str
    created_at: str
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    source_tag: str = SOURCE_TAG
    lifetime_value: int = 0
    status: str = "lead"

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape expected by the contact store."""
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "sourceTag": self.source_tag,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "lifetimeValue": self.lifetime_value,
            "status": self.status,
        }
        if self.email:
            data["email"] = self.email
        if self.phone:
            data["phone"] = self.phone
        if self.notes:
            data["notes"] = self.notes
        return data


def new_lead_id(now: Optional[float] = None) -> str:
    ms = int((now if now is not None else time.time()) * 1000)
    return f"lead-{ms}-{uuid.uuid4().hex[:8]}"


def build_lead_record(
    entities: ExtractedEntities,
    *,
    now: Optional[float] = None,
    id_factory: Callable[[], str] = new_lead_id,
) -> LeadRecord:
    """Lead record from entities; all strings sanitized and length-bounded."""
    ts = now if now is not None else time.time()

    def text(field_name: str) -> str:
        entity = entities.get(field_name)
        if entity is None or not entity.has_value:
            return ""
        return sanitize_field(field_name, entity.display_value())

    name = text("name") or "Unknown"
    project = text("project")
    budget = text("budget")
    urgency = text("urgency")

    notes = None
    if project:
        notes = f"Project: {project}"
        if budget:
            notes += f" | Budget: ${budget}"
        notes = sanitize_field("notes", notes)

    return LeadRecord(
        id=id_factory(),
        name=name,
        email=text("email") or None,
        phone=text("phone") or None,
        notes=notes or None,
        tags=[urgency] if urgency else [],
        created_at=datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
    )


class LeadCommitter:
    def __init__(self, store: ContactStore, threshold: float = DEFAULT_REQUIRED_CONFIDENCE):
        self.store = store
        self.threshold = threshold

    async def commit(self, entities: ExtractedEntities, session_id: Optional[str] = None) -> LeadRecord:
        """
        Append exactly one lead. Raises ValidationBlocked when the commit rule
        fails and CommitFailure when the store rejects the append.
        """
        result = is_committable(entities, self.threshold)
        if not result.ok:
            raise ValidationBlocked(result.failing_fields)

        record = build_lead_record(entities)
        start_ts = time.time()
        try:
            await self.store.append_lead(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Lead append failed",
                session_id=session_id,
                lead_id=record.id,
                error_type=type(e).__name__,
            )
            emitter.emit(
                "lead.commit_failed",
                session_id,
                severity=Severity.ERROR,
                lead_id=record.id,
                error_type=type(e).__name__,
            )
            raise CommitFailure("contact store append failed", detail=redact_detail(e)) from e

        logger.info(
            "Lead committed",
            session_id=session_id,
            lead_id=record.id,
            tag_count=len(record.tags),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        logger.info_pii("Lead contents", name=record.name, phone=record.phone, email=record.email)
        emitter.emit(
            "lead.committed",
            session_id,
            lead_id=record.id,
            source_tag=record.source_tag,
        )
        return record
