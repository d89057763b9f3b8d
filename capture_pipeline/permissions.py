"""
Permission Negotiator.

Resolves microphone authorization by briefly acquiring a constrained probe
stream through the resource guard and releasing it straight away. Any
failure while probing counts as a denial. The decision is cached; only an
explicit user retry (`reset`) clears it.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .audio import AudioResourceGuard

logger = get_logger(Component.PERMISSION)
emitter = EventEmitter(ObsComponent.CAPTURE_PIPELINE)


class PermissionStatus(str, Enum):
    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


class PermissionNegotiator:
    def __init__(self, guard: AudioResourceGuard):
        self.guard = guard
        self.status = PermissionStatus.UNKNOWN
        self.reason: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.status == PermissionStatus.GRANTED

    async def request_permission(self, session_id: Optional[str] = None) -> PermissionStatus:
        """Probe the device once. A cached decision is returned without probing."""
        if self.status != PermissionStatus.UNKNOWN:
            return self.status

        try:
            async with self.guard.scoped(session_id, reason="permission_probe"):
                pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.status = PermissionStatus.DENIED
            self.reason = getattr(e, "detail", None) or str(e)
            logger.warning(
                "Microphone permission denied",
                session_id=session_id,
                error_type=type(e).__name__,
            )
        else:
            self.status = PermissionStatus.GRANTED
            self.reason = None
            logger.info("Microphone permission granted", session_id=session_id)

        emitter.emit(
            "permission.resolved",
            session_id,
            severity=Severity.INFO if self.granted else Severity.WARN,
            status=self.status.value,
        )
        return self.status

    def reset(self) -> None:
        """Forget the cached decision (explicit user retry only)."""
        logger.info("Permission decision reset", previous=self.status.value)
        self.status = PermissionStatus.UNKNOWN
        self.reason = None
