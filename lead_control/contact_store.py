"""
Contact store boundary: `append_lead(record)`.

The pipeline only appends; it never reads back or reconciles the store's
identifiers beyond the id it generated itself.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List

import aiohttp

from logging_setup import get_logger, Component

if TYPE_CHECKING:
    from .committer import LeadRecord


logger = get_logger(Component.COMMITTER)


class ContactStoreError(Exception):
    """Append was not accepted by the store."""


class ContactStore(ABC):
    @abstractmethod
    async def append_lead(self, record: "LeadRecord") -> None:
        ...


class InMemoryContactStore(ContactStore):
    """Process-local store; the default when no endpoint is configured."""

    def __init__(self):
        self.leads: List["LeadRecord"] = []

    async def append_lead(self, record: "LeadRecord") -> None:
        self.leads.append(record)


class HttpContactStore(ContactStore):
    """
    POSTs the lead as JSON to `{base_url}/leads`.
    Any non-2xx answer or transport error raises ContactStoreError.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def append_lead(self, record: "LeadRecord") -> None:
        endpoint = f"{self.base_url}/leads"
        start_ts = time.time()
        try:
            async with aiohttp.ClientSession() as s:
                async with s.post(
                    endpoint,
                    json=record.to_dict(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as resp:
                    ok = 200 <= resp.status < 300
                    logger.info(
                        "Contact store response",
                        endpoint=endpoint,
                        lead_id=record.id,
                        status=resp.status,
                        ok=ok,
                        latency_ms=int((time.time() - start_ts) * 1000),
                    )
                    if not ok:
                        raise ContactStoreError(f"contact store answered {resp.status}")
        except aiohttp.ClientError as e:
            raise ContactStoreError(f"contact store unreachable: {type(e).__name__}") from e
