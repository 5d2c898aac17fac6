"""Remote lead store abstract base class -- the interface the sync engine consumes.

SharpSpringClient implements it against the REST API; LocalLeadCache wraps an
implementation to answer lookups from the local snapshot and keep that
snapshot current on writes. Lead dicts are keyed by Sharpspring system field
names throughout.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from src.sharpsync.sharpspring.schemas import ObjectResult


class RemoteLeadStore(ABC):
    """Abstract interface for lead create/update/read operations.

    Methods:
        create_leads: Create leads, return per-lead results in input order.
        update_leads: Update leads (each carrying "id"), return per-lead results.
        get_leads_changed_in_range: Fetch leads created/updated in a time range.
        get_lead: Fetch one lead by remote ID.
        get_leads_by_field: Fetch leads where a field equals a value.

    Create/update raise TransportError or ApiError when the whole call fails;
    per-lead failures are reported as error ObjectResults instead.
    """

    @abstractmethod
    async def create_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        """Create leads, return per-lead results in input order."""
        ...

    @abstractmethod
    async def update_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        """Update leads by "id", return per-lead results in input order."""
        ...

    @abstractmethod
    async def get_leads_changed_in_range(
        self,
        start: datetime,
        end: datetime,
        timestamp_field: str = "update",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch leads whose create/update timestamp falls in [start, end]."""
        ...

    @abstractmethod
    async def get_lead(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch one lead by remote ID, or None if it does not exist."""
        ...

    @abstractmethod
    async def get_leads_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Fetch leads where system field ``field`` equals ``value``."""
        ...
