"""Local cache of Sharpspring leads, to minimize API calls during a sync.

LocalLeadCache keeps a snapshot of remote leads in a LeadStore and is
refreshed incrementally by update timestamp. It answers "what does
Sharpspring currently hold for this contact" through compare(), and it
implements RemoteLeadStore itself as a write-through proxy: every create or
update that succeeds is copied into the snapshot, and every remote read
refreshes the entries it returns.

The snapshot is advisory. It is only current as of the last refresh (minus
the configured overlap), and getLeadsDateRange does not return inactive
leads, so inactive leads are only present if they were fetched individually.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.sharpsync.leads.store import LeadStore, index_value
from src.sharpsync.sharpspring.adapter import RemoteLeadStore
from src.sharpsync.sharpspring.field_mapping import LeadFieldMap
from src.sharpsync.sharpspring.schemas import (
    LEAD_STATUS_CONTACT_WITH_OPP,
    LeadRecord,
    ObjectResult,
)

logger = structlog.get_logger(__name__)

# Start of a "full" refresh; older than any lead in Sharpspring.
FULL_REFRESH_START = datetime(2000, 1, 1, tzinfo=timezone.utc)


class LeadDiff(BaseModel):
    """Result of comparing a candidate lead with the lead it links to.

    ``remote_id`` is None when no existing lead was found. Otherwise
    ``changes`` maps every system field whose candidate value differs to the
    currently cached value; fields the candidate does not define are never
    listed.
    """

    remote_id: str | None = None
    changes: dict[str, Any] = Field(default_factory=dict)

    @property
    def linked(self) -> bool:
        return self.remote_id is not None

    @property
    def is_equal(self) -> bool:
        return self.linked and not self.changes


def _comparable(field: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return index_value(field, value) if field == "emailAddress" else str(value).strip()


def values_equal(field: str, candidate_value: Any, cached_value: Any) -> bool:
    """Compare an outgoing value with a value as the API returns it (mostly strings)."""
    return _comparable(field, candidate_value) == _comparable(field, cached_value)


class LocalLeadCache(RemoteLeadStore):
    """Read-through, write-through cache of Sharpspring leads.

    Args:
        remote: The remote lead store (normally SharpSpringClient).
        store: Snapshot storage; must index the source ID field and "emailAddress".
        field_map: Property <-> system field name mapping.
    """

    def __init__(self, remote: RemoteLeadStore, store: LeadStore, field_map: LeadFieldMap) -> None:
        self._remote = remote
        self._store = store
        self._field_map = field_map

    @property
    def field_map(self) -> LeadFieldMap:
        return self._field_map

    # ── Refresh / snapshot access ───────────────────────────────────────

    async def refresh(self, since: datetime | None, limit: int | None = None) -> int:
        """Fetch leads changed since ``since`` into the snapshot.

        Args:
            since: Lower bound of the update timestamp. None means a full
                refresh: the snapshot is replaced by the fetched leads.
            limit: Optional maximum number of leads to fetch.

        Returns:
            Number of leads fetched.

        Raises:
            TransportError / ApiError: If the remote call fails. The snapshot
                is left as it was.
        """
        now = datetime.now(timezone.utc)
        leads = await self._remote.get_leads_changed_in_range(
            since or FULL_REFRESH_START, now, "update", limit
        )
        if since is None:
            await self._store.clear()
        for lead in leads:
            await self._store.set(lead)
        logger.info(
            "lead_cache.refreshed",
            full=since is None,
            since=since.isoformat() if since else None,
            count=len(leads),
        )
        return len(leads)

    async def upsert(self, lead: dict[str, Any], merge: bool = True) -> None:
        """Store a lead after a confirmed write.

        With ``merge``, the given (possibly partial) fields are merged into
        the existing cached entry.
        """
        if merge:
            existing = await self._store.get(str(lead["id"]))
            if existing:
                lead = {**existing, **lead}
        await self._store.set(lead)

    async def iter_cached(self, page_size: int = 1024) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield all cached leads in pages."""
        offset = 0
        while True:
            page = await self._store.get_all_batched(page_size, offset)
            if page:
                yield page
            if len(page) < page_size:
                return
            offset += page_size

    # ── Lookups ─────────────────────────────────────────────────────────

    async def lookup_by_foreign_key(self, source_id: str) -> list[dict[str, Any]]:
        """Return cached leads holding this source ID (duplicates are possible)."""
        return await self._store.find(self._field_map.source_id_field, source_id)

    async def lookup_by_email(self, email: str) -> dict[str, Any] | None:
        """Return the cached lead holding this e-mail address."""
        leads = await self._store.find("emailAddress", email)
        if len(leads) > 1:
            # Sharpspring does not allow this; our snapshot is out of date.
            logger.warning(
                "lead_cache.duplicate_email",
                email=email,
                remote_ids=[lead.get("id") for lead in leads],
            )
        return leads[0] if leads else None

    async def compare(self, candidate: LeadRecord, allow_remote_fallback: bool = False) -> LeadDiff:
        """Compare a candidate lead against the lead it links to.

        The link is found by source ID first, then by e-mail address in the
        snapshot, then (if ``allow_remote_fallback``) by e-mail address in
        Sharpspring itself. That last lookup costs an API call; it is only
        useful when the snapshot is known to miss leads, i.e. inactive ones.

        If several leads hold the same source ID, the one that is equal to
        the candidate wins, otherwise the first one.

        A cached leadStatus of "contactWithOpp" cannot be changed back, so a
        difference in leadStatus is ignored in that case.
        """
        matches: list[dict[str, Any]] = []
        if candidate.source_id:
            matches = await self.lookup_by_foreign_key(candidate.source_id)
        if not matches and candidate.email_address:
            lead = await self.lookup_by_email(candidate.email_address)
            matches = [lead] if lead else []
        if not matches and allow_remote_fallback and candidate.email_address:
            matches = await self.get_leads_by_field("emailAddress", candidate.email_address)
        if not matches:
            return LeadDiff()

        fields = candidate.to_fields(self._field_map)
        fields.pop("id", None)
        diffs = [self._diff(fields, cached) for cached in matches]
        for diff in diffs:
            if diff.is_equal:
                return diff
        return diffs[0]

    @staticmethod
    def _diff(fields: dict[str, Any], cached: dict[str, Any]) -> LeadDiff:
        changes = {
            field: cached.get(field)
            for field, value in fields.items()
            if not values_equal(field, value, cached.get(field))
        }
        if changes.get("leadStatus") == LEAD_STATUS_CONTACT_WITH_OPP:
            del changes["leadStatus"]
        return LeadDiff(remote_id=str(cached["id"]), changes=changes)

    # ── RemoteLeadStore proxy ───────────────────────────────────────────

    async def create_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        results = await self._remote.create_leads(leads)
        for lead, result in zip(leads, results):
            if result.success and result.remote_id:
                await self.upsert({**lead, "id": result.remote_id}, merge=False)
        return results

    async def update_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        results = await self._remote.update_leads(leads)
        for lead, result in zip(leads, results):
            if result.success:
                await self.upsert(lead)
        return results

    async def get_leads_changed_in_range(
        self,
        start: datetime,
        end: datetime,
        timestamp_field: str = "update",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        leads = await self._remote.get_leads_changed_in_range(start, end, timestamp_field, limit)
        for lead in leads:
            await self._store.set(lead)
        return leads

    async def get_lead(self, remote_id: str) -> dict[str, Any] | None:
        lead = await self._remote.get_lead(remote_id)
        if lead:
            await self._store.set(lead)
        return lead

    async def get_leads_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        leads = await self._remote.get_leads_by_field(field, value)
        for lead in leads:
            await self._store.set(lead)
        return leads
