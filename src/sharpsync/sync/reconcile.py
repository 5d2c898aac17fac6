"""Reconciliation of source contacts against the cached Sharpspring leads.

For every source contact, decide what to do with its lead: nothing, create,
update or deactivate. The hard part is that Sharpspring enforces unique
e-mail addresses while the source system does not, and that several source
contacts can link to the same lead. Two updates that would clash in
Sharpspring must not both be sent; the ActionCode order decides which one
wins, and the losing contact is logged (or silently dropped if it is an
inactive duplicate).

Key implementation details:
- classify() is a pure function of the candidate lead and its LeadDiff
- ReconciliationRegistry keeps every registered lead plus two indexes
  (remote ID -> lead, lowercased e-mail -> lead) and resolves clashes as
  leads are added, in input order
- Reconciler drives a full pass and, for full runs, adds deactivations for
  cached leads whose source contact disappeared
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from src.sharpsync.leads.cache import LeadDiff, LocalLeadCache, values_equal
from src.sharpsync.leads.store import index_value
from src.sharpsync.sharpspring.errors import LeadValidationError
from src.sharpsync.sharpspring.schemas import (
    LEAD_STATUS_CONTACT,
    LEAD_STATUS_CONTACT_WITH_OPP,
    LeadRecord,
    as_bool,
)
from src.sharpsync.sync.errors import InternalInvariantError
from src.sharpsync.sync.schemas import ActionCode, SyncContext
from src.sharpsync.sync.source import ContactMapper

logger = structlog.get_logger(__name__)


def classify(
    lead: LeadRecord,
    diff: LeadDiff,
    source_id_field: str,
    preset: ActionCode | None = None,
) -> ActionCode | None:
    """Decide the action for one lead, disregarding other leads.

    Args:
        lead: Candidate lead built from the source contact.
        diff: Result of comparing the candidate with the cache.
        source_id_field: System field name of the source ID.
        preset: Code already decided before comparing (SKIP_INVALID).

    Returns:
        The action code, or None if the contact is inactive and its lead is
        inactive or absent too (nothing to do, counted as "inactive").
    """
    if not diff.linked:
        if not lead.active:
            return None
        return preset or ActionCode.CREATE

    if not lead.active:
        # "active" is only listed in changes if it differs; then the cached
        # value tells whether the lead still needs deactivating.
        if not as_bool(diff.changes.get("active")):
            return None
        return ActionCode.DEACTIVATE

    if preset:
        return preset
    if diff.is_equal:
        return ActionCode.NOOP_EQUAL
    if "emailAddress" in diff.changes:
        return ActionCode.UPDATE_EMAIL
    if source_id_field in diff.changes:
        return ActionCode.UPDATE_SOURCE_ID
    return ActionCode.UPDATE_OTHER


@dataclass
class LeadState:
    """A registered lead and the action decided for it.

    ``remote_id`` is the Sharpspring ID the action targets: None for creates,
    otherwise the linked lead. It is kept for skipped leads too (for display).
    """

    lead: LeadRecord
    remote_id: str | None
    code: ActionCode
    diff: LeadDiff

    @property
    def source_id(self) -> str:
        return self.lead.source_id or ""


class ReconciliationRegistry:
    """Ordered registry of lead actions with clash resolution.

    Args:
        notices: List to append human readable clash messages to.
    """

    def __init__(self, notices: list[str] | None = None) -> None:
        self.states: list[LeadState] = []
        self.notices = notices if notices is not None else []
        self._by_remote_id: dict[str, int] = {}
        self._by_email: dict[str, int] = {}

    def claims_remote_id(self, remote_id: str) -> bool:
        return str(remote_id) in self._by_remote_id

    def add(self, lead: LeadRecord, diff: LeadDiff, code: ActionCode) -> LeadState:
        """Register a classified lead, resolving clashes with earlier leads.

        Codes of this lead and of earlier leads may be changed. Rewriting an
        update into a create detaches it from its remote ID.

        Raises:
            InternalInvariantError: If ``code`` is not set.
        """
        if not code:
            raise InternalInvariantError(f"No action decided for contact {lead.source_id}")

        code = self._resolve_remote_id_clash(lead, diff, code)
        code = self._resolve_email_clash(lead, code)
        self._resolve_vacated_email(lead, diff)

        remote_id = None if code == ActionCode.CREATE else diff.remote_id
        return self._register(LeadState(lead=lead, remote_id=remote_id, code=code, diff=diff))

    def add_removed(self, lead: LeadRecord) -> LeadState:
        """Register the deactivation of a lead whose source contact is gone."""
        if not lead.id:
            raise InternalInvariantError("Removed lead has no Sharpspring ID")
        return self._register(
            LeadState(
                lead=lead,
                remote_id=lead.id,
                code=ActionCode.DEACTIVATE_REMOVED,
                diff=LeadDiff(remote_id=lead.id, changes={"active": 1}),
            )
        )

    def _register(self, state: LeadState) -> LeadState:
        position = len(self.states)
        self.states.append(state)
        claims = state.code > ActionCode.SKIP_INVALID

        if state.remote_id and (claims or state.remote_id not in self._by_remote_id):
            self._by_remote_id[state.remote_id] = position
        email = index_value("emailAddress", state.lead.email_address)
        if email and (claims or email not in self._by_email):
            self._by_email[email] = position
        return state

    # ── Clash resolution ────────────────────────────────────────────────

    def _resolve_remote_id_clash(
        self, lead: LeadRecord, diff: LeadDiff, code: ActionCode
    ) -> ActionCode:
        if code <= ActionCode.SKIP_DUPLICATE_CLASH or not diff.linked:
            return code
        position = self._by_remote_id.get(diff.remote_id)
        if position is None:
            return code
        other = self.states[position]

        # A contact that changed its e-mail address and another contact that
        # took over the old address: both are linked to the same lead. The
        # lead keeps its source ID and the other contact becomes a new lead.
        if code == ActionCode.UPDATE_SOURCE_ID and other.code == ActionCode.UPDATE_EMAIL:
            return ActionCode.CREATE
        if code == ActionCode.UPDATE_EMAIL and other.code == ActionCode.UPDATE_SOURCE_ID:
            other.code = ActionCode.CREATE
            other.remote_id = None
            return code

        return self._resolve_clash(lead, code, other, "linked to the same Sharpspring contact")

    def _resolve_email_clash(self, lead: LeadRecord, code: ActionCode) -> ActionCode:
        email = index_value("emailAddress", lead.email_address)
        if code <= ActionCode.SKIP_DUPLICATE_CLASH or not email:
            return code
        position = self._by_email.get(email)
        if position is None:
            return code
        return self._resolve_clash(
            lead, code, self.states[position], "with the same e-mail address"
        )

    def _resolve_clash(
        self, lead: LeadRecord, code: ActionCode, other: LeadState, reason: str
    ) -> ActionCode:
        if other.code <= ActionCode.SKIP_DUPLICATE_CLASH:
            return code
        if code <= other.code:
            if code == ActionCode.DEACTIVATE:
                return ActionCode.SKIP_DUPLICATE_INACTIVE
            self._log_clash(kept=other.lead, skipped=lead, reason=reason)
            return ActionCode.SKIP_DUPLICATE_CLASH

        if other.code == ActionCode.DEACTIVATE:
            other.code = ActionCode.SKIP_DUPLICATE_INACTIVE
        else:
            self._log_clash(kept=lead, skipped=other.lead, reason=reason)
            other.code = ActionCode.SKIP_DUPLICATE_CLASH
        return code

    def _resolve_vacated_email(self, lead: LeadRecord, diff: LeadDiff) -> None:
        """Cancel an earlier update that claims the address this lead gives up.

        Updates are sent in input order, so the earlier update would be sent
        while the address still belongs to this lead, and fail. Creates are
        sent after all updates and are not affected.
        """
        vacated = diff.changes.get("emailAddress")
        if not vacated or values_equal("emailAddress", vacated, lead.email_address):
            return
        position = self._by_email.get(index_value("emailAddress", vacated))
        if position is None:
            return
        other = self.states[position]
        if other.code <= ActionCode.SKIP_INVALID or other.code == ActionCode.CREATE:
            return

        message = (
            f"Contact {other.lead.description()} (source ID {other.source_id}) is not "
            f"updated because its e-mail address is still in use by another contact, "
            f"which changes it to {lead.email_address} in this run. It should be updated "
            f"in the next run."
        )
        logger.warning(
            "reconcile.email_still_in_use",
            source_id=other.source_id,
            other_source_id=lead.source_id,
            email=vacated,
        )
        self.notices.append(message)
        other.code = ActionCode.SKIP_DUPLICATE_CLASH

    def _log_clash(self, kept: LeadRecord, skipped: LeadRecord, reason: str) -> None:
        message = (
            f"Source contacts {kept.source_id} and {skipped.source_id} are duplicate "
            f"records {reason}; only the first is sent. ({skipped.description()})"
        )
        logger.warning(
            "reconcile.duplicate_records",
            kept_source_id=kept.source_id,
            skipped_source_id=skipped.source_id,
            reason=reason,
        )
        self.notices.append(message)


class Reconciler:
    """Runs one reconciliation pass over source contacts.

    Args:
        cache: Leads cache to compare against.
        mapper: Converts source contacts to candidate leads.
        allow_remote_fallback: Look up contacts missing from the cache in
            Sharpspring by e-mail address.
        page_size: Page size for iterating the cache during removal detection.
    """

    def __init__(
        self,
        cache: LocalLeadCache,
        mapper: ContactMapper,
        allow_remote_fallback: bool = False,
        page_size: int = 1024,
    ) -> None:
        self._cache = cache
        self._mapper = mapper
        self._allow_remote_fallback = allow_remote_fallback
        self._page_size = page_size

    async def reconcile(
        self,
        contacts: Iterable[dict[str, Any]],
        context: SyncContext,
        detect_removals: bool = False,
    ) -> ReconciliationRegistry:
        """Classify all contacts and register their actions.

        Contacts that cannot be converted, and inactive contacts without
        active lead, are recorded in ``context`` and not registered.

        Args:
            contacts: Source contacts, in the order they should be processed.
            context: Run context; receives skipped/inactive entries and notices.
            detect_removals: True if ``contacts`` is the complete source
                population; cached leads not linked to any of them are then
                deactivated.
        """
        registry = ReconciliationRegistry(notices=context.notices)
        seen_source_ids: set[str] = set()

        for contact in contacts:
            source_id = self._mapper.source_id(contact)
            if source_id:
                seen_source_ids.add(source_id)
            try:
                lead = self._mapper.to_lead(contact)
            except LeadValidationError as exc:
                logger.error("reconcile.invalid_contact", source_id=source_id, error=str(exc))
                context.notices.append(f"Contact could not be converted: {exc}")
                context.skipped.append(source_id or "")
                continue
            await self._process(lead, registry, context)

        if detect_removals:
            await self._add_removed(registry, seen_source_ids, context)

        logger.info(
            "reconcile.completed",
            registered=len(registry.states),
            inactive=len(context.inactive),
            removed=len(context.remove),
        )
        return registry

    async def _process(
        self, lead: LeadRecord, registry: ReconciliationRegistry, context: SyncContext
    ) -> None:
        preset = None
        if not lead.email_address:
            if lead.active:
                logger.error("reconcile.missing_email", source_id=lead.source_id)
                context.notices.append(
                    f"Contact {lead.description()} (source ID {lead.source_id}) has no "
                    f"e-mail address and is not sent."
                )
            preset = ActionCode.SKIP_INVALID

        lead.lead_status = LEAD_STATUS_CONTACT
        diff = await self._cache.compare(lead, self._allow_remote_fallback)
        code = classify(lead, diff, self._cache.field_map.source_id_field, preset)
        if code is None:
            context.inactive.append(lead.source_id or "")
            return
        registry.add(lead, diff, code)

    async def _add_removed(
        self,
        registry: ReconciliationRegistry,
        seen_source_ids: set[str],
        context: SyncContext,
    ) -> None:
        field_map = self._cache.field_map
        source_id_field = field_map.source_id_field

        async for page in self._cache.iter_cached(self._page_size):
            for cached in page:
                source_id = index_value(source_id_field, cached.get(source_id_field))
                if (
                    not source_id
                    or source_id in seen_source_ids
                    or registry.claims_remote_id(str(cached["id"]))
                    or not as_bool(cached.get("active"))
                    or cached.get("leadStatus")
                    not in (LEAD_STATUS_CONTACT, LEAD_STATUS_CONTACT_WITH_OPP)
                ):
                    continue

                lead = LeadRecord(
                    id=cached["id"],
                    source_id=source_id,
                    email_address=cached.get("emailAddress"),
                    active=False,
                    fields={
                        name: cached[name]
                        for name in ("firstName", "lastName", "companyName")
                        if cached.get(name)
                    },
                )
                context.remove.append(source_id)
                registry.add_removed(lead)
                logger.info(
                    "reconcile.lead_removed_from_source",
                    source_id=source_id,
                    remote_id=lead.id,
                )
