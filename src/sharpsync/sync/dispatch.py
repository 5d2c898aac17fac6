"""Batching and sending of reconciled lead actions."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from src.sharpsync.leads.cache import LeadDiff, LocalLeadCache
from src.sharpsync.sharpspring.errors import SharpSpringError
from src.sharpsync.sharpspring.schemas import (
    ERROR_ENTRY_EXISTS,
    ERROR_NO_ROWS_AFFECTED,
    LeadRecord,
    ObjectResult,
)
from src.sharpsync.sync.errors import InternalInvariantError
from src.sharpsync.sync.reconcile import LeadState
from src.sharpsync.sync.schemas import ActionCode, LeadBatch, SyncContext

logger = structlog.get_logger(__name__)


def _chunked(leads: list[LeadRecord], size: int) -> list[list[LeadRecord]]:
    return [leads[i:i + size] for i in range(0, len(leads), size)]


def build_batches(
    states: Iterable[LeadState],
    context: SyncContext,
    batch_size: int,
) -> list[LeadBatch]:
    """Turn reconciled states into queued batches; record what is not sent.

    All update batches come before all create batches, so that a contact
    taking over an e-mail address from a renamed lead is created after the
    rename.

    Raises:
        InternalInvariantError: If a create targets a remote ID, or another
            sending action has none.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    updates: list[LeadRecord] = []
    creates: list[LeadRecord] = []
    for state in states:
        code = state.code
        if code == ActionCode.SKIP_DUPLICATE_INACTIVE:
            context.dupes_ignored.append(state.source_id)
        elif code.is_skipped:
            context.skipped.append(state.source_id)
        elif code == ActionCode.NOOP_EQUAL:
            context.equal.append(state.source_id)
        elif code == ActionCode.CREATE:
            if state.remote_id:
                raise InternalInvariantError(
                    f"Contact {state.source_id} is to be created but links to "
                    f"Sharpspring ID {state.remote_id}"
                )
            creates.append(state.lead.model_copy(update={"id": None}))
        else:
            if not state.remote_id:
                raise InternalInvariantError(
                    f"Contact {state.source_id} is to be updated (action {code.name}) "
                    f"but has no Sharpspring ID"
                )
            updates.append(state.lead.model_copy(update={"id": state.remote_id}))

    batches = [LeadBatch(operation="update", leads=chunk) for chunk in _chunked(updates, batch_size)]
    batches += [LeadBatch(operation="create", leads=chunk) for chunk in _chunked(creates, batch_size)]
    return batches


class BatchDispatcher:
    """Sends queued batches through the leads cache and accounts for results.

    Args:
        cache: Leads cache; used as the (write-through) remote store and to
            re-check failed leads.
        wait_seconds: Pause after every call, to stay within API rate limits.
    """

    def __init__(self, cache: LocalLeadCache, wait_seconds: float = 0) -> None:
        self._cache = cache
        self._wait_seconds = wait_seconds

    async def process(self, batch: LeadBatch, context: SyncContext) -> None:
        """Send one batch and record each lead as sent or error.

        A failure of the call as a whole marks all leads in the batch as
        error; it is not raised.

        Raises:
            InternalInvariantError: If the batch is empty or mixes leads with
                and without Sharpspring ID.
        """
        if not batch.leads:
            raise InternalInvariantError("Empty batch queued")
        creating = batch.operation == "create"
        if any((lead.id is None) != creating for lead in batch.leads):
            raise InternalInvariantError(
                f"{batch.operation} batch contains leads "
                f"{'with' if creating else 'without'} Sharpspring ID"
            )

        field_map = self._cache.field_map
        payload = [lead.to_fields(field_map) for lead in batch.leads]
        try:
            if creating:
                results = await self._cache.create_leads(payload)
            else:
                results = await self._cache.update_leads(payload)
        except SharpSpringError as exc:
            logger.error(
                "dispatch.batch_failed",
                operation=batch.operation,
                count=len(batch.leads),
                error=str(exc),
            )
            context.notices.append(
                f"Sending {len(batch.leads)} contact(s) to Sharpspring failed: {exc}"
            )
            for lead in batch.leads:
                context.error.append(lead.source_id or lead.id or "")
        else:
            for lead, result in zip(batch.leads, results):
                await self._account(lead, result, context)

        if self._wait_seconds:
            await asyncio.sleep(self._wait_seconds)

    async def _account(self, lead: LeadRecord, result: ObjectResult, context: SyncContext) -> None:
        remote_id = lead.id or result.remote_id
        source_id = lead.source_id or remote_id or ""
        if result.success:
            if remote_id:
                context.sent[remote_id] = source_id
                if not lead.active:
                    context.sent_inactive.append(remote_id)
            else:
                context.sent_unkeyed.append(source_id)
            return

        context.error.append(source_id)
        error = result.error
        code = error.code if error else 0
        message = error.message if error else ""

        # "Entry already exists" / "no rows affected" usually mean the cache
        # was out of date; look at the actual lead to tell.
        diff = None
        if code in (ERROR_ENTRY_EXISTS, ERROR_NO_ROWS_AFFECTED):
            try:
                diff = await self._recheck(lead)
            except SharpSpringError as exc:
                logger.warning("dispatch.recheck_failed", source_id=source_id, error=str(exc))

        if diff is not None and diff.is_equal:
            logger.warning(
                "dispatch.lead_already_equal",
                source_id=source_id,
                remote_id=remote_id,
                error_code=code,
            )
            context.notices.append(
                f"Contact {lead.description()} (source ID {source_id}) was not updated "
                f"but is already equal in Sharpspring; the leads cache was outdated."
            )
        elif diff is not None and not diff.linked and not lead.active:
            logger.warning(
                "dispatch.inactive_lead_missing",
                source_id=source_id,
                remote_id=remote_id,
                error_code=code,
            )
            context.notices.append(
                f"Contact {lead.description()} (source ID {source_id}) could not be "
                f"deactivated because it does not exist in Sharpspring anymore."
            )
        else:
            logger.error(
                "dispatch.lead_failed",
                source_id=source_id,
                remote_id=remote_id,
                error_code=code,
                error_message=message,
            )
            context.notices.append(
                f"Sharpspring returned error {code} ({message}) for contact "
                f"{lead.description()} (source ID {source_id})."
            )

    async def _recheck(self, lead: LeadRecord) -> LeadDiff:
        if lead.id:
            found = bool(await self._cache.get_lead(lead.id))
        elif lead.email_address:
            found = bool(await self._cache.get_leads_by_field("emailAddress", lead.email_address))
        else:
            found = False
        if not found:
            return LeadDiff()
        return await self._cache.compare(lead)
