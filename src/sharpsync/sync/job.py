"""Sharpspring lead sync job.

Synchronizes contacts from a source system into Sharpspring leads, in three
phases driven by a host (queue runner, cron script):

1. start(): refresh the local leads cache, fetch source contacts, reconcile
   them and return batches of leads to create/update.
2. process_one(): send one batch. The host may call this from a queue, any
   time later; all run state lives in the SyncContext.
3. finish(): verify that sent leads actually changed in Sharpspring, and
   return a summary message.

preview() runs phase 1 without queueing anything and returns one display row
per lead, including the action code that would be applied.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from apscheduler.triggers.cron import CronTrigger

from src.sharpsync.config import Settings, get_settings
from src.sharpsync.core.redis import get_redis_pool
from src.sharpsync.leads.cache import LocalLeadCache, values_equal
from src.sharpsync.leads.store import LeadStore, RedisLeadStore, RedisSettingStore, SettingStore
from src.sharpsync.observability.metrics import sync_leads_total
from src.sharpsync.sharpspring.adapter import RemoteLeadStore
from src.sharpsync.sharpspring.client import SharpSpringClient
from src.sharpsync.sharpspring.errors import SharpSpringError
from src.sharpsync.sharpspring.field_mapping import LeadFieldMap
from src.sharpsync.sync.dispatch import BatchDispatcher, build_batches
from src.sharpsync.sync.errors import InternalInvariantError
from src.sharpsync.sync.reconcile import ReconciliationRegistry, Reconciler
from src.sharpsync.sync.schemas import ActionCode, LeadBatch, SyncContext, SyncJobOptions
from src.sharpsync.sync.source import ContactMapper, ContactSource

logger = structlog.get_logger(__name__)

# Setting holding the Unix timestamp of the last successful cache refresh.
LAST_REFRESH_SETTING = "ts_kvupdate"
# leads_refresh_from value that disables refreshing the cache.
SKIP_REFRESH = "-"


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


class SharpSpringSyncJob:
    """Synchronizes source contacts into Sharpspring leads.

    Args:
        source: Source of contacts.
        remote: Sharpspring lead store (normally SharpSpringClient).
        lead_store: Storage for the local leads cache.
        setting_store: Storage for job settings (last refresh timestamp).
        field_map: Lead property <-> system field mapping.
        mapper: Converts source contacts into candidate leads.
        options: Job options; ``incremental`` defaults to the source's.
        settings: Application settings.
    """

    def __init__(
        self,
        source: ContactSource,
        remote: RemoteLeadStore,
        lead_store: LeadStore,
        setting_store: SettingStore,
        field_map: LeadFieldMap,
        mapper: ContactMapper | None = None,
        options: SyncJobOptions | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._source = source
        self._remote = remote
        self._setting_store = setting_store
        self._mapper = mapper or ContactMapper()
        self._options = options or SyncJobOptions(incremental=source.incremental)
        self._settings = settings or get_settings()
        self._cache = LocalLeadCache(remote, lead_store, field_map)
        self._dispatcher = BatchDispatcher(self._cache, self._settings.LEADS_UPDATE_WAIT)

    @classmethod
    def from_settings(
        cls,
        source: ContactSource,
        mapper: ContactMapper | None = None,
        options: SyncJobOptions | None = None,
        settings: Settings | None = None,
    ) -> SharpSpringSyncJob:
        """Build a job using the Sharpspring API and the Redis leads cache."""
        settings = settings or get_settings()
        options = options or SyncJobOptions(incremental=source.incremental)
        field_map = LeadFieldMap(settings.SHARPSPRING_LEAD_CUSTOM_PROPERTIES)
        redis = get_redis_pool()
        return cls(
            source=source,
            remote=SharpSpringClient(
                account_id=settings.SHARPSPRING_ACCOUNT_ID,
                secret_key=settings.SHARPSPRING_SECRET_KEY,
                base_url=settings.SHARPSPRING_API_URL,
                timeout=settings.SHARPSPRING_TIMEOUT,
            ),
            lead_store=RedisLeadStore(
                redis, options.job_id, (field_map.source_id_field, "emailAddress")
            ),
            setting_store=RedisSettingStore(redis, options.job_id),
            field_map=field_map,
            mapper=mapper,
            options=options,
            settings=settings,
        )

    @property
    def cache(self) -> LocalLeadCache:
        return self._cache

    # ── Phases ──────────────────────────────────────────────────────────

    async def start(self, context: SyncContext) -> list[LeadBatch]:
        """Reconcile source contacts and return the batches to send."""
        registry = await self._reconcile(context)
        batches = build_batches(registry.states, context, self._settings.LEADS_UPDATE_LIMIT)
        logger.info(
            "sync_job.started",
            job_id=self._options.job_id,
            batches=len(batches),
            skipped=len(context.skipped),
            equal=len(context.equal),
            inactive=len(context.inactive),
            dupes_ignored=len(context.dupes_ignored),
            remove=len(context.remove),
        )
        return batches

    async def process_one(self, batch: LeadBatch, context: SyncContext) -> None:
        await self._dispatcher.process(batch, context)

    async def finish(self, context: SyncContext) -> str:
        """Verify sent leads, record metrics and return the summary message."""
        if context.sent:
            await self._verify_sent(context)

        summary = self.summarize(context)
        for outcome, count in self._outcome_counts(context).items():
            if count:
                sync_leads_total.labels(job_id=self._options.job_id, outcome=outcome).inc(count)
        logger.info("sync_job.finished", job_id=self._options.job_id, summary=summary)
        return summary

    async def preview(self, context: SyncContext) -> list[dict[str, Any]]:
        """Reconcile without queueing; return one display row per lead.

        Rows are keyed by lead property name, plus "*ssid" (the targeted
        Sharpspring ID) and "*action" (the ActionCode value). Changed values
        are shown as "old → new" if display_changed_values is set.
        """
        registry = await self._reconcile(context)
        options = self._options
        field_map = self._cache.field_map

        rows = []
        for state in registry.states:
            if state.code == ActionCode.NOOP_EQUAL and not (options.include_noops or options.incremental):
                continue
            if state.code == ActionCode.SKIP_DUPLICATE_INACTIVE and not options.include_clashes:
                continue

            row = field_map.from_system_fields(state.lead.to_fields(field_map))
            if options.display_changed_values and state.code > ActionCode.SKIP_INVALID:
                for system_name, old_value in state.diff.changes.items():
                    prop = field_map.property_name(system_name)
                    old = "-" if old_value in (None, "") else old_value
                    row[prop] = f"{old} → {row.get(prop, '')}"
            row["*ssid"] = state.remote_id or ""
            row["*action"] = int(state.code)
            rows.append(row)
        return rows

    # ── Reconciliation / cache refresh ──────────────────────────────────

    async def _reconcile(self, context: SyncContext) -> ReconciliationRegistry:
        options = self._options
        await self._refresh_cache(context)
        context.dispatch_started_at = datetime.now(timezone.utc)

        contacts = await self._source.fetch_contacts()
        reconciler = Reconciler(
            self._cache,
            self._mapper,
            # A remote lookup per inactive contact is too expensive on full runs.
            allow_remote_fallback=options.doublecheck_remotely and options.incremental,
            page_size=self._settings.LEADS_CACHE_PAGE_SIZE,
        )
        return await reconciler.reconcile(
            contacts, context, detect_removals=not options.incremental
        )

    async def _refresh_cache(self, context: SyncContext) -> None:
        if self._options.leads_refresh_from == SKIP_REFRESH:
            logger.info("sync_job.cache_refresh_skipped", job_id=self._options.job_id)
            return

        refreshed_at = datetime.now(timezone.utc)
        since = await self.cache_refresh_since()
        try:
            await self._cache.refresh(since)
        except SharpSpringError as exc:
            # Continue with the cache as it is; the next run refreshes from
            # the same point in time.
            logger.warning(
                "sync_job.cache_refresh_failed", job_id=self._options.job_id, error=str(exc)
            )
            return
        context.cache_refreshed_at = refreshed_at
        await self._setting_store.set_int(LAST_REFRESH_SETTING, int(refreshed_at.timestamp()))

    async def cache_refresh_since(self) -> datetime | None:
        """Return the lower bound for the cache refresh; None for a full refresh.

        Raises:
            InternalInvariantError: If leads_refresh_from is not a valid date.
        """
        options = self._options
        if options.leads_refresh_full:
            return None

        if options.leads_refresh_from:
            if options.leads_refresh_from.startswith("--"):
                raise InternalInvariantError(
                    f"Invalid leads_refresh_from value '{options.leads_refresh_from}'"
                )
            try:
                since = datetime.fromisoformat(options.leads_refresh_from)
            except ValueError:
                raise InternalInvariantError(
                    f"leads_refresh_from '{options.leads_refresh_from}' is not a valid date"
                ) from None
            return since if since.tzinfo else since.replace(tzinfo=timezone.utc)

        last_refresh = await self._setting_store.get_int(LAST_REFRESH_SETTING)
        if not last_refresh:
            return None
        since = datetime.fromtimestamp(
            last_refresh - self._settings.KEYVALUE_UPDATE_OVERLAP, tz=timezone.utc
        )
        if options.honor_refresh_schedule and self._full_refresh_due(since):
            logger.info("sync_job.full_refresh_scheduled", job_id=options.job_id)
            return None
        return since

    def _full_refresh_due(self, since: datetime) -> bool:
        """True if the refresh schedule fired between ``since`` and now."""
        schedule = self._settings.KEYVALUE_REFRESH_SCHEDULE
        if not schedule:
            return False
        trigger = CronTrigger.from_crontab(schedule, timezone=timezone.utc)
        next_fire = trigger.get_next_fire_time(None, since)
        return next_fire is not None and next_fire <= datetime.now(timezone.utc)

    # ── Post-check / summary ────────────────────────────────────────────

    async def _verify_sent(self, context: SyncContext) -> None:
        """Check that every sent lead shows up as updated since the dispatch started."""
        if context.dispatch_started_at is None:
            logger.error("sync_job.dispatch_start_missing", job_id=self._options.job_id)
            context.notices.append(
                "Start time of sending contacts was lost; sent contacts are not verified."
            )
            return

        use_cache = self._options.leads_refresh_from != SKIP_REFRESH
        store: RemoteLeadStore = self._cache if use_cache else self._remote
        now = datetime.now(timezone.utc)
        since = context.dispatch_started_at - timedelta(
            seconds=self._settings.KEYVALUE_UPDATE_OVERLAP
        )
        try:
            leads = await store.get_leads_changed_in_range(
                since, now, "update", self._settings.LEADS_CHANGED_FETCH_LIMIT
            )
        except SharpSpringError as exc:
            logger.error("sync_job.verify_failed", job_id=self._options.job_id, error=str(exc))
            context.notices.append(f"Sent contacts could not be verified: {exc}")
            return
        if use_cache and context.cache_refreshed_at and context.cache_refreshed_at >= since:
            # The cache now holds everything changed since the refresh in start().
            await self._setting_store.set_int(LAST_REFRESH_SETTING, int(now.timestamp()))

        returned = {str(lead.get("id")) for lead in leads}
        context.unconfirmed = {
            remote_id: source_id
            for remote_id, source_id in context.sent.items()
            if remote_id not in returned
        }
        # getLeadsDateRange leaves out inactive leads; check deactivations one by one.
        for remote_id in [r for r in context.unconfirmed if r in context.sent_inactive]:
            try:
                lead = await store.get_lead(remote_id)
            except SharpSpringError as exc:
                logger.warning(
                    "sync_job.verify_deactivation_failed",
                    job_id=self._options.job_id,
                    remote_id=remote_id,
                    error=str(exc),
                )
                continue
            if lead and values_equal("active", lead.get("active"), 0):
                del context.unconfirmed[remote_id]
        if context.unconfirmed:
            pairs = ", ".join(f"{src}/{ss}" for ss, src in context.unconfirmed.items())
            logger.error(
                "sync_job.sent_leads_unconfirmed",
                job_id=self._options.job_id,
                count=len(context.unconfirmed),
                pairs=pairs,
            )
            context.notices.append(
                f"{_plural(len(context.unconfirmed), 'contact', 'contacts')} reported as "
                f"sent did not show up as updated in Sharpspring (src/ss): {pairs}"
            )

    @staticmethod
    def _outcome_counts(context: SyncContext) -> dict[str, int]:
        return {
            "sent": context.sent_count,
            "removed": len(context.remove),
            "skipped": len(context.skipped),
            "error": len(context.error),
            "exception": context.exception_count,
            "equal": len(context.equal),
            "inactive": len(context.inactive),
            "dupes_ignored": len(context.dupes_ignored),
            "unconfirmed": len(context.unconfirmed),
        }

    @staticmethod
    def summarize(context: SyncContext) -> str:
        """Build the human readable one-line summary of a run."""
        message = f"{_plural(context.sent_count, 'contact', 'contacts')} sent to Sharpspring"
        if context.remove:
            message += (
                f", {len(context.remove)} of which were deactivated because apparently "
                f"removed from the source system"
            )
        if context.skipped:
            message += (
                f"; {len(context.skipped)} not sent because errors / update clashes "
                f"seen beforehand"
            )
        if context.error:
            message += f"; {_plural(len(context.error), 'error', 'errors')} encountered during sending"
        if context.exception_count:
            message += (
                f"; {_plural(context.exception_count, 'exception', 'exceptions')} "
                f"thrown during sending"
            )
        if context.equal:
            message += f"; {len(context.equal)} not sent because seemingly equal"
        if context.inactive:
            message += f"; {len(context.inactive)} not sent because inactive"
        if context.dupes_ignored:
            message += f"; {len(context.dupes_ignored)} duplicate (inactive) contacts ignored"
        return message + "."
