"""End-to-end tests for SharpSpringSyncJob.

Runs start() / process_one() / finish() against FakeRemoteLeadStore with
in-memory cache and settings stores.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from src.sharpsync.leads.cache import FULL_REFRESH_START
from src.sharpsync.sharpspring.errors import TransportError
from src.sharpsync.sync.errors import InternalInvariantError
from src.sharpsync.sync.job import LAST_REFRESH_SETTING, SharpSpringSyncJob
from src.sharpsync.sync.schemas import ActionCode, SyncContext, SyncJobOptions
from src.sharpsync.sync.source import ContactMapper, StaticContactSource
from tests.fakes import OLD_TIMESTAMP, SRC, remote_lead


def _contact(source_id, email, active=True, first_name=None) -> dict:
    contact = {"id": source_id, "mail": email, "active": active}
    if first_name is not None:
        contact["first_name"] = first_name
    return contact


def _add_remote(remote, *leads) -> None:
    for lead in leads:
        remote.leads[lead["id"]] = lead
        remote.updated_at[lead["id"]] = OLD_TIMESTAMP


@pytest.fixture
def make_job(remote, lead_store, setting_store, field_map, settings):
    def _make(contacts, incremental=True, **options) -> SharpSpringSyncJob:
        return SharpSpringSyncJob(
            source=StaticContactSource(contacts, incremental=incremental),
            remote=remote,
            lead_store=lead_store,
            setting_store=setting_store,
            field_map=field_map,
            mapper=ContactMapper(properties={"first_name": "firstName"}),
            options=SyncJobOptions(incremental=incremental, **options),
            settings=settings,
        )

    return _make


async def _run(job: SharpSpringSyncJob) -> tuple[SyncContext, str]:
    context = SyncContext()
    for batch in await job.start(context):
        await job.process_one(batch, context)
    summary = await job.finish(context)
    return context, summary


# ── Full pass ──────────────────────────────────────────────────────────────


class TestSyncRun:
    """start() -> process_one() -> finish()."""

    async def test_first_run_refreshes_fully_and_sends(self, make_job, remote, setting_store):
        _add_remote(remote, remote_lead(1, "1", "a@example.com", firstName="Ann"))
        job = make_job(
            [
                _contact("1", "a@example.com", first_name="Anne"),
                _contact("2", "b@example.com"),
                _contact("3", "c@example.com", active=False),
            ]
        )

        context, summary = await _run(job)

        first_call = remote.calls[0]
        assert first_call[0] == "get_leads_changed_in_range"
        assert first_call[1][0] == FULL_REFRESH_START
        assert remote.call_names()[1:3] == ["update_leads", "create_leads"]

        assert context.sent["1"] == "1"
        assert sorted(context.sent.values()) == ["1", "2"]
        assert context.inactive == ["3"]
        assert context.unconfirmed == {}
        assert remote.leads["1"]["firstName"] == "Anne"
        assert summary == "2 contacts sent to Sharpspring; 1 not sent because inactive."
        assert await setting_store.get_int(LAST_REFRESH_SETTING) is not None

    async def test_email_handover_succeeds_in_one_run(self, make_job, remote):
        _add_remote(remote, remote_lead(1, "1", "x@example.com"))
        job = make_job([_contact("2", "x@example.com"), _contact("1", "z@example.com")])

        context, _ = await _run(job)

        assert context.error == []
        assert context.sent_count == 2
        assert remote.leads["1"]["emailAddress"] == "z@example.com"
        created = [lead for lead in remote.leads.values() if lead[SRC] == "2"]
        assert created[0]["emailAddress"] == "x@example.com"

    async def test_full_run_deactivates_removed_contacts(self, make_job, remote):
        _add_remote(
            remote,
            remote_lead(1, "1", "a@example.com"),
            remote_lead(2, "2", "b@example.com"),
        )
        job = make_job([_contact("1", "a@example.com")], incremental=False)

        context, summary = await _run(job)

        assert context.remove == ["2"]
        assert context.sent == {"2": "2"}
        assert remote.leads["2"]["active"] == "0"
        assert context.unconfirmed == {}
        assert summary == (
            "1 contact sent to Sharpspring, 1 of which were deactivated because apparently "
            "removed from the source system; 1 not sent because seemingly equal."
        )

    async def test_deactivation_is_confirmed_by_lead_lookup(self, make_job, remote):
        _add_remote(remote, remote_lead(11, "1", "a@example.com"))
        job = make_job([_contact("1", "a@example.com", active=False)])

        context, _ = await _run(job)

        assert context.sent == {"11": "1"}
        assert context.sent_inactive == ["11"]
        assert context.unconfirmed == {}
        assert ("get_lead", "11") in remote.calls
        assert context.notices == []

    async def test_deactivation_still_active_is_unconfirmed(self, make_job, remote):
        _add_remote(remote, remote_lead(11, "1", "a@example.com"))
        job = make_job([_contact("1", "a@example.com", active=False)])
        context = SyncContext()
        for batch in await job.start(context):
            await job.process_one(batch, context)
        # Reactivated by someone else before the check.
        remote.leads["11"]["active"] = "1"
        remote.updated_at["11"] = OLD_TIMESTAMP

        await job.finish(context)

        assert context.unconfirmed == {"11": "1"}

    async def test_unconfirmed_sends_are_reported(self, make_job, remote):
        _add_remote(remote, remote_lead(11, "1", "a@example.com"))
        job = make_job([_contact("1", "new@example.com")])
        context = SyncContext()
        for batch in await job.start(context):
            await job.process_one(batch, context)
        # The update does not show up in getLeadsDateRange.
        remote.updated_at["11"] = OLD_TIMESTAMP

        await job.finish(context)

        assert context.unconfirmed == {"11": "1"}
        assert "(src/ss): 1/11" in context.notices[-1]

    async def test_missing_dispatch_start_is_reported(self, make_job):
        job = make_job([])
        context = SyncContext(sent={"11": "1"})

        summary = await job.finish(context)

        assert "lost" in context.notices[0]
        assert summary == "1 contact sent to Sharpspring."

    async def test_nothing_sent_skips_verification(self, make_job, remote):
        job = make_job([])
        await job.finish(SyncContext())
        assert remote.calls == []

    async def test_metrics_are_counted(self, make_job):
        labels = {"job_id": "metrics_job", "outcome": "inactive"}
        before = REGISTRY.get_sample_value("sharpsync_leads_total", labels) or 0
        job = make_job([_contact("1", "a@example.com", active=False)], job_id="metrics_job")

        await _run(job)

        assert REGISTRY.get_sample_value("sharpsync_leads_total", labels) == before + 1


# ── Cache refresh ──────────────────────────────────────────────────────────


class TestCacheRefresh:
    """Where the cache refresh starts, and what happens if it fails."""

    async def test_incremental_since_last_refresh_minus_overlap(self, make_job, setting_store):
        last = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
        await setting_store.set_int(LAST_REFRESH_SETTING, last)
        job = make_job([], honor_refresh_schedule=False)

        since = await job.cache_refresh_since()

        assert since == datetime.fromtimestamp(last - 50, tz=timezone.utc)

    async def test_scheduled_full_refresh(self, make_job, setting_store):
        last = int((datetime.now(timezone.utc) - timedelta(days=40)).timestamp())
        await setting_store.set_int(LAST_REFRESH_SETTING, last)
        job = make_job([])

        assert await job.cache_refresh_since() is None

    async def test_refresh_full_option(self, make_job, setting_store):
        await setting_store.set_int(LAST_REFRESH_SETTING, 1700000000)
        job = make_job([], leads_refresh_full=True)
        assert await job.cache_refresh_since() is None

    async def test_refresh_from_date(self, make_job):
        job = make_job([], leads_refresh_from="2024-01-01")
        assert await job.cache_refresh_since() == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["--", "yesterday-ish"])
    async def test_invalid_refresh_from(self, make_job, value):
        job = make_job([], leads_refresh_from=value)
        with pytest.raises(InternalInvariantError):
            await job.cache_refresh_since()

    async def test_skip_refresh_uses_remote_for_verification(self, make_job, remote, setting_store):
        job = make_job([_contact("1", "a@example.com")], leads_refresh_from="-")

        context, _ = await _run(job)

        assert remote.call_names()[0] == "create_leads"
        assert context.sent_count == 1
        assert context.unconfirmed == {}
        assert await setting_store.get_int(LAST_REFRESH_SETTING) is None

    async def test_failed_refresh_continues_without_storing_timestamp(
        self, make_job, remote, setting_store
    ):
        remote.fail_reads_with = TransportError("timeout")
        job = make_job([_contact("1", "a@example.com")])
        context = SyncContext()

        batches = await job.start(context)

        assert len(batches) == 1
        assert await setting_store.get_int(LAST_REFRESH_SETTING) is None
        assert context.cache_refreshed_at is None

    async def test_failed_full_refresh_reconciles_against_old_cache(
        self, make_job, remote, lead_store
    ):
        lead = remote_lead(1, "1", "a@example.com")
        _add_remote(remote, dict(lead))
        await lead_store.set(lead)
        remote.fail_reads_with = TransportError("timeout")
        job = make_job([_contact("1", "new@example.com")], leads_refresh_full=True)

        batches = await job.start(SyncContext())

        assert [batch.operation for batch in batches] == ["update"]
        assert batches[0].leads[0].id == "1"
        assert await lead_store.get("1") is not None

    async def test_finish_keeps_timestamp_after_failed_refresh(
        self, make_job, remote, lead_store, setting_store
    ):
        last = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
        await setting_store.set_int(LAST_REFRESH_SETTING, last)
        lead = remote_lead(1, "1", "a@example.com")
        _add_remote(remote, dict(lead))
        await lead_store.set(lead)
        job = make_job([_contact("1", "new@example.com")], honor_refresh_schedule=False)
        context = SyncContext()

        remote.fail_reads_with = TransportError("timeout")
        batches = await job.start(context)
        remote.fail_reads_with = None
        for batch in batches:
            await job.process_one(batch, context)
        await job.finish(context)

        assert context.sent == {"1": "1"}
        assert context.unconfirmed == {}
        assert await setting_store.get_int(LAST_REFRESH_SETTING) == last

    async def test_finish_advances_timestamp_after_refresh(self, make_job, remote, setting_store):
        last = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
        await setting_store.set_int(LAST_REFRESH_SETTING, last)
        job = make_job([_contact("1", "a@example.com")], honor_refresh_schedule=False)

        context, _ = await _run(job)

        assert context.cache_refreshed_at is not None
        assert await setting_store.get_int(LAST_REFRESH_SETTING) >= int(
            context.cache_refreshed_at.timestamp()
        )


# ── Preview / summary ──────────────────────────────────────────────────────


class TestPreview:
    async def _setup(self, remote):
        _add_remote(
            remote,
            remote_lead(1, "1", "a@example.com", firstName="Ann"),
            remote_lead(2, "2", "b@example.com"),
        )
        return [
            _contact("1", "a@example.com", first_name="Anne"),  # UPDATE_OTHER
            _contact("2", "b@example.com"),  # NOOP_EQUAL
            _contact("3", "a@example.com", active=False),  # inactive duplicate of lead 1
            _contact("4", "d@example.com"),  # CREATE
        ]

    async def test_rows_show_actions_and_changes(self, make_job, remote):
        job = make_job(await self._setup(remote))

        rows = await job.preview(SyncContext())

        assert [row["*action"] for row in rows] == [
            ActionCode.UPDATE_OTHER,
            ActionCode.NOOP_EQUAL,
            ActionCode.CREATE,
        ]
        assert rows[0]["firstName"] == "Ann → Anne"
        assert rows[0]["*ssid"] == "1"
        assert rows[0]["sourceId"] == "1"
        assert rows[2]["*ssid"] == ""
        assert "create_leads" not in remote.call_names()
        assert "update_leads" not in remote.call_names()

    async def test_include_clashes(self, make_job, remote):
        job = make_job(await self._setup(remote), include_clashes=True)
        rows = await job.preview(SyncContext())
        assert ActionCode.SKIP_DUPLICATE_INACTIVE in [row["*action"] for row in rows]

    async def test_full_run_can_hide_noops(self, make_job, remote):
        job = make_job(await self._setup(remote), incremental=False, include_noops=False)
        rows = await job.preview(SyncContext())
        assert ActionCode.NOOP_EQUAL not in [row["*action"] for row in rows]


class TestSummary:
    def test_all_categories(self):
        context = SyncContext(
            sent={"1": "a", "2": "b"},
            sent_unkeyed=["c"],
            remove=["b"],
            skipped=["d", "e"],
            error=["f"],
            exception_count=2,
            equal=["g"],
            inactive=["h"],
            dupes_ignored=["i"],
        )
        assert SharpSpringSyncJob.summarize(context) == (
            "3 contacts sent to Sharpspring, 1 of which were deactivated because apparently "
            "removed from the source system; 2 not sent because errors / update clashes seen "
            "beforehand; 1 error encountered during sending; 2 exceptions thrown during "
            "sending; 1 not sent because seemingly equal; 1 not sent because inactive; "
            "1 duplicate (inactive) contacts ignored."
        )

    def test_nothing_sent(self):
        assert SharpSpringSyncJob.summarize(SyncContext()) == "0 contacts sent to Sharpspring."
