"""Schemas for the lead synchronization job.

Defines:
- ActionCode: what to do with one source contact; the numeric order decides
  which of two clashing contacts wins
- LeadBatch: a queued create or update call
- SyncJobOptions: per-run job options
- SyncContext: the accumulator the host persists between start(),
  process_one() and finish()
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Literal

from pydantic import BaseModel, Field

from src.sharpsync.sharpspring.schemas import LeadRecord


class ActionCode(IntEnum):
    """Action to take for a contact. Higher codes win a clash.

    Codes up to SKIP_INVALID are not sent. DEACTIVATE_REMOVED is only
    assigned after the main pass, to cached leads whose source contact is gone.
    """

    SKIP_DUPLICATE_INACTIVE = 1  # inactive duplicate of another contact; not logged
    SKIP_DUPLICATE_CLASH = 2  # would update the same lead / e-mail as another contact
    SKIP_INVALID = 3  # invalid data, e.g. no e-mail address
    DEACTIVATE_REMOVED = 4
    DEACTIVATE = 5
    CREATE = 6
    UPDATE_SOURCE_ID = 7  # e-mail stays the same
    UPDATE_EMAIL = 8  # source ID stays the same
    UPDATE_OTHER = 9
    NOOP_EQUAL = 10

    @property
    def is_skipped(self) -> bool:
        return self <= ActionCode.SKIP_INVALID


class LeadBatch(BaseModel):
    """One createLeads or updateLeads call worth of leads."""

    operation: Literal["create", "update"]
    leads: list[LeadRecord]


class SyncJobOptions(BaseModel):
    """Options for one run of the sync job."""

    job_id: str = "sharpspring_sync"
    # True if the source returns only contacts changed since the last run.
    # Full runs also deactivate leads whose contact disappeared from the source.
    incremental: bool = True
    # Look up contacts missing from the cache in Sharpspring by e-mail. Needed
    # if Sharpspring holds inactive leads (which are not in the cache).
    # Ignored for full runs, where it would cost a call per inactive contact.
    doublecheck_remotely: bool = False
    # Refresh the leads cache with leads changed since this date; "-" skips
    # the refresh. Empty means: since the last refresh (minus overlap).
    leads_refresh_from: str | None = None
    leads_refresh_full: bool = False
    # Do a full cache refresh if KEYVALUE_REFRESH_SCHEDULE says it is due.
    honor_refresh_schedule: bool = True
    # preview() only
    include_noops: bool = True
    include_clashes: bool = False
    display_changed_values: bool = True


class SyncContext(BaseModel):
    """Accumulated state of one sync run, persisted by the host between calls.

    Contact lists hold source IDs. ``remove`` is a subset of the sent/error
    entries, not a separate category.
    """

    # Sharpspring ID -> source ID for leads reported as created/updated.
    sent: dict[str, str] = Field(default_factory=dict)
    # Source IDs sent successfully where no Sharpspring ID was returned.
    sent_unkeyed: list[str] = Field(default_factory=list)
    # Sharpspring IDs of sent leads that were deactivated.
    sent_inactive: list[str] = Field(default_factory=list)
    error: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    equal: list[str] = Field(default_factory=list)
    inactive: list[str] = Field(default_factory=list)
    dupes_ignored: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)
    # Sent leads not found among leads updated since dispatch_started_at.
    unconfirmed: dict[str, str] = Field(default_factory=dict)
    dispatch_started_at: datetime | None = None
    # Start of the cache refresh done by start(); None if it was skipped or failed.
    cache_refreshed_at: datetime | None = None
    # Set by the host if process_one() raised.
    exception_count: int = 0
    # Human readable warnings/errors for notification delivery.
    notices: list[str] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return len(self.sent) + len(self.sent_unkeyed)
