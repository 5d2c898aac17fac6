"""Lead synchronization: reconciliation engine, dispatch and the sync job."""

from src.sharpsync.sync.dispatch import BatchDispatcher, build_batches
from src.sharpsync.sync.errors import InternalInvariantError
from src.sharpsync.sync.job import SharpSpringSyncJob
from src.sharpsync.sync.reconcile import (
    LeadState,
    ReconciliationRegistry,
    Reconciler,
    classify,
)
from src.sharpsync.sync.schemas import ActionCode, LeadBatch, SyncContext, SyncJobOptions
from src.sharpsync.sync.source import ContactMapper, ContactSource, StaticContactSource

__all__ = [
    "ActionCode",
    "BatchDispatcher",
    "ContactMapper",
    "ContactSource",
    "InternalInvariantError",
    "LeadBatch",
    "LeadState",
    "ReconciliationRegistry",
    "Reconciler",
    "SharpSpringSyncJob",
    "StaticContactSource",
    "SyncContext",
    "SyncJobOptions",
    "build_batches",
    "classify",
]
