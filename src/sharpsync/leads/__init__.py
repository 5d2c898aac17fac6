"""Local leads snapshot: storage backends and the comparing cache."""

from src.sharpsync.leads.cache import LeadDiff, LocalLeadCache
from src.sharpsync.leads.store import (
    InMemoryLeadStore,
    InMemorySettingStore,
    LeadStore,
    RedisLeadStore,
    RedisSettingStore,
    SettingStore,
)

__all__ = [
    "InMemoryLeadStore",
    "InMemorySettingStore",
    "LeadDiff",
    "LeadStore",
    "LocalLeadCache",
    "RedisLeadStore",
    "RedisSettingStore",
    "SettingStore",
]
