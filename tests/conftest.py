"""Shared fixtures: field map, settings, in-memory stores and the leads cache."""

from __future__ import annotations

import pytest

from src.sharpsync.config import Settings
from src.sharpsync.leads.cache import LocalLeadCache
from src.sharpsync.leads.store import InMemoryLeadStore, InMemorySettingStore
from src.sharpsync.sharpspring.field_mapping import LeadFieldMap
from tests.fakes import SRC, FakeRemoteLeadStore

CUSTOM_PROPERTIES = {"sourceId": SRC, "membership": "membership_8c1d2e"}


@pytest.fixture
def field_map() -> LeadFieldMap:
    return LeadFieldMap(CUSTOM_PROPERTIES)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SHARPSPRING_LEAD_CUSTOM_PROPERTIES=CUSTOM_PROPERTIES,
        LEADS_UPDATE_LIMIT=2,
        LEADS_UPDATE_WAIT=0,
        KEYVALUE_UPDATE_OVERLAP=50,
    )


@pytest.fixture
def lead_store() -> InMemoryLeadStore:
    return InMemoryLeadStore((SRC, "emailAddress"))


@pytest.fixture
def setting_store() -> InMemorySettingStore:
    return InMemorySettingStore()


@pytest.fixture
def remote() -> FakeRemoteLeadStore:
    return FakeRemoteLeadStore()


@pytest.fixture
def cache(remote, lead_store, field_map) -> LocalLeadCache:
    return LocalLeadCache(remote, lead_store, field_map)
