"""Source system contacts and their conversion into candidate leads."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.sharpsync.sharpspring.errors import LeadValidationError
from src.sharpsync.sharpspring.schemas import LeadRecord, as_bool


class ContactSource(ABC):
    """Where the sync job gets its contacts from.

    ``incremental`` is True when fetch_contacts() returns only contacts that
    changed recently, False when it returns the complete source population.
    """

    incremental: bool = True

    @abstractmethod
    async def fetch_contacts(self) -> list[dict[str, Any]]:
        """Return source contacts as plain dicts."""
        ...


class StaticContactSource(ContactSource):
    """Contacts that were already fetched, e.g. loaded from an export file."""

    def __init__(self, contacts: list[dict[str, Any]], incremental: bool = True) -> None:
        self._contacts = contacts
        self.incremental = incremental

    async def fetch_contacts(self) -> list[dict[str, Any]]:
        return list(self._contacts)


class ContactMapper:
    """Builds candidate leads from source contact dicts.

    Args:
        properties: Source key -> lead property name for all other fields to
            synchronize, e.g. {"first_name": "firstName", "org": "companyName"}.
        id_key: Source key holding the contact ID (becomes the source ID).
        email_key: Source key holding the e-mail address.
        active_key: Source key holding the "sync to Sharpspring" flag. Missing
            means active.
    """

    def __init__(
        self,
        properties: dict[str, str] | None = None,
        id_key: str = "id",
        email_key: str = "mail",
        active_key: str = "active",
    ) -> None:
        self._properties = dict(properties or {})
        self._id_key = id_key
        self._email_key = email_key
        self._active_key = active_key

    def source_id(self, contact: dict[str, Any]) -> str | None:
        value = contact.get(self._id_key)
        if value is None or value == "":
            return None
        return str(value)

    def to_lead(self, contact: dict[str, Any]) -> LeadRecord:
        """Convert a source contact into a lead without Sharpspring ID.

        A missing e-mail address is not an error here; the reconciler still
        needs such leads for clash detection.

        Raises:
            LeadValidationError: If the contact has no ID.
        """
        source_id = self.source_id(contact)
        if source_id is None:
            raise LeadValidationError(f"Source contact has no '{self._id_key}' value")

        return LeadRecord(
            source_id=source_id,
            email_address=contact.get(self._email_key),
            active=as_bool(contact.get(self._active_key, True)),
            fields={
                prop: contact[key]
                for key, prop in self._properties.items()
                if key in contact
            },
        )
