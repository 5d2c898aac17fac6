"""Pydantic schemas for Sharpspring leads and per-record API results.

Defines:
- LeadRecord: a lead keyed by property names, convertible to and from the
  system-field dicts the API speaks via a LeadFieldMap
- ObjectError / ObjectResult: tagged per-record outcome of createLeads /
  updateLeads calls (Ok with remote ID, or Err with code and message)
- Lead status and object error code constants
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.sharpsync.sharpspring.field_mapping import SOURCE_ID_PROPERTY, LeadFieldMap

# ── Constants ───────────────────────────────────────────────────────────────

LEAD_STATUS_CONTACT = "contact"
# Cannot be changed back to "contact" through the API.
LEAD_STATUS_CONTACT_WITH_OPP = "contactWithOpp"

# Object-level error codes returned inside createLeads/updateLeads results.
ERROR_ENTRY_EXISTS = 301
ERROR_NO_ROWS_AFFECTED = 302


def as_bool(value: Any) -> bool:
    """Interpret an API value ("1", "0", 1, true, "", None) as a boolean."""
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false")
    return bool(value)


# ── Lead ────────────────────────────────────────────────────────────────────


class LeadRecord(BaseModel):
    """A Sharpspring lead, or a candidate for one built from source data.

    Identity attributes are explicit; every other lead field lives in
    ``fields`` keyed by property name (standard field names, or custom
    property names like "sourceId" for custom fields).
    """

    id: str | None = None
    source_id: str | None = None
    email_address: str | None = None
    active: bool = True
    lead_status: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        if value in (None, "", 0, "0"):
            return None
        return str(value)

    @field_validator("source_id", mode="before")
    @classmethod
    def _normalize_source_id(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("email_address", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("active", mode="before")
    @classmethod
    def _normalize_active(cls, value: Any) -> bool:
        return as_bool(value)

    def to_fields(self, field_map: LeadFieldMap) -> dict[str, Any]:
        """Convert to a dict keyed by Sharpspring system field names.

        Unset identity attributes are omitted, so they count as "not
        applicable" when comparing against a cached lead.
        """
        values: dict[str, Any] = dict(self.fields)
        if self.id is not None:
            values["id"] = self.id
        if self.source_id is not None:
            values[SOURCE_ID_PROPERTY] = self.source_id
        if self.email_address is not None:
            values["emailAddress"] = self.email_address
        values["active"] = 1 if self.active else 0
        if self.lead_status is not None:
            values["leadStatus"] = self.lead_status
        return field_map.to_system_fields(values)

    @classmethod
    def from_fields(cls, data: dict[str, Any], field_map: LeadFieldMap) -> LeadRecord:
        """Build a LeadRecord from a dict keyed by system field names."""
        values = field_map.from_system_fields(data)
        return cls(
            id=values.pop("id", None),
            source_id=values.pop(SOURCE_ID_PROPERTY, None),
            email_address=values.pop("emailAddress", None),
            active=values.pop("active", True),
            lead_status=values.pop("leadStatus", None),
            fields=values,
        )

    def description(self) -> str:
        """Human readable, 'unique enough' description used in log messages."""
        name = " ".join(
            part for part in (self.fields.get("firstName"), self.fields.get("lastName")) if part
        )
        parts = [name or "?"]
        if self.fields.get("companyName"):
            parts.append(f"/ {self.fields['companyName']}")
        if self.email_address:
            parts.append(f"({self.email_address})")
        return " ".join(parts)


# ── Per-record results ──────────────────────────────────────────────────────


class ObjectError(BaseModel):
    """Object-level error for one lead in a batched call."""

    code: int
    message: str = ""
    data: Any = None


class ObjectResult(BaseModel):
    """Outcome for one lead in a createLeads/updateLeads call.

    Either ``ok`` (with the remote ID for creates) or an error carrying the
    object-level error code. Results are ordered like the submitted leads.
    """

    success: bool
    remote_id: str | None = None
    error: ObjectError | None = None

    @classmethod
    def ok(cls, remote_id: str | None = None) -> ObjectResult:
        return cls(success=True, remote_id=remote_id)

    @classmethod
    def err(cls, code: int, message: str = "", data: Any = None) -> ObjectResult:
        return cls(success=False, error=ObjectError(code=code, message=message, data=data))

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ObjectResult:
        """Parse one entry of the API's "creates"/"updates" result list."""
        remote_id = data.get("id")
        remote_id = str(remote_id) if remote_id not in (None, "", 0) else None
        if as_bool(data.get("success")):
            return cls.ok(remote_id)
        error = data.get("error") or {}
        return cls(
            success=False,
            remote_id=remote_id,
            error=ObjectError(
                code=int(error.get("code") or 0),
                message=str(error.get("message") or ""),
                data=error.get("data"),
            ),
        )
