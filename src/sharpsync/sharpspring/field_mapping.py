"""Lead property name <-> Sharpspring system field name mapping.

Sharpspring custom fields have generated system names (e.g.
"source_id_5a2f1e3c0b7d4"), which differ per account. Code in this project
refers to lead fields by a stable property name ("sourceId") and translates
at the API boundary with a LeadFieldMap.

Standard lead fields have identical property and system names.
"""

from __future__ import annotations

from typing import Any

# ── Standard Sharpspring Lead Fields ───────────────────────────────────────

STANDARD_LEAD_FIELDS: frozenset[str] = frozenset({
    "id",
    "accountID",
    "ownerID",
    "campaignID",
    "leadStatus",
    "leadScore",
    "active",
    "isUnsubscribed",
    "firstName",
    "lastName",
    "emailAddress",
    "companyName",
    "title",
    "street",
    "city",
    "country",
    "state",
    "zipcode",
    "website",
    "phoneNumber",
    "officePhoneNumber",
    "phoneNumberExtension",
    "mobilePhoneNumber",
    "faxNumber",
    "description",
    "industry",
    "createTimestamp",
    "updateTimestamp",
})

SOURCE_ID_PROPERTY = "sourceId"


class LeadFieldMap:
    """Bidirectional mapping between lead property names and system field names.

    Args:
        custom_properties: Property name -> Sharpspring system field name for
            every custom field the project uses. Must contain "sourceId".

    Raises:
        ValueError: If "sourceId" is missing, a custom property shadows a
            standard field, or two properties map to the same system field.
    """

    def __init__(self, custom_properties: dict[str, str]) -> None:
        if SOURCE_ID_PROPERTY not in custom_properties:
            raise ValueError(f"Custom lead properties must define '{SOURCE_ID_PROPERTY}'")

        shadowed = STANDARD_LEAD_FIELDS.intersection(custom_properties)
        if shadowed:
            raise ValueError(f"Custom lead properties shadow standard fields: {sorted(shadowed)}")

        reverse: dict[str, str] = {}
        for prop, system_name in custom_properties.items():
            if system_name in reverse:
                raise ValueError(
                    f"Properties '{reverse[system_name]}' and '{prop}' both map to '{system_name}'"
                )
            reverse[system_name] = prop

        self._to_system = dict(custom_properties)
        self._to_property = reverse

    @property
    def source_id_field(self) -> str:
        """System field name that holds the source system ID."""
        return self._to_system[SOURCE_ID_PROPERTY]

    @property
    def custom_properties(self) -> dict[str, str]:
        return dict(self._to_system)

    def system_name(self, prop: str) -> str:
        """Return the system field name for a property (identity if not custom)."""
        return self._to_system.get(prop, prop)

    def property_name(self, system_name: str) -> str:
        """Return the property name for a system field (identity if not custom)."""
        return self._to_property.get(system_name, system_name)

    def to_system_fields(self, values: dict[str, Any]) -> dict[str, Any]:
        """Convert a property-keyed dict to a system-field-keyed dict."""
        return {self.system_name(key): value for key, value in values.items()}

    def from_system_fields(self, values: dict[str, Any]) -> dict[str, Any]:
        """Convert a system-field-keyed dict to a property-keyed dict."""
        return {self.property_name(key): value for key, value in values.items()}
