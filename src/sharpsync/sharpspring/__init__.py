"""Sharpspring REST API integration -- lead model, field mapping and client.

Provides:
- RemoteLeadStore: abstract interface consumed by the sync engine
- SharpSpringClient: httpx-based implementation of the lead endpoints
- LeadFieldMap: property name <-> custom system field name translation
- LeadRecord / ObjectResult: lead model and tagged per-lead call results
"""

from src.sharpsync.sharpspring.adapter import RemoteLeadStore
from src.sharpsync.sharpspring.client import SharpSpringClient
from src.sharpsync.sharpspring.errors import (
    ApiError,
    LeadValidationError,
    SharpSpringError,
    TransportError,
)
from src.sharpsync.sharpspring.field_mapping import LeadFieldMap
from src.sharpsync.sharpspring.schemas import LeadRecord, ObjectError, ObjectResult

__all__ = [
    "ApiError",
    "LeadFieldMap",
    "LeadRecord",
    "LeadValidationError",
    "ObjectError",
    "ObjectResult",
    "RemoteLeadStore",
    "SharpSpringClient",
    "SharpSpringError",
    "TransportError",
]
