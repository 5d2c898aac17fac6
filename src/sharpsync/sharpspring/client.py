"""Async HTTP client for the Sharpspring REST API (lead endpoints).

Sharpspring exposes a JSON-RPC style API: every call is a POST to one
endpoint with ``{"method", "params", "id"}`` and account credentials in the
query string. Responses carry ``result`` and ``error``.

Key implementation details:
- Read calls are wrapped with tenacity retry + exponential backoff; create and
  update calls are never retried (a timed out create may still have happened)
- HTTP/network failures raise TransportError, call-level API errors ApiError
- Object-level errors in createLeads/updateLeads are returned as per-lead
  ObjectResults, not raised
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.sharpsync.observability.metrics import api_requests_total
from src.sharpsync.sharpspring.adapter import RemoteLeadStore
from src.sharpsync.sharpspring.errors import ApiError, TransportError
from src.sharpsync.sharpspring.schemas import ObjectResult

logger = structlog.get_logger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransportError),
    reraise=True,
)


def format_api_date(value: datetime) -> str:
    """Format a datetime as the UTC 'Y-m-d H:i:s' string the API expects."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DATE_FORMAT)


class SharpSpringClient(RemoteLeadStore):
    """Sharpspring REST API client for lead operations.

    Args:
        account_id: Sharpspring API account ID.
        secret_key: Sharpspring API secret key.
        base_url: API endpoint URL.
        timeout: Timeout in seconds for each HTTP call.
    """

    GET_LEADS_PAGE_SIZE = 500

    def __init__(
        self,
        account_id: str,
        secret_key: str,
        base_url: str = "https://api.sharpspring.com/pubapi/v1.2/",
        timeout: float = 30.0,
    ) -> None:
        if not account_id or not secret_key:
            raise ValueError("Sharpspring account ID and secret key are required")
        self._base_url = base_url
        self._auth_params = {"accountID": account_id, "secretKey": secret_key}
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )

    async def _call(
        self,
        method: str,
        params: dict[str, Any],
        object_results_key: str | None = None,
    ) -> dict[str, Any]:
        """Make one API call and return its ``result`` dict.

        Args:
            method: API method name, e.g. "getLeadsDateRange".
            params: Method parameters.
            object_results_key: For batched object calls ("creates"/"updates"):
                if the result holds this key, object-level errors are left for
                the caller to inspect instead of raising ApiError.

        Raises:
            TransportError: On HTTP status or network failures, or a
                non-JSON response.
            ApiError: When the response carries a call-level error.
        """
        payload = {"method": method, "params": params, "id": uuid.uuid4().hex}
        try:
            async with self._client() as client:
                response = await client.post(
                    self._base_url,
                    params=self._auth_params,
                    json=payload,
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            api_requests_total.labels(method=method, status="transport_error").inc()
            logger.warning("sharpspring.transport_error", method=method, error=str(exc))
            raise TransportError(f"Sharpspring {method} call failed: {exc}") from exc

        result = body.get("result")
        if (
            object_results_key
            and isinstance(result, dict)
            and isinstance(result.get(object_results_key), list)
        ):
            api_requests_total.labels(method=method, status="ok").inc()
            return result

        error = body.get("error")
        if error:
            if isinstance(error, list):
                error = error[0]
            api_requests_total.labels(method=method, status="api_error").inc()
            raise ApiError(
                code=int(error.get("code") or 0),
                message=str(error.get("message") or ""),
                data=error.get("data"),
            )
        if not isinstance(result, dict):
            api_requests_total.labels(method=method, status="api_error").inc()
            raise ApiError(code=0, message=f"Unexpected response format for {method}", data=body)

        api_requests_total.labels(method=method, status="ok").inc()
        return result

    async def _write(self, method: str, key: str, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        result = await self._call(method, {"objects": leads}, object_results_key=key)
        entries = result.get(key) or []
        if len(entries) != len(leads):
            raise ApiError(
                code=0,
                message=f"{method} returned {len(entries)} results for {len(leads)} leads",
                data=result,
            )
        results = [ObjectResult.from_api(entry) for entry in entries]
        logger.info(
            "sharpspring.leads_written",
            method=method,
            count=len(leads),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    async def create_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        """Create leads. Returns per-lead results carrying the new remote IDs."""
        return await self._write("createLeads", "creates", leads)

    async def update_leads(self, leads: list[dict[str, Any]]) -> list[ObjectResult]:
        """Update leads; every lead dict must contain "id"."""
        if any(not lead.get("id") for lead in leads):
            raise ValueError("Every lead passed to update_leads must have an 'id'")
        return await self._write("updateLeads", "updates", leads)

    @_read_retry
    async def get_leads_changed_in_range(
        self,
        start: datetime,
        end: datetime,
        timestamp_field: str = "update",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch leads created/updated between start and end (getLeadsDateRange).

        Note that Sharpspring only returns active leads from this call.
        """
        result = await self._call(
            "getLeadsDateRange",
            {
                "startDate": format_api_date(start),
                "endDate": format_api_date(end),
                "timestamp": timestamp_field,
            },
        )
        leads = result.get("lead") or []
        if limit is not None and len(leads) > limit:
            logger.warning(
                "sharpspring.date_range_truncated",
                returned=len(leads),
                limit=limit,
            )
            leads = leads[:limit]
        return leads

    @_read_retry
    async def get_lead(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch a single lead by ID (getLead)."""
        result = await self._call("getLead", {"id": remote_id})
        leads = result.get("lead") or []
        return leads[0] if leads else None

    @_read_retry
    async def get_leads_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Fetch all leads matching ``{field: value}`` (getLeads), paging through results."""
        leads: list[dict[str, Any]] = []
        offset = 0
        while True:
            result = await self._call(
                "getLeads",
                {
                    "where": {field: value},
                    "limit": self.GET_LEADS_PAGE_SIZE,
                    "offset": offset,
                },
            )
            page = result.get("lead") or []
            leads.extend(page)
            if len(page) < self.GET_LEADS_PAGE_SIZE:
                return leads
            offset += self.GET_LEADS_PAGE_SIZE
