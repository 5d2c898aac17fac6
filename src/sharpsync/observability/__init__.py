"""Prometheus metrics for the Sharpspring client and sync job."""

from src.sharpsync.observability.metrics import (
    api_requests_total,
    sync_leads_total,
)

__all__ = ["api_requests_total", "sync_leads_total"]
