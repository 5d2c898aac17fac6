"""Prometheus counters for Sharpspring API usage and sync outcomes.

Provides:
- api_requests_total: every JSON-RPC call made by SharpSpringClient, by status
- sync_leads_total: per-job lead counts by outcome, incremented on finish()
"""

from __future__ import annotations

from prometheus_client import Counter

# ── API Metrics ──────────────────────────────────────────────────────────────

api_requests_total = Counter(
    "sharpspring_api_requests_total",
    "Total Sharpspring REST API calls",
    ["method", "status"],
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_leads_total = Counter(
    "sharpsync_leads_total",
    "Leads processed by the sync job, by outcome",
    ["job_id", "outcome"],
)
