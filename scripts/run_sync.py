#!/usr/bin/env python3
"""Run the Sharpspring lead sync for contacts exported to a JSON file.

Usage:
    uv run python scripts/run_sync.py --contacts ./contacts.json
    uv run python scripts/run_sync.py --contacts ./contacts.json --full --preview
    uv run python scripts/run_sync.py --contacts ./contacts.json --memory-cache --refresh-full

The contacts file holds a JSON list of objects with at least "id" and "mail"
(see --property for mapping further fields). Reads SHARPSPRING_* and
REDIS_URL from environment or .env file.

Exit code 0 if the run completed without errors, 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.sharpsync.config import get_settings  # noqa: E402
from src.sharpsync.core.logging import configure_structlog  # noqa: E402
from src.sharpsync.core.redis import close_redis  # noqa: E402
from src.sharpsync.leads.store import InMemoryLeadStore, InMemorySettingStore  # noqa: E402
from src.sharpsync.sharpspring.client import SharpSpringClient  # noqa: E402
from src.sharpsync.sharpspring.field_mapping import LeadFieldMap  # noqa: E402
from src.sharpsync.sync.job import SharpSpringSyncJob  # noqa: E402
from src.sharpsync.sync.schemas import SyncContext, SyncJobOptions  # noqa: E402
from src.sharpsync.sync.source import ContactMapper, StaticContactSource  # noqa: E402

logger = structlog.get_logger(__name__)


def parse_properties(values: list[str]) -> dict[str, str]:
    """Parse "source_key=leadProperty" arguments."""
    properties = {}
    for value in values:
        key, sep, prop = value.partition("=")
        if not sep or not key or not prop:
            raise argparse.ArgumentTypeError(f"Invalid --property value '{value}'")
        properties[key] = prop
    return properties


def build_job(args: argparse.Namespace, contacts: list[dict]) -> SharpSpringSyncJob:
    settings = get_settings()
    source = StaticContactSource(contacts, incremental=not args.full)
    mapper = ContactMapper(properties=parse_properties(args.property))
    options = SyncJobOptions(
        job_id=args.job_id,
        incremental=not args.full,
        doublecheck_remotely=args.doublecheck,
        leads_refresh_from=args.refresh_from,
        leads_refresh_full=args.refresh_full,
        include_clashes=args.include_clashes,
    )
    if not args.memory_cache:
        return SharpSpringSyncJob.from_settings(source, mapper, options, settings)

    # Throwaway cache: a full refresh on every run, nothing persisted.
    field_map = LeadFieldMap(settings.SHARPSPRING_LEAD_CUSTOM_PROPERTIES)
    return SharpSpringSyncJob(
        source=source,
        remote=SharpSpringClient(
            account_id=settings.SHARPSPRING_ACCOUNT_ID,
            secret_key=settings.SHARPSPRING_SECRET_KEY,
            base_url=settings.SHARPSPRING_API_URL,
            timeout=settings.SHARPSPRING_TIMEOUT,
        ),
        lead_store=InMemoryLeadStore((field_map.source_id_field, "emailAddress")),
        setting_store=InMemorySettingStore(),
        field_map=field_map,
        mapper=mapper,
        options=options,
        settings=settings,
    )


def print_preview(rows: list[dict]) -> None:
    for row in rows:
        action = row.pop("*action")
        ssid = row.pop("*ssid")
        print(f"[{action:>2}] {ssid or '(new)':>10}  {json.dumps(row, default=str)}")
    print(f"\n{len(rows)} contact(s)")


async def main_async(args: argparse.Namespace) -> int:
    with open(args.contacts) as f:
        contacts = json.load(f)

    structlog.contextvars.bind_contextvars(job_id=args.job_id)
    job = build_job(args, contacts)
    context = SyncContext()
    try:
        if args.preview:
            print_preview(await job.preview(context))
            return 0

        batches = await job.start(context)
        for batch in batches:
            try:
                await job.process_one(batch, context)
            except Exception:
                logger.exception("run_sync.batch_exception", operation=batch.operation)
                context.exception_count += 1
        summary = await job.finish(context)
    finally:
        await close_redis()

    for notice in context.notices:
        print(f"  - {notice}")
    print(summary)
    return 1 if context.error or context.exception_count else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync source contacts to Sharpspring leads")
    parser.add_argument("--contacts", required=True, help="JSON file with a list of contacts")
    parser.add_argument("--job-id", default="sharpspring_sync", help="Job ID (scopes cache keys)")
    parser.add_argument(
        "--property",
        action="append",
        default=[],
        metavar="KEY=PROPERTY",
        help="Map a contact key to a lead property, e.g. first_name=firstName",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Contacts file is complete; deactivate leads of contacts not in it",
    )
    parser.add_argument(
        "--doublecheck", action="store_true", help="Look up uncached contacts in Sharpspring"
    )
    parser.add_argument(
        "--refresh-from", help="Refresh cache from this date (ISO format), or '-' for no refresh"
    )
    parser.add_argument("--refresh-full", action="store_true", help="Fully refresh the cache")
    parser.add_argument("--preview", action="store_true", help="Show actions without sending")
    parser.add_argument(
        "--include-clashes", action="store_true", help="Show inactive duplicates in preview"
    )
    parser.add_argument(
        "--memory-cache",
        action="store_true",
        help="Use a temporary in-memory leads cache instead of Redis",
    )
    args = parser.parse_args()

    configure_structlog()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
