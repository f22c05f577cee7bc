#!/usr/bin/env python3
"""Scan canonical works and enqueue enrichment tasks for missing or stale attributes."""

from __future__ import annotations

import argparse
import asyncio
import json

from reconciler.core.config import get_settings
from reconciler.core.telemetry import configure_worker_logging
from reconciler.jobs.enqueue import EnqueueSummary, enqueue_scan
from reconciler.schemas.tasks import TASK_KINDS
from reconciler.services.repository import get_repository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue enrichment tasks for canonical works.")
    parser.add_argument(
        "--kind",
        dest="kinds",
        action="append",
        choices=TASK_KINDS,
        help="Task kind to plan; repeat for several (default: all)",
    )
    parser.add_argument("--limit", type=int, default=500, help="Maximum works to scan")
    parser.add_argument("--offset", type=int, default=0, help="Works to skip before scanning")
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--region", help="Availability region (default: RECONCILER_AVAILABILITY_REGION)")
    parser.add_argument("--freshness-days", type=float, help="Skip checks verified within this many days")
    parser.add_argument(
        "--stats-freshness-days",
        type=float,
        help="Skip popularity refreshes verified within this many days (default: RECONCILER_STATS_FRESHNESS_DAYS)",
    )
    parser.add_argument("--official-url", action="store_true", help="Also plan web searches for official sites")
    parser.add_argument("--force", action="store_true", help="Ignore freshness and existing values")
    parser.add_argument("--dry-run", action="store_true", help="Count planned tasks without inserting them")
    return parser


async def run(args: argparse.Namespace) -> EnqueueSummary:
    settings = get_settings()
    repository = get_repository()
    try:
        return await enqueue_scan(
            repository,
            kinds=args.kinds or TASK_KINDS,
            limit=args.limit,
            offset=args.offset,
            batch_size=args.batch_size,
            freshness_days=settings.freshness_days if args.freshness_days is None else args.freshness_days,
            stats_freshness_days=(
                settings.stats_freshness_days if args.stats_freshness_days is None else args.stats_freshness_days
            ),
            region=args.region or settings.availability_region,
            resolution_source=settings.resolution_source,
            official_url_search=args.official_url,
            force=args.force,
            dry_run=args.dry_run,
        )
    finally:
        await repository.close()


def main() -> None:
    configure_worker_logging()
    args = build_parser().parse_args()
    summary = asyncio.run(run(args))
    print(json.dumps(summary.as_dict(), ensure_ascii=False, sort_keys=True))


if __name__ == "__main__":
    main()
