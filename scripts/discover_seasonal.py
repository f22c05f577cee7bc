#!/usr/bin/env python3
"""Crawl AniList seasonal listings and create canonical works for new titles."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone

from reconciler.core.config import get_settings
from reconciler.core.telemetry import configure_worker_logging
from reconciler.jobs.discovery import DiscoverySummary, discover_seasonal
from reconciler.services.providers.anilist import SEASONS
from reconciler.services.providers.registry import build_anilist_provider
from reconciler.services.repository import get_repository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create canonical works from AniList seasonal listings.")
    parser.add_argument("--year", type=int, default=datetime.now(timezone.utc).year, help="Season year")
    parser.add_argument(
        "--season",
        dest="seasons",
        action="append",
        type=str.upper,
        choices=SEASONS,
        help="Season to crawl; repeat for several (default: all four)",
    )
    parser.add_argument("--max-pages", type=int, default=5, help="Pages to fetch per season")
    parser.add_argument("--per-page", type=int, help="Entries per page (default: RECONCILER_ANILIST_DISCOVERY_PER_PAGE)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be created without writing")
    return parser


async def run(args: argparse.Namespace) -> DiscoverySummary:
    settings = get_settings()
    repository = get_repository()
    provider = build_anilist_provider(settings, per_page=args.per_page or settings.anilist_discovery_per_page)
    try:
        return await discover_seasonal(
            repository,
            provider,
            year=args.year,
            seasons=args.seasons or SEASONS,
            max_pages=args.max_pages,
            dry_run=args.dry_run,
        )
    finally:
        await provider.aclose()
        await repository.close()


def main() -> None:
    configure_worker_logging()
    args = build_parser().parse_args()
    summary = asyncio.run(run(args))
    print(json.dumps(summary.as_dict(), ensure_ascii=False, sort_keys=True))


if __name__ == "__main__":
    main()
