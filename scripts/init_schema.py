#!/usr/bin/env python3
"""Print the queue and canonical-store DDL, or apply it to the configured database."""

from __future__ import annotations

import argparse
import asyncio

from reconciler.core.config import get_settings
from reconciler.services.repository import SCHEMA_SQL, PostgresRepository


async def apply_schema(database_url: str) -> None:
    settings = get_settings()
    repository = PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=1,
        task_max_attempts=settings.task_max_attempts,
        task_retry_base_seconds=settings.task_retry_base_seconds,
        task_retry_max_seconds=settings.task_retry_max_seconds,
    )
    try:
        await repository.ensure_schema()
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit or apply the reconciler schema.")
    parser.add_argument("--apply", action="store_true", help="Execute the DDL instead of printing it")
    parser.add_argument("--database-url", help="Overrides RECONCILER_DATABASE_URL")
    args = parser.parse_args()

    if not args.apply:
        print(SCHEMA_SQL.strip())
        return

    database_url = args.database_url or get_settings().database_url
    if not database_url:
        parser.error("--apply needs --database-url or RECONCILER_DATABASE_URL")
    asyncio.run(apply_schema(database_url))
    print("schema applied")


if __name__ == "__main__":
    main()
