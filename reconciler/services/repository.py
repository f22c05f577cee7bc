from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from reconciler.core.config import get_settings
from reconciler.core.errors import (
    ConflictError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from reconciler.schemas.tasks import QueueTask, payload_key
from reconciler.schemas.works import (
    CanonicalWork,
    LinkResult,
    ResolutionCandidate,
    WorkAttribute,
    can_overwrite,
)

SCHEMA_SQL = """
create table if not exists works (
  id uuid primary key default gen_random_uuid(),
  title text not null,
  created_at timestamptz not null default now()
);

create index if not exists works_title on works (title);

create table if not exists work_external_ids (
  work_id uuid not null references works (id),
  source text not null,
  external_id text not null,
  linked_at timestamptz not null default now(),
  primary key (work_id, source),
  unique (source, external_id)
);

create table if not exists work_attributes (
  work_id uuid not null references works (id),
  name text not null,
  value jsonb,
  source text,
  checked_at timestamptz,
  conclusive boolean not null default true,
  primary key (work_id, name)
);

create table if not exists resolution_candidates (
  work_id uuid not null references works (id),
  source text not null,
  external_id text not null,
  score double precision not null,
  query_term text,
  names jsonb not null default '[]'::jsonb,
  created_at timestamptz not null default now(),
  primary key (work_id, source, external_id)
);

create table if not exists queue_tasks (
  id uuid primary key default gen_random_uuid(),
  subject_id text not null,
  kind text not null,
  payload jsonb not null default '{}'::jsonb,
  payload_key text not null,
  priority integer not null default 0,
  status text not null default 'pending'
    check (status in ('pending', 'claimed', 'done', 'failed')),
  attempt integer not null default 0,
  last_error text,
  claimed_by text,
  claimed_at timestamptz,
  next_run_at timestamptz not null default now(),
  last_success_at timestamptz,
  result jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create unique index if not exists queue_tasks_open_key
  on queue_tasks (subject_id, kind, payload_key)
  where status in ('pending', 'claimed');

create index if not exists queue_tasks_pending_order
  on queue_tasks (priority desc, created_at asc)
  where status = 'pending';
"""

_TASK_COLUMNS = """
  {alias}id::text as id,
  subject_id,
  kind,
  payload,
  priority,
  status,
  attempt,
  last_error,
  claimed_by,
  claimed_at,
  next_run_at,
  last_success_at,
  result,
  created_at,
  updated_at
"""

_TASK_SELECT = _TASK_COLUMNS.format(alias="")
_CLAIM_RETURNING = _TASK_COLUMNS.format(alias="t.")


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        task_max_attempts: int,
        task_retry_base_seconds: int,
        task_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.task_max_attempts = max(1, task_max_attempts)
        self.task_retry_base_seconds = max(0, task_retry_base_seconds)
        self.task_retry_max_seconds = max(0, task_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    # queue

    async def enqueue(
        self,
        subject_id: str,
        kind: str,
        payload: Mapping[str, Any] | None = None,
        priority: int = 0,
        *,
        run_at: datetime | None = None,
    ) -> str | None:
        pool = await self._get_pool()
        body = dict(payload or {})
        return await pool.fetchval(
            """
            insert into queue_tasks (subject_id, kind, payload, payload_key, priority, next_run_at)
            values ($1, $2, $3::jsonb, $4, $5, coalesce($6::timestamptz, now()))
            on conflict (subject_id, kind, payload_key) where status in ('pending', 'claimed')
            do nothing
            returning id::text
            """,
            subject_id,
            kind,
            json.dumps(body, default=str),
            payload_key(body),
            priority,
            run_at,
        )

    async def claim(self, worker_id: str, kinds: Iterable[str] | None = None) -> QueueTask | None:
        pool = await self._get_pool()
        kind_filter = list(kinds) if kinds else None
        row = await pool.fetchrow(
            f"""
            update queue_tasks t
            set
              status = 'claimed',
              claimed_by = $1,
              claimed_at = now(),
              updated_at = now()
            from (
              select id
              from queue_tasks
              where status = 'pending'
                and next_run_at <= now()
                and ($2::text[] is null or kind = any($2::text[]))
              order by priority desc, created_at asc
              limit 1
              for update skip locked
            ) picked
            where t.id = picked.id
            returning {_CLAIM_RETURNING}
            """,
            worker_id,
            kind_filter,
        )
        return self._task_row_to_model(row) if row else None

    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> QueueTask:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update queue_tasks
                        set
                          status = 'done',
                          result = $2::jsonb,
                          last_error = null,
                          last_success_at = now(),
                          updated_at = now()
                        where id = $1::uuid and status = 'claimed'
                        returning {_TASK_SELECT}
                        """,
                        task_id,
                        json.dumps(result, default=str) if result is not None else None,
                    )
                    if not row:
                        await self._raise_missing_or_conflict(conn, task_id)
                    return self._task_row_to_model(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc

    async def fail(self, task_id: str, error: str) -> str:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchrow(
                        "select status, attempt from queue_tasks where id = $1::uuid for update",
                        task_id,
                    )
                    if not claimed:
                        raise RepositoryNotFoundError("task not found")
                    if claimed["status"] != "claimed":
                        raise RepositoryConflictError("task is not in claimed state")

                    attempt = int(claimed["attempt"]) + 1
                    resolved_status = "failed" if attempt >= self.task_max_attempts else "pending"
                    retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)

                    await conn.execute(
                        """
                        update queue_tasks
                        set
                          status = $2,
                          attempt = $3,
                          last_error = $4,
                          claimed_by = case when $2 = 'pending' then null else claimed_by end,
                          claimed_at = case when $2 = 'pending' then null else claimed_at end,
                          next_run_at = case
                            when $2 = 'pending' then now() + ($5::int * interval '1 second')
                            else next_run_at
                          end,
                          updated_at = now()
                        where id = $1::uuid
                        """,
                        task_id,
                        resolved_status,
                        attempt,
                        error[:2000],
                        retry_delay_seconds,
                    )
                    return resolved_status
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc

    async def requeue_abandoned(self, claim_timeout_seconds: int, limit: int = 100) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with expired as (
              select id
              from queue_tasks
              where status = 'claimed'
                and claimed_at is not null
                and claimed_at <= now() - ($1::int * interval '1 second')
              order by claimed_at asc
              limit $2
              for update skip locked
            )
            update queue_tasks t
            set
              status = 'pending',
              claimed_by = null,
              claimed_at = null,
              next_run_at = now(),
              updated_at = now()
            from expired e
            where t.id = e.id
            returning t.id::text as id
            """,
            max(0, claim_timeout_seconds),
            bounded_limit,
        )
        return len(rows)

    async def get_task(self, task_id: str) -> QueueTask:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_TASK_SELECT} from queue_tasks where id = $1::uuid", task_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc
        if not row:
            raise RepositoryNotFoundError("task not found")
        return self._task_row_to_model(row)

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        subject_id: str | None = None,
        limit: int = 100,
    ) -> list[QueueTask]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_TASK_SELECT}
            from queue_tasks
            where ($1::text is null or status = $1)
              and ($2::text is null or kind = $2)
              and ($3::text is null or subject_id = $3)
            order by created_at asc
            limit $4
            """,
            status,
            kind,
            subject_id,
            max(0, min(limit, 1000)),
        )
        return [self._task_row_to_model(row) for row in rows]

    async def _raise_missing_or_conflict(self, conn: asyncpg.Connection, task_id: str) -> None:
        exists = await conn.fetchval("select 1 from queue_tasks where id = $1::uuid", task_id)
        if not exists:
            raise RepositoryNotFoundError("task not found")
        raise RepositoryConflictError("task is not in claimed state")

    # canonical works

    async def create_work(self, title: str, *, work_id: str | None = None) -> CanonicalWork:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into works (id, title)
                values (coalesce($1::uuid, gen_random_uuid()), $2)
                returning id::text as id, title, created_at
                """,
                work_id,
                title,
            )
        except asyncpg.UniqueViolationError as exc:
            raise RepositoryConflictError("work already exists") from exc
        return CanonicalWork(id=row["id"], title=row["title"], created_at=row["created_at"])

    async def get_work(self, work_id: str) -> CanonicalWork:
        works = await self._load_works([work_id])
        if not works:
            raise RepositoryNotFoundError("work not found")
        return works[0]

    async def list_works(self, *, limit: int = 100, offset: int = 0) -> list[CanonicalWork]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select id::text as id from works order by created_at asc, id asc limit $1 offset $2",
            max(0, min(limit, 1000)),
            max(0, offset),
        )
        return await self._load_works([row["id"] for row in rows])

    async def patch_work(
        self,
        work_id: str,
        values: Mapping[str, Any],
        *,
        source: str,
        force: bool = False,
        conclusive: bool = True,
    ) -> list[str]:
        """Write ``values`` into empty attributes and return the names actually written."""
        pool = await self._get_pool()
        written: list[str] = []
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    exists = await conn.fetchval("select 1 from works where id = $1::uuid for update", work_id)
                    if not exists:
                        raise RepositoryNotFoundError("work not found")
                    rows = await conn.fetch(
                        """
                        select name, value, source, checked_at, conclusive
                        from work_attributes
                        where work_id = $1::uuid
                        """,
                        work_id,
                    )
                    existing = {row["name"]: self._attribute_row_to_model(row) for row in rows}
                    for name, value in values.items():
                        if value is None or not can_overwrite(existing.get(name), force=force):
                            continue
                        await self._upsert_attribute(
                            conn,
                            work_id=work_id,
                            name=name,
                            value=value,
                            source=source,
                            conclusive=conclusive,
                            checked_at=None,
                        )
                        written.append(name)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work not found") from exc
        return written

    async def set_attribute(
        self,
        work_id: str,
        name: str,
        value: Any,
        *,
        source: str,
        conclusive: bool = True,
        checked_at: datetime | None = None,
    ) -> WorkAttribute:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await self._upsert_attribute(
                    conn,
                    work_id=work_id,
                    name=name,
                    value=value,
                    source=source,
                    conclusive=conclusive,
                    checked_at=checked_at,
                )
        except asyncpg.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("work not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work not found") from exc
        return self._attribute_row_to_model(row)

    async def link_external_id(
        self,
        work_id: str,
        source: str,
        external_id: str,
        *,
        replace: bool = False,
    ) -> LinkResult:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    exists = await conn.fetchval("select 1 from works where id = $1::uuid for update", work_id)
                    if not exists:
                        raise RepositoryNotFoundError("work not found")

                    owner = await conn.fetchval(
                        "select work_id::text from work_external_ids where source = $1 and external_id = $2",
                        source,
                        external_id,
                    )
                    if owner == work_id:
                        return LinkResult(
                            status="already_linked",
                            work_id=work_id,
                            source=source,
                            external_id=external_id,
                        )
                    if owner is not None:
                        raise ConflictError(source, external_id, owner)

                    current = await conn.fetchval(
                        "select external_id from work_external_ids where work_id = $1::uuid and source = $2",
                        work_id,
                        source,
                    )
                    if current is not None and not replace:
                        raise RepositoryConflictError(f"work already linked to {source}:{current}")

                    await conn.execute(
                        """
                        insert into work_external_ids (work_id, source, external_id)
                        values ($1::uuid, $2, $3)
                        on conflict (work_id, source)
                        do update set external_id = excluded.external_id, linked_at = now()
                        """,
                        work_id,
                        source,
                        external_id,
                    )
        except asyncpg.UniqueViolationError as exc:
            # lost the race against another worker linking the same id
            owner = await pool.fetchval(
                "select work_id::text from work_external_ids where source = $1 and external_id = $2",
                source,
                external_id,
            )
            raise ConflictError(source, external_id, owner or "unknown") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work not found") from exc
        return LinkResult(status="linked", work_id=work_id, source=source, external_id=external_id)

    async def find_work_by_external_id(self, source: str, external_id: str) -> CanonicalWork | None:
        pool = await self._get_pool()
        owner = await pool.fetchval(
            "select work_id::text from work_external_ids where source = $1 and external_id = $2",
            source,
            external_id,
        )
        if owner is None:
            return None
        return await self.get_work(owner)

    async def find_works_by_title(self, title: str) -> list[CanonicalWork]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select id::text as id from works where title = $1 order by created_at asc, id asc limit 50",
            title,
        )
        return await self._load_works([row["id"] for row in rows])

    async def save_resolution_candidates(self, work_id: str, candidates: Iterable[ResolutionCandidate]) -> int:
        pool = await self._get_pool()
        rows = list(candidates)
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for row in rows:
                        await conn.execute(
                            """
                            insert into resolution_candidates (work_id, source, external_id, score, query_term, names)
                            values ($1::uuid, $2, $3, $4, $5, $6::jsonb)
                            on conflict (work_id, source, external_id)
                            do update set
                              score = excluded.score,
                              query_term = excluded.query_term,
                              names = excluded.names,
                              created_at = now()
                            """,
                            work_id,
                            row.source,
                            row.external_id,
                            row.score,
                            row.query_term,
                            json.dumps(row.names, ensure_ascii=False),
                        )
        except asyncpg.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("work not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("work not found") from exc
        return len(rows)

    async def list_resolution_candidates(self, work_id: str, *, source: str | None = None) -> list[ResolutionCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select work_id::text as work_id, source, external_id, score, query_term, names, created_at
            from resolution_candidates
            where work_id = $1::uuid and ($2::text is null or source = $2)
            order by score desc, external_id asc
            """,
            work_id,
            source,
        )
        return [
            ResolutionCandidate(
                work_id=row["work_id"],
                source=row["source"],
                external_id=row["external_id"],
                score=float(row["score"]),
                query_term=row["query_term"],
                names=[str(name) for name in self._coerce_json(row["names"]) or []],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _load_works(self, work_ids: list[str]) -> list[CanonicalWork]:
        if not work_ids:
            return []
        pool = await self._get_pool()
        try:
            work_rows = await pool.fetch(
                """
                select id::text as id, title, created_at
                from works
                where id = any($1::uuid[])
                order by created_at asc, id asc
                """,
                work_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return []
        if not work_rows:
            return []

        found_ids = [row["id"] for row in work_rows]
        link_rows = await pool.fetch(
            "select work_id::text as work_id, source, external_id from work_external_ids "
            "where work_id = any($1::uuid[])",
            found_ids,
        )
        attribute_rows = await pool.fetch(
            """
            select work_id::text as work_id, name, value, source, checked_at, conclusive
            from work_attributes
            where work_id = any($1::uuid[])
            """,
            found_ids,
        )

        works = {
            row["id"]: CanonicalWork(id=row["id"], title=row["title"], created_at=row["created_at"])
            for row in work_rows
        }
        for row in link_rows:
            works[row["work_id"]].external_ids[row["source"]] = row["external_id"]
        for row in attribute_rows:
            works[row["work_id"]].attributes[row["name"]] = self._attribute_row_to_model(row)
        return [works[work_id] for work_id in found_ids]

    async def _upsert_attribute(
        self,
        conn: asyncpg.Connection,
        *,
        work_id: str,
        name: str,
        value: Any,
        source: str,
        conclusive: bool,
        checked_at: datetime | None,
    ) -> asyncpg.Record:
        return await conn.fetchrow(
            """
            insert into work_attributes (work_id, name, value, source, checked_at, conclusive)
            values ($1::uuid, $2, $3::jsonb, $4, coalesce($5::timestamptz, now()), $6)
            on conflict (work_id, name)
            do update set
              value = excluded.value,
              source = excluded.source,
              checked_at = excluded.checked_at,
              conclusive = excluded.conclusive
            returning name, value, source, checked_at, conclusive
            """,
            work_id,
            name,
            json.dumps(value, ensure_ascii=False, default=str),
            source,
            checked_at,
            conclusive,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RECONCILER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.task_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.task_retry_base_seconds * (2**multiplier)
        return min(delay, self.task_retry_max_seconds)

    @classmethod
    def _task_row_to_model(cls, row: asyncpg.Record) -> QueueTask:
        payload = cls._coerce_json(row["payload"])
        result = cls._coerce_json(row["result"])
        return QueueTask(
            id=row["id"],
            subject_id=row["subject_id"],
            kind=row["kind"],
            payload=payload if isinstance(payload, dict) else {},
            priority=int(row["priority"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            last_error=row["last_error"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            next_run_at=row["next_run_at"],
            last_success_at=row["last_success_at"],
            result=result if isinstance(result, dict) else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _attribute_row_to_model(cls, row: asyncpg.Record) -> WorkAttribute:
        return WorkAttribute(
            value=cls._coerce_json(row["value"]),
            source=row["source"],
            checked_at=row["checked_at"],
            conclusive=bool(row["conclusive"]),
        )

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        task_max_attempts=settings.task_max_attempts,
        task_retry_base_seconds=settings.task_retry_base_seconds,
        task_retry_max_seconds=settings.task_retry_max_seconds,
    )
