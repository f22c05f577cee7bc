from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from reconciler.core.errors import ConflictError, RepositoryConflictError, RepositoryNotFoundError
from reconciler.jobs.lease_reaper import should_requeue
from reconciler.schemas.tasks import OPEN_TASK_STATUSES, QueueTask, payload_key
from reconciler.schemas.works import (
    CanonicalWork,
    LinkResult,
    ResolutionCandidate,
    WorkAttribute,
    can_overwrite,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Queue and canonical store kept in process memory.

    Mirrors ``PostgresRepository`` method for method so handlers and the worker
    loop can run against it in tests and dry runs. A single ``asyncio.Lock``
    stands in for row locks.
    """

    def __init__(
        self,
        *,
        task_max_attempts: int = 5,
        task_retry_base_seconds: int = 30,
        task_retry_max_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.task_max_attempts = max(1, task_max_attempts)
        self.task_retry_base_seconds = max(0, task_retry_base_seconds)
        self.task_retry_max_seconds = max(0, task_retry_max_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.tasks: dict[str, QueueTask] = {}
        self.works: dict[str, CanonicalWork] = {}
        self.candidates: dict[tuple[str, str, str], ResolutionCandidate] = {}
        self._external_owner: dict[tuple[str, str], str] = {}
        self._sequence = 0

    async def close(self) -> None:
        return None

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
        key = payload_key(dict(payload or {}))
        async with self._lock:
            for task in self.tasks.values():
                if (
                    task.subject_id == subject_id
                    and task.kind == kind
                    and task.status in OPEN_TASK_STATUSES
                    and payload_key(task.payload) == key
                ):
                    return None

            now = self._clock()
            self._sequence += 1
            task_id = str(uuid4())
            self.tasks[task_id] = QueueTask(
                id=task_id,
                subject_id=subject_id,
                kind=kind,
                payload=dict(payload or {}),
                priority=priority,
                next_run_at=run_at or now,
                # sequence breaks created_at ties when the clock is frozen
                created_at=now + timedelta(microseconds=self._sequence),
                updated_at=now,
            )
            return task_id

    async def claim(self, worker_id: str, kinds: Iterable[str] | None = None) -> QueueTask | None:
        allowed = set(kinds) if kinds else None
        async with self._lock:
            now = self._clock()
            ready = [
                task
                for task in self.tasks.values()
                if task.status == "pending"
                and (task.next_run_at is None or task.next_run_at <= now)
                and (allowed is None or task.kind in allowed)
            ]
            if not ready:
                return None
            ready.sort(key=lambda task: (-task.priority, task.created_at or now))
            task = ready[0]
            task.status = "claimed"
            task.claimed_by = worker_id
            task.claimed_at = now
            task.updated_at = now
            return task.model_copy(deep=True)

    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> QueueTask:
        async with self._lock:
            task = self._require_claimed(task_id)
            now = self._clock()
            task.status = "done"
            task.result = result
            task.last_error = None
            task.last_success_at = now
            task.updated_at = now
            return task.model_copy(deep=True)

    async def fail(self, task_id: str, error: str) -> str:
        async with self._lock:
            task = self._require_claimed(task_id)
            now = self._clock()
            task.attempt += 1
            task.last_error = error[:2000]
            task.updated_at = now
            if task.attempt >= self.task_max_attempts:
                task.status = "failed"
            else:
                task.status = "pending"
                task.claimed_by = None
                task.claimed_at = None
                task.next_run_at = now + timedelta(seconds=self._compute_retry_delay_seconds(attempt=task.attempt))
            return task.status

    async def requeue_abandoned(self, claim_timeout_seconds: int, limit: int = 100) -> int:
        bounded_limit = max(1, min(limit, 1000))
        async with self._lock:
            now = self._clock()
            expired = sorted(
                (
                    task
                    for task in self.tasks.values()
                    if should_requeue(task, claim_timeout_seconds=claim_timeout_seconds, now=now)
                ),
                key=lambda task: task.claimed_at,
            )[:bounded_limit]
            for task in expired:
                task.status = "pending"
                task.claimed_by = None
                task.claimed_at = None
                task.next_run_at = now
                task.updated_at = now
            return len(expired)

    async def get_task(self, task_id: str) -> QueueTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise RepositoryNotFoundError("task not found")
        return task.model_copy(deep=True)

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        subject_id: str | None = None,
        limit: int = 100,
    ) -> list[QueueTask]:
        rows = [
            task
            for task in self.tasks.values()
            if (status is None or task.status == status)
            and (kind is None or task.kind == kind)
            and (subject_id is None or task.subject_id == subject_id)
        ]
        rows.sort(key=lambda task: task.created_at or self._clock())
        return [task.model_copy(deep=True) for task in rows[: max(0, limit)]]

    def _require_claimed(self, task_id: str) -> QueueTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise RepositoryNotFoundError("task not found")
        if task.status != "claimed":
            raise RepositoryConflictError("task is not in claimed state")
        return task

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.task_retry_base_seconds <= 0:
            return 0
        delay = self.task_retry_base_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.task_retry_max_seconds)

    # canonical works

    async def create_work(self, title: str, *, work_id: str | None = None) -> CanonicalWork:
        async with self._lock:
            new_id = work_id or str(uuid4())
            if new_id in self.works:
                raise RepositoryConflictError("work already exists")
            work = CanonicalWork(id=new_id, title=title, created_at=self._clock())
            self.works[new_id] = work
            return work.model_copy(deep=True)

    async def get_work(self, work_id: str) -> CanonicalWork:
        work = self.works.get(work_id)
        if work is None:
            raise RepositoryNotFoundError("work not found")
        return work.model_copy(deep=True)

    async def list_works(self, *, limit: int = 100, offset: int = 0) -> list[CanonicalWork]:
        ordered = sorted(self.works.values(), key=lambda work: (work.created_at or self._clock(), work.id))
        return [work.model_copy(deep=True) for work in ordered[max(0, offset) : max(0, offset) + max(0, limit)]]

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
        async with self._lock:
            work = self._require_work(work_id)
            now = self._clock()
            written: list[str] = []
            for name, value in values.items():
                if value is None:
                    continue
                if not can_overwrite(work.attributes.get(name), force=force):
                    continue
                work.attributes[name] = WorkAttribute(value=value, source=source, checked_at=now, conclusive=conclusive)
                written.append(name)
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
        async with self._lock:
            work = self._require_work(work_id)
            attribute = WorkAttribute(
                value=value,
                source=source,
                checked_at=checked_at or self._clock(),
                conclusive=conclusive,
            )
            work.attributes[name] = attribute
            return attribute.model_copy()

    async def link_external_id(
        self,
        work_id: str,
        source: str,
        external_id: str,
        *,
        replace: bool = False,
    ) -> LinkResult:
        async with self._lock:
            work = self._require_work(work_id)
            owner = self._external_owner.get((source, external_id))
            if owner == work_id:
                return LinkResult(status="already_linked", work_id=work_id, source=source, external_id=external_id)
            if owner is not None:
                raise ConflictError(source, external_id, owner)

            current = work.external_ids.get(source)
            if current is not None:
                if not replace:
                    raise RepositoryConflictError(f"work already linked to {source}:{current}")
                self._external_owner.pop((source, current), None)

            work.external_ids[source] = external_id
            self._external_owner[(source, external_id)] = work_id
            return LinkResult(status="linked", work_id=work_id, source=source, external_id=external_id)

    async def find_work_by_external_id(self, source: str, external_id: str) -> CanonicalWork | None:
        owner = self._external_owner.get((source, external_id))
        if owner is None:
            return None
        return self.works[owner].model_copy(deep=True)

    async def find_works_by_title(self, title: str) -> list[CanonicalWork]:
        return [work.model_copy(deep=True) for work in self.works.values() if work.title == title]

    async def save_resolution_candidates(self, work_id: str, candidates: Iterable[ResolutionCandidate]) -> int:
        async with self._lock:
            self._require_work(work_id)
            now = self._clock()
            saved = 0
            for candidate in candidates:
                row = candidate.model_copy(update={"work_id": work_id, "created_at": now})
                self.candidates[(work_id, row.source, row.external_id)] = row
                saved += 1
            return saved

    async def list_resolution_candidates(self, work_id: str, *, source: str | None = None) -> list[ResolutionCandidate]:
        rows = [
            row
            for (owner, row_source, _), row in self.candidates.items()
            if owner == work_id and (source is None or row_source == source)
        ]
        rows.sort(key=lambda row: (-row.score, row.external_id))
        return [row.model_copy() for row in rows]

    def _require_work(self, work_id: str) -> CanonicalWork:
        work = self.works.get(work_id)
        if work is None:
            raise RepositoryNotFoundError("work not found")
        return work
