from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from reconciler.core.config import Settings, get_settings
from reconciler.core.errors import AmbiguousDataError, ConflictError, MalformedResponseError
from reconciler.core.telemetry import (
    configure_worker_logging,
    record_task_outcome,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
    task_span,
)
from reconciler.jobs.context import TaskContext, TaskOutcome
from reconciler.jobs.executor import execute_task
from reconciler.jobs.lease_reaper import reap_abandoned
from reconciler.schemas.tasks import QueueTask
from reconciler.services.providers.registry import build_providers, close_providers
from reconciler.services.repository import get_repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerSummary:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)

    def merge(self, other: WorkerSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.outcomes.update(other.outcomes)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def process_task(store: Any, task: QueueTask, context: TaskContext) -> tuple[str, str]:
    """Run one claimed task to a terminal store call; returns (status, outcome)."""
    with task_span(task) as span:
        try:
            outcome = await execute_task(task, context)
        except ConflictError as exc:
            outcome = TaskOutcome(
                "duplicate",
                {"source": exc.source, "external_id": exc.external_id, "owner_work_id": exc.owner_work_id},
            )
        except AmbiguousDataError as exc:
            outcome = TaskOutcome("ambiguous", {"error": str(exc)})
        except MalformedResponseError as exc:
            if task.attempt + 1 >= store.task_max_attempts:
                outcome = TaskOutcome("ambiguous", {"error": str(exc)})
            else:
                status = await store.fail(task.id, f"malformed_response: {exc}")
                record_task_outcome(span, status, "malformed_response")
                logger.warning(
                    "task malformed response subject=%s attempt=%s status=%s: %s",
                    task.subject_id,
                    task.attempt + 1,
                    status,
                    exc,
                )
                return status, "malformed_response"
        except Exception as exc:
            status = await store.fail(task.id, f"{type(exc).__name__}: {exc}")
            record_task_outcome(span, status, "error", exc)
            logger.exception("task failed subject=%s attempt=%s status=%s", task.subject_id, task.attempt + 1, status)
            return status, "error"

        await store.complete(task.id, outcome.to_result())
        record_task_outcome(span, "done", outcome.outcome)
        logger.info("task done subject=%s outcome=%s", task.subject_id, outcome.outcome)
        return "done", outcome.outcome


async def run_worker(
    store: Any,
    context: TaskContext,
    settings: Settings,
    *,
    worker_id: str | None = None,
    kinds: Iterable[str] | None = None,
    max_iterations: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WorkerSummary:
    worker_id = worker_id or settings.worker_id or default_worker_id()
    kind_filter = list(kinds) if kinds else (list(settings.worker_kinds) or None)
    iterations = settings.max_iterations if max_iterations is None else max_iterations
    summary = WorkerSummary()
    backoff = settings.poll_interval_seconds
    last_reap_at: float | None = None

    for _ in range(max(0, iterations)):
        try:
            now = clock()
            if last_reap_at is None or now - last_reap_at >= settings.reaper_interval_seconds:
                await reap_abandoned(
                    store,
                    claim_timeout_seconds=settings.claim_timeout_seconds,
                    limit=settings.reaper_batch_size,
                )
                last_reap_at = now

            task = await store.claim(worker_id, kind_filter)
            if task is None:
                if settings.exit_when_empty:
                    logger.info("queue empty; worker %s stopping", worker_id)
                    break
                await sleep(settings.poll_interval_seconds)
                continue

            status, outcome = await process_task(store, task, context)
            summary.processed += 1
            summary.outcomes[outcome] += 1
            if status == "done":
                summary.completed += 1
            else:
                summary.failed += 1
            backoff = settings.poll_interval_seconds
        except Exception as exc:  # pragma: no cover - store outage robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await sleep(sleep_for)
            backoff = sleep_for

    logger.info(
        "worker %s finished processed=%s completed=%s failed=%s outcomes=%s",
        worker_id,
        summary.processed,
        summary.completed,
        summary.failed,
        dict(summary.outcomes),
    )
    return summary


async def main() -> WorkerSummary:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    kinds = list(settings.worker_kinds) or None
    providers = build_providers(settings, kinds)
    store = get_repository()
    context = TaskContext.from_settings(store, providers, settings)
    base_id = settings.worker_id or default_worker_id()

    try:
        results = await asyncio.gather(
            *(
                run_worker(store, context, settings, worker_id=f"{base_id}-{index}", kinds=kinds)
                for index in range(max(1, settings.worker_concurrency))
            )
        )
    finally:
        await close_providers(providers)
        await store.close()
        shutdown_worker_telemetry(telemetry_runtime)

    total = WorkerSummary()
    for result in results:
        total.merge(result)
    return total


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
