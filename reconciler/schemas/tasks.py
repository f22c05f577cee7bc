import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskKind = Literal["resolve-id", "fetch-facts", "check-availability", "refresh-stats", "generate-score"]
TaskStatus = Literal["pending", "claimed", "done", "failed"]

TASK_KINDS: tuple[str, ...] = ("resolve-id", "fetch-facts", "check-availability", "refresh-stats", "generate-score")
CHECK_TASK_KINDS: frozenset[str] = frozenset({"check-availability", "refresh-stats"})
OPEN_TASK_STATUSES: frozenset[str] = frozenset({"pending", "claimed"})


class QueueTask(BaseModel):
    id: str
    subject_id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    status: TaskStatus = "pending"
    attempt: int = 0
    last_error: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    next_run_at: datetime | None = None
    last_success_at: datetime | None = None
    result: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def payload_key(payload: dict[str, Any] | None) -> str:
    """Canonical JSON used for the (subject, kind, payload) uniqueness key."""
    return json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
