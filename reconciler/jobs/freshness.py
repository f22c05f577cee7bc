from __future__ import annotations

from datetime import datetime, timedelta, timezone

from reconciler.schemas.works import WorkAttribute


def attribute_is_fresh(
    attribute: WorkAttribute | None,
    *,
    freshness_days: float,
    now: datetime | None = None,
) -> bool:
    """True when the attribute was conclusively verified inside the freshness window."""
    if attribute is None or attribute.checked_at is None or not attribute.conclusive:
        return False
    current = now or datetime.now(timezone.utc)
    checked_at = attribute.checked_at
    if checked_at.tzinfo is None:
        checked_at = checked_at.replace(tzinfo=timezone.utc)
    return current - checked_at < timedelta(days=max(0.0, freshness_days))


def check_skip_reason(
    attribute: WorkAttribute | None,
    *,
    freshness_days: float,
    now: datetime | None = None,
    force: bool = False,
) -> str | None:
    """Why a re-check of ``attribute`` should not run, or None when it should."""
    if attribute is None:
        return None
    if attribute.is_manual and not force:
        return "manual"
    if not force and attribute_is_fresh(attribute, freshness_days=freshness_days, now=now):
        return "fresh"
    return None
