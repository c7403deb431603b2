"""Timestamps and the single "newest wins" rule.

Every place that decides which of two snapshots is more recent goes through
compare_recency(), so save, load and merge agree on tie-breaks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string. Returns None for anything unparseable.

    Naive values are taken as UTC so they compare against aware ones.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _field(obj: Any, name: str, alias: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(alias, obj.get(name))
    return getattr(obj, name, None)


def state_timestamp(state: Any) -> datetime | None:
    """Best-effort recency of a state or record.

    Prefers ``lastModified``, then the checkpoint timestamp, else None.
    """
    stamp = parse_timestamp(_field(state, "last_modified", "lastModified"))
    if stamp is not None:
        return stamp
    checkpoint = _field(state, "checkpoint", "checkpoint")
    if checkpoint is not None:
        return parse_timestamp(_field(checkpoint, "timestamp", "timestamp"))
    return None


def compare_recency(a: datetime | None, b: datetime | None) -> int:
    """Return >0 if ``a`` is newer, <0 if ``b`` is newer, 0 if undecided.

    A missing timestamp counts as older than any present one; two missing
    timestamps are equally old.
    """
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    if a > b:
        return 1
    if a < b:
        return -1
    return 0


def is_newer(a: Any, b: Any) -> bool:
    """True only when ``a`` is strictly newer than ``b``."""
    return compare_recency(state_timestamp(a), state_timestamp(b)) > 0
