"""Schema versioning for persisted game states.

Every record written to storage is a VersionedState stamped with
CURRENT_VERSION. On load, older records are walked forward through
MIGRATIONS one step at a time. The registry is keyed by *source* version;
each function upgrades a raw camelCase record by exactly one step and sets
the new ``version``.

Versions are ``vMAJOR.MINOR`` strings compared as integer tuples, so
``v0.10`` is newer than ``v0.9``. Records without a version are legacy
records and start at OLDEST_VERSION. A version that is neither a MIGRATIONS
key nor CURRENT_VERSION has no migration path and is rejected.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from questline.models import GameState, VersionedState, as_game_state, dump_state
from questline.recency import now_iso

logger = logging.getLogger(__name__)

CURRENT_VERSION = "v1.0"
OLDEST_VERSION = "v0.8"

_VERSION_RE = re.compile(r"^v(\d+)\.(\d+)$")


class StateMigrationError(Exception):
    """Raised when a stored record cannot be brought to the current schema."""


Migration = Callable[[dict[str, Any]], dict[str, Any]]


def parse_version(version: Any) -> tuple[int, int]:
    if not isinstance(version, str):
        raise StateMigrationError(f"Version must be a string, got {type(version).__name__}")
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise StateMigrationError(f"Malformed version {version!r}, expected vMAJOR.MINOR")
    return int(match.group(1)), int(match.group(2))


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def _backfill_history(history: Any, stamp: str) -> Any:
    if not isinstance(history, list):
        return history
    filled = []
    for entry in history:
        if isinstance(entry, dict) and not entry.get("timestamp"):
            entry = {**entry, "timestamp": stamp}
        filled.append(entry)
    return filled


def _migrate_v08_to_v09(record: dict[str, Any]) -> dict[str, Any]:
    """History entries gained timestamps; backfill the missing ones."""
    stamp = now_iso()
    upgraded = dict(record)
    upgraded["history"] = _backfill_history(record.get("history"), stamp)
    checkpoint = record.get("checkpoint")
    if isinstance(checkpoint, dict):
        upgraded["checkpoint"] = {
            **checkpoint,
            "history": _backfill_history(checkpoint.get("history"), stamp),
        }
    upgraded["version"] = "v0.9"
    return upgraded


def _numeric_ids(scene: Any) -> Any:
    if not isinstance(scene, dict) or not isinstance(scene.get("choices"), list):
        return scene
    choices = []
    for choice in scene["choices"]:
        if isinstance(choice, dict) and isinstance(choice.get("id"), str):
            raw = choice["id"].strip()
            if raw.lstrip("-").isdigit():
                choice = {**choice, "id": int(raw)}
        choices.append(choice)
    return {**scene, "choices": choices}


def _migrate_v09_to_v10(record: dict[str, Any]) -> dict[str, Any]:
    """Choice ids became integers."""
    upgraded = dict(record)
    upgraded["currentScene"] = _numeric_ids(record.get("currentScene"))
    checkpoint = record.get("checkpoint")
    if isinstance(checkpoint, dict):
        upgraded["checkpoint"] = {**checkpoint, "scene": _numeric_ids(checkpoint.get("scene"))}
    upgraded["version"] = "v1.0"
    return upgraded


MIGRATIONS: dict[str, Migration] = {
    "v0.8": _migrate_v08_to_v09,
    "v0.9": _migrate_v09_to_v10,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def stamp(state: GameState, now: datetime | str | None = None) -> VersionedState:
    """Tag a state with CURRENT_VERSION and a modification time."""
    if isinstance(now, datetime):
        now = now.isoformat()
    data = as_game_state(state).model_dump()
    return VersionedState(**data, version=CURRENT_VERSION, last_modified=now or now_iso())


def migrate_record(record: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
    """Upgrade a raw record to CURRENT_VERSION without building a model.

    The input is never modified. The result still carries ``version`` and
    ``lastModified`` so it can be validated and re-read as-is.
    """
    if isinstance(record, BaseModel):
        payload = dump_state(record)
    elif isinstance(record, Mapping):
        payload = copy.deepcopy(dict(record))
    else:
        raise StateMigrationError("Stored record was not an object.")

    declared = payload.get("version") or OLDEST_VERSION
    version = parse_version(declared)
    current = parse_version(CURRENT_VERSION)
    if version > current:
        raise StateMigrationError(
            f"Record schema {declared} is newer than supported {CURRENT_VERSION}."
        )
    if version != current and version not in {parse_version(v) for v in MIGRATIONS}:
        raise StateMigrationError(f"No migration path from schema {declared}.")

    for source in sorted(MIGRATIONS, key=parse_version):
        step = parse_version(source)
        if step < version:
            continue
        if step >= current:
            break
        try:
            payload = MIGRATIONS[source](payload)
        except StateMigrationError:
            raise
        except Exception as e:
            raise StateMigrationError(f"Migration from {source} failed: {e}") from e
        logger.info("State migrated from %s to %s", source, payload.get("version"))

    payload["version"] = CURRENT_VERSION
    return payload


def to_game_state(record: Mapping[str, Any]) -> GameState:
    """Build the in-memory state from a migrated record."""
    data = {k: v for k, v in record.items() if k not in ("version", "lastModified")}
    try:
        return GameState.model_validate(data)
    except ValidationError as e:
        raise StateMigrationError(f"Migrated record does not fit the schema: {e}") from e


def migrate(record: Mapping[str, Any] | BaseModel) -> GameState:
    """Upgrade a stored record and return it as a GameState."""
    return to_game_state(migrate_record(record))
