"""Session storage.

The engine needs only two primitives from durable storage:

    async def load_latest(self, session_key: str) -> dict | None: ...
    async def persist(self, session_key: str, state: VersionedState) -> None: ...

load_latest() returns the raw camelCase record exactly as stored, so old
schema versions reach the versioner untouched. persist() must round-trip a
VersionedState exactly, including nested scene, history and checkpoint.

Stores that keep the record they replaced also implement BackupStore
(load_backup), which the engine falls back to when the latest record
cannot be resumed.

Two implementations are provided:

    JsonSessionStore   - flat JSON files, one per session, with a .bak copy
                         of the previous record.
    MemorySessionStore - dict-backed; useful for tests and throwaway runs.

Directory layout for JsonSessionStore:

    {base}/
      sessions/
        {slug}.json     ← latest VersionedState record
        {slug}.bak      ← record it replaced
        {slug}.tmp      ← next record, only while a write is in progress
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import shutil
import unicodedata
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from questline.models import VersionedState, dump_state

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """A persistence failure that retrying will not fix."""


class TransientStoreError(StoreError):
    """A persistence failure worth retrying (lock contention, I/O hiccup)."""


class SessionStore(Protocol):
    async def load_latest(self, session_key: str) -> dict[str, Any] | None: ...

    async def persist(self, session_key: str, state: VersionedState) -> None: ...


@runtime_checkable
class BackupStore(Protocol):
    """A store that also keeps the record replaced by the last persist."""

    async def load_backup(self, session_key: str) -> dict[str, Any] | None: ...


def slugify(key: str) -> str:
    """Convert a session key to a filesystem-safe name.

    "Aldric's Quest" → "aldrics-quest"
    """
    text = unicodedata.normalize("NFKD", key)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


class JsonSessionStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions = base_path / "sessions"
        self._sessions.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_file(self, session_key: str) -> Path:
        return self._sessions / f"{slugify(session_key)}.json"

    def _backup_file(self, session_key: str) -> Path:
        return self._sessions / f"{slugify(session_key)}.bak"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # SessionStore
    # ------------------------------------------------------------------

    async def load_latest(self, session_key: str) -> dict[str, Any] | None:
        path = self._session_file(session_key)
        if not path.is_file():
            return None
        try:
            return self._read_json(path)
        except json.JSONDecodeError as e:
            raise StoreError(f"Session record for {session_key!r} is not valid JSON") from e

    async def persist(self, session_key: str, state: VersionedState) -> None:
        """Write the new record beside the old one, back up the old one, then swap.

        The latest record is only ever replaced by an atomic rename, so a
        failed write leaves it in place.
        """
        path = self._session_file(session_key)
        tmp = path.with_suffix(".tmp")
        try:
            self._write_json(tmp, dump_state(state))
            if path.is_file():
                shutil.copyfile(path, self._backup_file(session_key))
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if isinstance(e, PermissionError):
                raise StoreError(f"Cannot write session {session_key!r}: {e}") from e
            raise TransientStoreError(f"Write failed for session {session_key!r}: {e}") from e
        logger.debug("Session %s persisted to %s", session_key, path)

    # ------------------------------------------------------------------
    # BackupStore
    # ------------------------------------------------------------------

    async def load_backup(self, session_key: str) -> dict[str, Any] | None:
        """The record replaced by the most recent persist, if any."""
        path = self._backup_file(session_key)
        if not path.is_file():
            return None
        try:
            return self._read_json(path)
        except json.JSONDecodeError:
            logger.warning("Backup for session %s is not valid JSON", session_key)
            return None


class MemorySessionStore:
    """Keeps every persisted record per session; the last one is "latest"."""

    def __init__(self) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {}

    async def load_latest(self, session_key: str) -> dict[str, Any] | None:
        saved = self.records.get(session_key)
        if not saved:
            return None
        return copy.deepcopy(saved[-1])

    async def load_backup(self, session_key: str) -> dict[str, Any] | None:
        saved = self.records.get(session_key)
        if not saved or len(saved) < 2:
            return None
        return copy.deepcopy(saved[-2])

    async def persist(self, session_key: str, state: VersionedState) -> None:
        self.records.setdefault(session_key, []).append(dump_state(state))

    def put_raw(self, session_key: str, record: dict[str, Any]) -> None:
        """Store a record verbatim, bypassing the model (legacy fixtures)."""
        self.records.setdefault(session_key, []).append(copy.deepcopy(record))
