"""Auto-save coordinator.

Turns a high rate of state changes into a trickle of writes:

  - enqueue() is synchronous and never blocks the narrative loop. It pushes
    the state onto a bounded per-session queue and starts a drain task if
    none is running for that session.
  - A drain takes only the newest queued state, clears the queue and
    persists it. States that arrive while a write is in flight are picked
    up by the same drain once the write finishes, so the newest state is
    always the last one written and at most one write per session is ever
    in flight.
  - TransientStoreError is retried with exponential backoff. Anything else,
    or running out of attempts, is reported through the status callback as
    "failed"; nothing is raised into the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from questline.models import GameState
from questline.storage import TransientStoreError

logger = logging.getLogger(__name__)

SaveStatus = Literal["queued", "saved", "failed"]
PersistFn = Callable[[str, GameState], Awaitable[None]]
StatusCallback = Callable[[str, SaveStatus, Exception | None], None]


class SaveFailedError(RuntimeError):
    """A state could not be made durable. The in-memory state is intact."""


@dataclass
class _SessionSlot:
    pending: deque[GameState]
    task: asyncio.Task | None = None
    last_saved: float | None = None


@dataclass
class SaveQueue:
    """Debounced, retrying, one-write-at-a-time persistence per session.

    Args:
        persist:            Coroutine that makes one state durable.
        max_queue_size:     Pending states kept per session; oldest dropped.
        max_attempts:       Total tries per state for transient failures.
        retry_base_delay:   First backoff in seconds; doubles each retry.
        auto_save_interval: Seconds after a save before should_auto_save()
                            turns true again.
        on_status:          Called with (session_key, status, error).
        clock:              Monotonic time source, swappable in tests.
    """

    persist: PersistFn
    max_queue_size: int = 10
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    auto_save_interval: float = 5.0
    on_status: StatusCallback | None = None
    clock: Callable[[], float] = time.monotonic
    _slots: dict[str, _SessionSlot] = field(default_factory=dict, init=False, repr=False)

    def _slot(self, session_key: str) -> _SessionSlot:
        slot = self._slots.get(session_key)
        if slot is None:
            slot = _SessionSlot(pending=deque(maxlen=self.max_queue_size))
            self._slots[session_key] = slot
        return slot

    def _notify(self, session_key: str, status: SaveStatus, error: Exception | None = None) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(session_key, status, error)
        except Exception:
            logger.exception("Save status handler failed for %s", session_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, state: GameState, session_key: str) -> None:
        """Queue a state for saving. Must be called from a running event loop."""
        slot = self._slot(session_key)
        slot.pending.append(state.model_copy(deep=True))
        self._notify(session_key, "queued")
        if slot.task is None or slot.task.done():
            slot.task = asyncio.get_running_loop().create_task(self._drain(session_key))

    def is_saving(self, session_key: str) -> bool:
        slot = self._slots.get(session_key)
        return slot is not None and slot.task is not None and not slot.task.done()

    def pending_count(self, session_key: str) -> int:
        slot = self._slots.get(session_key)
        return len(slot.pending) if slot else 0

    def should_auto_save(self, session_key: str) -> bool:
        """True once auto_save_interval has passed since the last good save."""
        slot = self._slots.get(session_key)
        if slot is None or slot.last_saved is None:
            return True
        return self.clock() - slot.last_saved >= self.auto_save_interval

    async def flush(self, session_key: str) -> None:
        """Wait until everything queued for the session has been handled."""
        slot = self._slots.get(session_key)
        if slot is not None and slot.task is not None and not slot.task.done():
            await asyncio.wait([slot.task])

    async def close(self) -> None:
        """Cancel in-flight drains and backoff sleeps (session teardown)."""
        tasks = [s.task for s in self._slots.values() if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Save queue closed, %d drains cancelled", len(tasks))

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def _drain(self, session_key: str) -> None:
        slot = self._slots[session_key]
        while slot.pending:
            state = slot.pending[-1]
            dropped = len(slot.pending) - 1
            slot.pending.clear()
            if dropped:
                logger.debug("Save for %s superseded %d queued states", session_key, dropped)
            try:
                await self._persist_with_retry(session_key, state)
            except SaveFailedError as e:
                logger.error("Saving session %s failed: %s", session_key, e)
                self._notify(session_key, "failed", e)
                continue
            slot.last_saved = self.clock()
            logger.info("Session %s saved", session_key)
            self._notify(session_key, "saved")

    async def _persist_with_retry(self, session_key: str, state: GameState) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.persist(session_key, state)
                return
            except TransientStoreError as e:
                if attempt >= self.max_attempts:
                    raise SaveFailedError(
                        f"Gave up after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Transient save error for %s (attempt %d/%d), retrying in %.2fs: %s",
                    session_key, attempt, self.max_attempts, delay, e,
                )
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise SaveFailedError(str(e) or type(e).__name__) from e
