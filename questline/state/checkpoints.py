"""In-memory save-points.

Both transforms are pure: they return a new GameState holding deep copies
and never touch the argument, which the save queue may be reading at the
same time. When a precondition fails the very same object is returned;
callers compare identity to detect the no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime

from questline.models import Checkpoint, GameState
from questline.recency import now_iso

logger = logging.getLogger(__name__)


def create_checkpoint(state: GameState, now: datetime | str | None = None) -> GameState:
    """Snapshot the current scene and history into ``state.checkpoint``."""
    if state.current_scene is None:
        logger.warning("Cannot create checkpoint: no current scene")
        return state
    if isinstance(now, datetime):
        now = now.isoformat()

    checkpoint = Checkpoint(
        scene=state.current_scene.model_copy(deep=True),
        history=[e.model_copy() for e in state.history],
        timestamp=now or now_iso(),
    )
    updated = state.model_copy(deep=True, update={"checkpoint": checkpoint})
    logger.info(
        "Checkpoint created: scene=%s history_len=%d",
        checkpoint.scene.id, len(checkpoint.history),
    )
    return updated


def restore_checkpoint(state: GameState) -> GameState:
    """Rewind scene and history to the checkpoint. The checkpoint is kept."""
    if state.checkpoint is None:
        logger.warning("Cannot restore: no checkpoint exists")
        return state

    restored = state.model_copy(deep=True)
    restored.current_scene = state.checkpoint.scene.model_copy(deep=True)
    restored.history = [e.model_copy() for e in state.checkpoint.history]
    logger.info(
        "Checkpoint restored: scene=%s history_len=%d",
        restored.current_scene.id, len(restored.history),
    )
    return restored
