"""Salvaging a playable state from a record that failed validation.

Tried in order by the engine when a stored session does not validate:

  1. from_checkpoint   - the embedded checkpoint, if its scene and history
                         are intact.
  2. from_history      - every intact history entry, with the current scene
                         rebuilt from the last entry and generic choices.

Both take the migrated camelCase record and return None when they cannot
help. Neither writes anything back to storage.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from questline.models import Checkpoint, Choice, GameHistoryEntry, GameState, Scene
from questline.parsing import FALLBACK_CHOICES

from .validator import history_entry_errors, history_errors, scene_errors

logger = logging.getLogger(__name__)

RECOVERED_SCENE_ID = "scene-recovered"
RECOVERED_DESCRIPTION = "You gather your bearings and take stock of where your journey has led."


def _carry_over(record: Mapping[str, Any]) -> dict[str, Any]:
    game_over = record.get("gameOver")
    session_id = record.get("sessionId")
    return {
        "game_over": game_over if isinstance(game_over, bool) else False,
        "session_id": session_id if isinstance(session_id, str) else None,
    }


def from_checkpoint(record: Mapping[str, Any]) -> GameState | None:
    checkpoint = record.get("checkpoint")
    if not isinstance(checkpoint, Mapping):
        return None
    if scene_errors(checkpoint.get("scene"), "checkpoint.scene"):
        return None
    if history_errors(checkpoint.get("history"), "checkpoint.history"):
        return None
    try:
        scene = Scene.model_validate(checkpoint["scene"])
        history = [GameHistoryEntry.model_validate(e) for e in checkpoint["history"]]
        kept = (
            Checkpoint.model_validate(checkpoint)
            if isinstance(checkpoint.get("timestamp"), str) else None
        )
    except ValidationError as e:
        logger.warning("Checkpoint looked intact but did not load: %s", e)
        return None

    logger.info("Recovered state from checkpoint: scene=%s history_len=%d", scene.id, len(history))
    return GameState(current_scene=scene, history=history, checkpoint=kept, **_carry_over(record))


def from_history(record: Mapping[str, Any]) -> GameState | None:
    raw_history = record.get("history")
    if not isinstance(raw_history, list):
        return None

    history: list[GameHistoryEntry] = []
    for i, raw in enumerate(raw_history):
        if history_entry_errors(raw, f"history[{i}]"):
            continue
        try:
            history.append(GameHistoryEntry.model_validate(raw))
        except ValidationError:
            continue
    if not history:
        return None

    last = history[-1]
    scene = Scene(
        id=last.scene_id.strip() or RECOVERED_SCENE_ID,
        description=(last.scene_description or "").strip() or RECOVERED_DESCRIPTION,
        choices=[Choice(id=i, text=t) for i, t in enumerate(FALLBACK_CHOICES, start=1)],
    )
    dropped = len(raw_history) - len(history)
    logger.info(
        "Reconstructed state from history: kept=%d dropped=%d scene=%s",
        len(history), dropped, scene.id,
    )
    return GameState(current_scene=scene, history=history, **_carry_over(record))


def recover(record: Mapping[str, Any]) -> GameState | None:
    """Checkpoint first, then history reconstruction."""
    return from_checkpoint(record) or from_history(record)
