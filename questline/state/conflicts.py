"""Merging two diverged snapshots of the same session.

The newer snapshot (by recency.compare_recency, ties favour the first
argument) is the primary. Its current scene always survives; histories are
unioned by ``(sceneId, choice)`` and the later checkpoint is kept.

A shorter-but-newer primary still wins the current scene even when the
older side has more history. Its unique entries are kept by the union, but
entries whose ``(sceneId, choice)`` pair collides with the primary's are
dropped in favour of the primary's copy.
"""

from __future__ import annotations

import logging

from questline.models import Checkpoint, GameHistoryEntry, GameState, as_game_state
from questline.recency import compare_recency, parse_timestamp, state_timestamp

logger = logging.getLogger(__name__)


def _order(a: GameState, b: GameState) -> tuple[GameState, GameState]:
    """Return (primary, secondary)."""
    if compare_recency(state_timestamp(b), state_timestamp(a)) > 0:
        return b, a
    return a, b


def merge_histories(
    primary: list[GameHistoryEntry], secondary: list[GameHistoryEntry]
) -> list[GameHistoryEntry]:
    """Union by (scene_id, choice), then order timestamped entries.

    Entries with a timestamp are stably sorted among the positions that
    timestamped entries occupy; entries without one stay where they are.
    """
    merged = list(primary)
    seen = {(e.scene_id, e.choice) for e in merged}
    for entry in secondary:
        key = (entry.scene_id, entry.choice)
        if key not in seen:
            merged.append(entry)
            seen.add(key)

    slots = [i for i, e in enumerate(merged) if parse_timestamp(e.timestamp) is not None]
    ordered = sorted((merged[i] for i in slots), key=lambda e: parse_timestamp(e.timestamp))
    for slot, entry in zip(slots, ordered):
        merged[slot] = entry
    return merged


def merge_checkpoints(primary: Checkpoint | None, secondary: Checkpoint | None) -> Checkpoint | None:
    if primary is None or secondary is None:
        return primary or secondary
    newer = compare_recency(parse_timestamp(secondary.timestamp), parse_timestamp(primary.timestamp))
    return secondary if newer > 0 else primary


def resolve(a: GameState, b: GameState | None) -> GameState:
    """Merge two snapshots without losing progress from either side.

    Falls back to the newer snapshot unmerged if anything goes wrong.
    """
    if b is None:
        return a
    primary, secondary = _order(a, b)
    try:
        merged = as_game_state(primary)
        merged.history = merge_histories(primary.history, secondary.history)
        checkpoint = merge_checkpoints(primary.checkpoint, secondary.checkpoint)
        merged.checkpoint = checkpoint.model_copy(deep=True) if checkpoint else None
    except Exception:
        logger.exception("Error resolving state conflict, keeping newer snapshot")
        return primary

    logger.info(
        "States merged: history_len=%d has_checkpoint=%s",
        len(merged.history), merged.checkpoint is not None,
    )
    return merged
