"""Structural validation of game states before they are saved or resumed.

The validator works on the camelCase record shape, so it can judge raw
records straight out of storage as well as in-memory models. It never
raises for malformed input: every violation is collected with a dotted
path, and the caller decides whether to reject the write or start
recovery.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from questline.models import Scene


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def __bool__(self) -> bool:
        return self.valid


def _as_record(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, exclude_none=True)
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def scene_errors(scene: Any, path: str = "currentScene") -> list[str]:
    scene = _as_record(scene)
    if not isinstance(scene, Mapping):
        return [f"{path}: must be an object"]

    errors: list[str] = []
    scene_id = scene.get("id")
    if not isinstance(scene_id, str) or not scene_id.strip():
        errors.append(f"{path}.id: must be a non-empty string")
    if not isinstance(scene.get("description"), str):
        errors.append(f"{path}.description: must be a string")

    choices = scene.get("choices")
    if not isinstance(choices, list):
        errors.append(f"{path}.choices: must be an array")
        return errors
    for i, choice in enumerate(choices):
        where = f"{path}.choices[{i}]"
        if not isinstance(choice, Mapping):
            errors.append(f"{where}: must be an object")
            continue
        if not _is_int(choice.get("id")):
            errors.append(f"{where}.id: must be an integer")
        text = choice.get("text")
        if not isinstance(text, str) or not text.strip():
            errors.append(f"{where}.text: must be a non-empty string")
    return errors


def history_entry_errors(entry: Any, path: str) -> list[str]:
    entry = _as_record(entry)
    if not isinstance(entry, Mapping):
        return [f"{path}: must be an object"]

    errors: list[str] = []
    if not isinstance(entry.get("sceneId"), str):
        errors.append(f"{path}.sceneId: must be a string")
    if not isinstance(entry.get("choice"), str):
        errors.append(f"{path}.choice: must be a string")
    for key in ("sceneDescription", "timestamp"):
        value = entry.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{path}.{key}: must be a string when present")
    return errors


def history_errors(history: Any, path: str = "history") -> list[str]:
    if not isinstance(history, list):
        return [f"{path}: must be an array"]
    errors: list[str] = []
    for i, entry in enumerate(history):
        errors.extend(history_entry_errors(entry, f"{path}[{i}]"))
    return errors


def validate_state(state: Any) -> ValidationResult:
    """Check a GameState (model or raw record) and report every violation."""
    record = _as_record(state)
    if not isinstance(record, Mapping):
        return ValidationResult(["state: must be an object"])

    errors: list[str] = []
    if record.get("currentScene") is None:
        errors.append("currentScene: missing")
    else:
        errors.extend(scene_errors(record["currentScene"]))
    errors.extend(history_errors(record.get("history")))

    game_over = record.get("gameOver")
    if game_over is not None and not isinstance(game_over, bool):
        errors.append("gameOver: must be a boolean")
    session_id = record.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        errors.append("sessionId: must be a string when present")

    checkpoint = record.get("checkpoint")
    if checkpoint is not None:
        if not isinstance(checkpoint, Mapping):
            errors.append("checkpoint: must be an object")
        else:
            errors.extend(scene_errors(checkpoint.get("scene"), "checkpoint.scene"))
            errors.extend(history_errors(checkpoint.get("history"), "checkpoint.history"))
            if not isinstance(checkpoint.get("timestamp"), str):
                errors.append("checkpoint.timestamp: must be a string")

    return ValidationResult(errors)


def check_committed_scene(scene: Scene) -> list[str]:
    """Stricter rules for a scene about to become the current scene.

    The parser lets duplicates through while streaming; a committed scene
    needs narration and a non-empty choice list with unique ids and texts.
    """
    errors = scene_errors(scene, "scene")
    if not scene.description.strip():
        errors.append("scene.description: must not be empty")
    if not scene.choices:
        errors.append("scene.choices: must not be empty")

    ids = [c.id for c in scene.choices]
    if len(set(ids)) != len(ids):
        errors.append("scene.choices: ids must be unique")
    texts = [c.text.strip().lower() for c in scene.choices]
    if len(set(texts)) != len(texts):
        errors.append("scene.choices: texts must be unique")
    return errors
