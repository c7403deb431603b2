"""Core domain models.

Every engine component operates on these types. Pydantic handles
validation and serialisation at the persistence and HTTP boundaries.

Attributes are snake_case in Python; the stored and wire form is camelCase
(``currentScene``, ``sceneId``, ``lastModified``) so records written by
earlier clients stay readable.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Genre = Literal["Fantasy", "Sci-Fi", "Horror", "Mystery"]

VERSION_PATTERN = r"^v\d+\.\d+$"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Choice(_Model):
    """One option offered to the player. Ids are 1-based within a scene."""

    id: int
    text: str


class Scene(_Model):
    """One narrative beat with its ordered choices."""

    id: str
    description: str
    choices: list[Choice] = Field(default_factory=list)


class GameHistoryEntry(_Model):
    """A choice the player made. Entries are never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    scene_id: str
    choice: str  # text of the chosen option, snapshotted
    scene_description: str | None = None
    timestamp: str | None = None  # ISO-8601


class Checkpoint(_Model):
    """A save-point embedded in the GameState that created it."""

    scene: Scene
    history: list[GameHistoryEntry] = Field(default_factory=list)
    timestamp: str


class GameState(_Model):
    """The full resumable state of one character's adventure.

    ``current_scene`` is only ever missing on damaged or legacy records;
    the validator rejects such states before they reach the narrative loop.
    """

    current_scene: Scene | None = None
    history: list[GameHistoryEntry] = Field(default_factory=list)
    game_over: bool = False
    session_id: str | None = None
    checkpoint: Checkpoint | None = None


class VersionedState(GameState):
    """A GameState tagged for durable storage. Built only at save/load time."""

    version: str = Field(pattern=VERSION_PATTERN)
    last_modified: str


class Attribute(_Model):
    name: str
    value: int
    description: str = ""


class Equipment(_Model):
    name: str
    description: str = ""


class Character(_Model):
    """The player character, used as prompt context only."""

    name: str
    genre: Genre
    attributes: list[Attribute] = Field(default_factory=list)
    equipment: list[Equipment] = Field(default_factory=list)
    backstory: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def dump_state(state: GameState) -> dict[str, Any]:
    """Return the camelCase dict used on disk and on the wire."""
    return state.model_dump(by_alias=True, exclude_none=True)


def as_game_state(state: GameState) -> GameState:
    """Return a deep copy of ``state`` without any versioning fields."""
    if type(state) is GameState:
        return state.model_copy(deep=True)
    return GameState.model_validate(
        state.model_dump(include=set(GameState.model_fields))
    )
