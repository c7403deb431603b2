"""Session engine - the narrative loop for every live adventure.

One SessionEngine owns the store, the save queue, the generator and the
event hub, and keeps one in-memory Session per key. A turn runs:

  1. The player's choice is looked up in the current scene.
  2. The prompt is rendered from the character, scene and recent history.
  3. Generator fragments are emitted as scene_token events and the buffer
     is re-parsed after each one into ``session.streaming_scene``.
  4. Once the stream ends the final parse must pass the commit check.
     Only then are scene and history swapped in, in one assignment.
  5. A save is queued when the auto-save interval allows it.

Any failure in steps 2-4 leaves ``session.state`` exactly as it was and is
reported through a progress event with committed=False.

Resuming walks the stored record through migration, validation and, when
validation fails, the recovery chain (checkpoint, then history). When the
latest record is missing, unreadable or beyond repair, the store's backup
record goes through the same steps. A local draft, or the state already
held in memory, is merged with what was loaded before the session goes
live.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from questline.config import EngineConfig
from questline.events import EventHub
from questline.llm import GenerationError, HttpGenerator, StoryGenerator
from questline.models import Character, Choice, GameHistoryEntry, GameState, Scene, as_game_state
from questline.parsing import parse_scene
from questline.prompts import PromptError, build_messages
from questline.recency import now_iso
from questline.save_queue import SaveQueue, SaveStatus
from questline.scenes import opening_scene
from questline.state import (
    StateMigrationError,
    check_committed_scene,
    create_checkpoint,
    migrate_record,
    resolve,
    restore_checkpoint,
    stamp,
    to_game_state,
    validate_state,
)
from questline.state.recovery import recover
from questline.storage import BackupStore, JsonSessionStore, SessionStore, StoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SessionError(RuntimeError):
    """Base class for errors surfaced to the player."""


class SessionNotFoundError(SessionError):
    pass


class SessionRecoveryError(SessionError):
    """The stored record is unreadable and nothing could be salvaged."""


class InvalidChoiceError(SessionError):
    pass


class SceneRejectedError(SessionError):
    """The generated scene cannot become the current scene."""


class CheckpointUnavailableError(SessionError):
    pass


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass
class Session:
    key: str
    state: GameState
    character: Character | None = None
    generating: bool = False
    streaming_scene: Scene | None = None
    dirty: bool = False  # changed since the last enqueue
    modified_at: str | None = None
    save_status: SaveStatus | None = None
    save_error: str | None = None


def prepare_scene(scene: Scene) -> Scene:
    """Drop repeated choice texts and renumber ids 1..n.

    Raises SceneRejectedError when the scene still fails the commit check.
    """
    seen: set[str] = set()
    texts: list[str] = []
    for choice in scene.choices:
        text = choice.text.strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        texts.append(text)
    cleaned = Scene(
        id=scene.id,
        description=scene.description.strip(),
        choices=[Choice(id=i, text=t) for i, t in enumerate(texts, start=1)],
    )
    errors = check_committed_scene(cleaned)
    if errors:
        raise SceneRejectedError("Generated scene is unusable: " + "; ".join(errors))
    if len(texts) != len(scene.choices):
        logger.info("Scene %s: dropped %d duplicate choices", scene.id, len(scene.choices) - len(texts))
    return cleaned


class SessionEngine:
    def __init__(
        self,
        store: SessionStore,
        generator: StoryGenerator,
        config: EngineConfig | None = None,
        events: EventHub | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.generator = generator
        self.events = events or EventHub()
        self.save_queue = SaveQueue(
            persist=self._persist,
            max_queue_size=self.config.max_queue_size,
            max_attempts=self.config.save_attempts,
            retry_base_delay=self.config.retry_base_delay,
            auto_save_interval=self.config.auto_save_interval,
            on_status=self._on_save_status,
        )
        self._sessions: dict[str, Session] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, data_dir: Path) -> SessionEngine:
        return cls(
            store=JsonSessionStore(data_dir),
            generator=HttpGenerator.from_config(config),
            config=config,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def session(self, session_key: str) -> Session:
        session = self._sessions.get(session_key)
        if session is None:
            raise SessionNotFoundError(f"No active session {session_key!r}")
        return session

    def get_state(self, session_key: str) -> GameState:
        return self.session(session_key).state

    def active_sessions(self) -> list[str]:
        return sorted(self._sessions)

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    async def start(self, session_key: str, character: Character) -> GameState:
        """Begin a new adventure at the genre's opening scene."""
        if session_key in self._sessions:
            raise SessionError(f"Session {session_key!r} is already in play")
        state = GameState(current_scene=opening_scene(character.genre), session_id=session_key)
        session = Session(key=session_key, state=state, character=character, modified_at=now_iso())
        self._sessions[session_key] = session
        logger.info("Session %s started (%s, %s)", session_key, character.name, character.genre)
        self._queue_save(session)
        return state

    def _check_not_generating(self, session_key: str) -> None:
        session = self._sessions.get(session_key)
        if session is not None and session.generating:
            raise SessionError("Cannot resume while a scene is being generated")

    async def resume(
        self,
        session_key: str,
        character: Character | None = None,
        draft: GameState | None = None,
    ) -> GameState:
        """Load, migrate, validate (or recover) and merge a stored session."""
        self._check_not_generating(session_key)
        loaded = await self._load_stored(session_key)
        self._check_not_generating(session_key)

        existing = self._sessions.get(session_key)
        if draft is None and existing is not None:
            draft = existing.state
            if existing.modified_at:
                draft = stamp(draft, now=existing.modified_at)
        if loaded is None:
            if draft is None:
                raise SessionNotFoundError(f"No saved session {session_key!r}")
            state = draft
        else:
            state = resolve(draft, loaded) if draft is not None else loaded

        if character is None and existing is not None:
            character = existing.character
        session = Session(
            key=session_key,
            state=as_game_state(state),
            character=character,
            dirty=draft is not None,
            modified_at=now_iso() if draft is not None else None,
        )
        self._sessions[session_key] = session
        logger.info(
            "Session %s resumed: scene=%s history_len=%d",
            session_key,
            session.state.current_scene.id if session.state.current_scene else None,
            len(session.state.history),
        )
        return session.state

    async def _load_stored(self, session_key: str) -> GameState | None:
        """The latest stored state, else the backup record, else None.

        Raises SessionRecoveryError when the latest record exists but cannot
        be resumed and there is no usable backup either.
        """
        read_error: StoreError | None = None
        load_error: SessionRecoveryError | None = None
        try:
            record = await self.store.load_latest(session_key)
        except StoreError as e:
            logger.warning("Session %s: latest record unreadable: %s", session_key, e)
            record, read_error = None, e

        if record is not None:
            try:
                return self._load_record(session_key, record)
            except SessionRecoveryError as e:
                load_error = e

        backup = await self._load_backup(session_key)
        if backup is not None:
            try:
                state = self._load_record(session_key, backup)
            except SessionRecoveryError as e:
                logger.warning("Session %s: backup record unusable too: %s", session_key, e)
            else:
                logger.warning("Session %s resumed from its backup record", session_key)
                return state

        if load_error is not None:
            raise load_error
        if read_error is not None:
            raise SessionRecoveryError(
                f"Could not read session {session_key!r}: {read_error}"
            ) from read_error
        return None

    async def _load_backup(self, session_key: str) -> dict[str, Any] | None:
        if not isinstance(self.store, BackupStore):
            return None
        try:
            return await self.store.load_backup(session_key)
        except StoreError as e:
            logger.warning("Session %s: backup record unreadable: %s", session_key, e)
            return None

    def _load_record(self, session_key: str, record: Any) -> GameState:
        try:
            migrated = migrate_record(record)
        except StateMigrationError as e:
            logger.error("Session %s cannot be migrated: %s", session_key, e)
            raise SessionRecoveryError(f"Could not resume {session_key!r}: {e}") from e

        result = validate_state(migrated)
        if result.valid:
            try:
                state = to_game_state(migrated)
            except StateMigrationError as e:
                raise SessionRecoveryError(f"Could not resume {session_key!r}: {e}") from e
            last_modified = migrated.get("lastModified")
            # keep the write time so a local draft can be compared against it
            return stamp(state, now=last_modified) if isinstance(last_modified, str) else state

        logger.warning(
            "Stored state for %s failed validation (%d errors): %s",
            session_key, len(result.errors), "; ".join(result.errors[:5]),
        )
        recovered = recover(migrated)
        if recovered is None:
            raise SessionRecoveryError(
                f"Could not resume {session_key!r}: state is damaged and no checkpoint "
                "or history could be recovered"
            )
        return recovered

    # ------------------------------------------------------------------
    # Narrative loop
    # ------------------------------------------------------------------

    async def choose(self, session_key: str, choice_id: int) -> Scene:
        """Play one turn. Returns the committed scene."""
        session = self.session(session_key)
        state = session.state
        scene = state.current_scene
        if state.game_over:
            raise SessionError("This adventure is over")
        if session.character is None:
            raise SessionError(f"Session {session_key!r} has no character attached")
        if session.generating:
            raise SessionError("A scene is already being generated")
        if scene is None:
            raise SessionError(f"Session {session_key!r} has no current scene")
        choice = next((c for c in scene.choices if c.id == choice_id), None)
        if choice is None:
            raise InvalidChoiceError(f"Scene {scene.id} has no choice {choice_id}")

        entry = GameHistoryEntry(
            scene_id=scene.id,
            choice=choice.text,
            scene_description=scene.description,
            timestamp=now_iso(),
        )
        history = list(state.history)
        last = history[-1] if history else None
        if last is None or (last.scene_id, last.choice) != (entry.scene_id, entry.choice):
            history.append(entry)
        next_id = f"scene-{len(history) + 1}"

        session.generating = True
        session.streaming_scene = None
        try:
            messages = build_messages(
                session.character, scene, history, choice.text, self.config.history_context,
            )
            new_scene = prepare_scene(await self._generate(session, messages, next_id))
        except (GenerationError, PromptError, SceneRejectedError, TimeoutError) as e:
            logger.warning("Turn failed for %s at %s: %s", session_key, scene.id, e)
            self.events.emit("progress", session_key, choice.text, len(state.history), False)
            if isinstance(e, TimeoutError):
                raise GenerationError(
                    f"Scene generation timed out after {self.config.generation_timeout}s"
                ) from e
            raise
        finally:
            session.generating = False
            session.streaming_scene = None

        self._set_state(session, session.state.model_copy(deep=True, update={
            "current_scene": new_scene,
            "history": history,
        }))
        logger.info(
            "Session %s: %r committed %s with %d choices",
            session_key, choice.text, new_scene.id, len(new_scene.choices),
        )
        self.events.emit("scene_committed", session_key, new_scene)
        self.events.emit("progress", session_key, choice.text, len(history), True)

        if self.save_queue.should_auto_save(session_key):
            self._queue_save(session)
        return new_scene

    async def _generate(self, session: Session, messages: list[dict[str, str]], scene_id: str) -> Scene:
        buffer = ""
        async with asyncio.timeout(self.config.generation_timeout):
            async for fragment in self.generator.stream(messages):
                if not fragment:
                    continue
                buffer += fragment
                session.streaming_scene = parse_scene(buffer, scene_id)
                self.events.emit("scene_token", session.key, fragment)
        logger.debug("Session %s: stream ended with %d chars", session.key, len(buffer))
        return parse_scene(buffer, scene_id)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, session_key: str) -> GameState:
        session = self.session(session_key)
        updated = create_checkpoint(session.state)
        if updated is session.state:
            raise CheckpointUnavailableError("Nothing to checkpoint yet")
        self._set_state(session, updated)
        self._queue_save(session)
        return updated

    async def restore_checkpoint(self, session_key: str) -> GameState:
        session = self.session(session_key)
        if session.generating:
            raise SessionError("Cannot restore while a scene is being generated")
        restored = restore_checkpoint(session.state)
        if restored is session.state:
            raise CheckpointUnavailableError("No checkpoint to restore")
        self._set_state(session, restored)
        self._queue_save(session)
        return restored

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    @staticmethod
    def _set_state(session: Session, state: GameState) -> None:
        session.state = state
        session.dirty = True
        session.modified_at = now_iso()

    def _queue_save(self, session: Session) -> None:
        session.dirty = False
        self.save_queue.enqueue(session.state, session.key)

    async def save_now(self, session_key: str) -> bool:
        """Queue the current state and wait for it. True if it was saved."""
        session = self.session(session_key)
        self._queue_save(session)
        await self.save_queue.flush(session_key)
        return session.save_status == "saved"

    async def _persist(self, session_key: str, state: GameState) -> None:
        result = validate_state(state)
        if not result.valid:
            raise StoreError("Refusing to save invalid state: " + "; ".join(result.errors))
        await self.store.persist(session_key, stamp(state))

    def _on_save_status(self, session_key: str, status: SaveStatus, error: Exception | None) -> None:
        session = self._sessions.get(session_key)
        if session is not None:
            session.save_status = status
            session.save_error = str(error) if error else None
        self.events.emit("save_status", session_key, status, error)

    async def close_session(self, session_key: str) -> None:
        """Save any unsaved progress and forget the session."""
        session = self.session(session_key)
        if session.dirty:
            self._queue_save(session)
        await self.save_queue.flush(session_key)
        del self._sessions[session_key]

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            if session.dirty:
                self._queue_save(session)
            await self.save_queue.flush(session.key)
        await self.save_queue.close()
        logger.info("Engine closed, %d sessions", len(self._sessions))
