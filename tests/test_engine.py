"""Tests for SessionEngine - the narrative loop, resume chain and saving."""

import asyncio
import contextlib
import json

import pytest

from questline.config import EngineConfig
from questline.engine import (
    CheckpointUnavailableError,
    InvalidChoiceError,
    SceneRejectedError,
    SessionEngine,
    SessionError,
    SessionNotFoundError,
    SessionRecoveryError,
    prepare_scene,
)
from questline.llm import GenerationError, ScriptedGenerator
from questline.models import Character, Choice, GameHistoryEntry, GameState, Scene
from questline.parsing import FALLBACK_CHOICES
from questline.scenes import opening_scene
from questline.storage import JsonSessionStore, MemorySessionStore, StoreError

CAVE = '{"description": "You enter the cave.", "choices": ["Go left", "Go right"]}'
RIVER = '{"description": "A river blocks the way.", "choices": ["Swim", "Build a raft"]}'


def _character() -> Character:
    return Character(name="Ayla", genre="Fantasy")


def _engine(store=None, responses=None, generator=None, **config) -> SessionEngine:
    config.setdefault("retry_base_delay", 0)
    return SessionEngine(
        store=store if store is not None else MemorySessionStore(),
        generator=generator or ScriptedGenerator(responses or [CAVE]),
        config=EngineConfig(**config),
    )


def _record(**overrides) -> dict:
    record = {
        "version": "v1.0",
        "lastModified": "2024-01-01T00:00:00+00:00",
        "currentScene": {"id": "scene-3", "description": "A gate.", "choices": [{"id": 1, "text": "Knock"}]},
        "history": [{"sceneId": "scene-1", "choice": "Walk", "timestamp": "2024-01-01T00:00:00+00:00"}],
        "gameOver": False,
    }
    record.update(overrides)
    return record


class SlowGenerator:
    """Sends half a scene, then stalls."""

    async def stream(self, messages):
        yield '{"description": "Half'
        await asyncio.sleep(10)
        yield ' a scene.", "choices": ["Wait"]}'


class HeldGenerator:
    """Streams one scene once released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def stream(self, messages):
        await self.release.wait()
        yield CAVE


class FailingGenerator:
    async def stream(self, messages):
        raise GenerationError("backend down")
        yield  # makes this an async generator


class BrokenStore(MemorySessionStore):
    async def persist(self, session_key, state):
        raise StoreError("constraint violated")


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

class TestStart:
    async def test_opening_scene(self) -> None:
        engine = _engine()
        state = await engine.start("ayla", _character())
        assert state.current_scene == opening_scene("Fantasy")
        assert state.history == []
        assert state.session_id == "ayla"

    async def test_initial_state_saved(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store)
        await engine.start("ayla", _character())
        await engine.save_queue.flush("ayla")
        record = store.records["ayla"][-1]
        assert record["version"] == "v1.0"
        assert record["currentScene"]["id"] == "scene-1"
        assert engine.session("ayla").save_status == "saved"

    async def test_unknown_session(self) -> None:
        with pytest.raises(SessionNotFoundError):
            _engine().get_state("nobody")

    async def test_live_key_not_restarted(self) -> None:
        engine = _engine(responses=[CAVE])
        await engine.start("ayla", _character())
        await engine.choose("ayla", 1)
        with pytest.raises(SessionError, match="already in play"):
            await engine.start("ayla", _character())
        assert engine.get_state("ayla").current_scene.id == "scene-2"


# ---------------------------------------------------------------------------
# Choosing
# ---------------------------------------------------------------------------

class TestChoose:
    async def test_commits_generated_scene(self) -> None:
        engine = _engine()
        await engine.start("ayla", _character())
        first = engine.get_state("ayla").current_scene

        scene = await engine.choose("ayla", 2)
        state = engine.get_state("ayla")
        assert scene.id == "scene-2"
        assert scene.description == "You enter the cave."
        assert [(c.id, c.text) for c in scene.choices] == [(1, "Go left"), (2, "Go right")]
        assert state.current_scene == scene
        assert len(state.history) == 1
        entry = state.history[0]
        assert entry.scene_id == "scene-1"
        assert entry.choice == first.choices[1].text
        assert entry.scene_description == first.description
        assert isinstance(entry.timestamp, str)

    async def test_prompt_carries_choice(self) -> None:
        generator = ScriptedGenerator([CAVE])
        engine = _engine(generator=generator)
        await engine.start("ayla", _character())
        await engine.choose("ayla", 1)
        user = generator.calls[0][1]["content"]
        assert opening_scene("Fantasy").choices[0].text in user
        assert "Name: Ayla" in user

    async def test_scene_ids_follow_history(self) -> None:
        engine = _engine(responses=[CAVE, RIVER])
        await engine.start("ayla", _character())
        await engine.choose("ayla", 1)
        scene = await engine.choose("ayla", 1)
        assert scene.id == "scene-3"
        assert [e.scene_id for e in engine.get_state("ayla").history] == ["scene-1", "scene-2"]

    async def test_events(self) -> None:
        engine = _engine()
        tokens, committed, progress = [], [], []
        engine.events.subscribe("scene_token", lambda key, text: tokens.append(text))
        engine.events.subscribe("scene_committed", lambda key, scene: committed.append(scene))
        engine.events.subscribe("progress", lambda *args: progress.append(args))
        await engine.start("ayla", _character())

        scene = await engine.choose("ayla", 1)
        assert "".join(tokens) == CAVE
        assert committed == [scene]
        choice_text = opening_scene("Fantasy").choices[0].text
        assert progress == [("ayla", choice_text, 1, True)]

    async def test_current_scene_untouched_while_streaming(self) -> None:
        engine = _engine(generator=ScriptedGenerator([CAVE], fragment_size=4))
        seen = []

        def on_token(key, text):
            session = engine.session(key)
            seen.append((session.state.current_scene.id, session.streaming_scene))

        engine.events.subscribe("scene_token", on_token)
        await engine.start("ayla", _character())
        await engine.choose("ayla", 1)
        assert {scene_id for scene_id, _ in seen} == {"scene-1"}
        assert seen[-1][1].description == "You enter the cave."
        assert engine.session("ayla").streaming_scene is None

    async def test_invalid_choice(self) -> None:
        generator = ScriptedGenerator([CAVE])
        engine = _engine(generator=generator)
        await engine.start("ayla", _character())
        with pytest.raises(InvalidChoiceError):
            await engine.choose("ayla", 9)
        assert generator.calls == []
        assert engine.get_state("ayla").history == []

    async def test_duplicate_choices_repaired(self) -> None:
        engine = _engine(responses=['{"description": "Fork.", "choices": ["Run", " run", "Hide"]}'])
        await engine.start("ayla", _character())
        scene = await engine.choose("ayla", 1)
        assert [(c.id, c.text) for c in scene.choices] == [(1, "Run"), (2, "Hide")]

    async def test_prose_falls_back_to_generic_choices(self) -> None:
        engine = _engine(responses=["The wind howls and nothing else happens."])
        await engine.start("ayla", _character())
        scene = await engine.choose("ayla", 1)
        assert scene.description == "The wind howls and nothing else happens."
        assert [c.text for c in scene.choices] == list(FALLBACK_CHOICES)

    async def test_game_over_blocks_choices(self) -> None:
        engine = _engine()
        await engine.start("ayla", _character())
        engine.session("ayla").state.game_over = True
        with pytest.raises(SessionError, match="over"):
            await engine.choose("ayla", 1)


class TestFailedTurns:
    async def _assert_unchanged(self, engine, progress) -> None:
        state = engine.get_state("ayla")
        assert state.current_scene.id == "scene-1"
        assert state.history == []
        assert engine.session("ayla").generating is False
        assert progress[-1][-1] is False
        assert progress[-1][2] == 0

    async def _started(self, **kwargs):
        engine = _engine(**kwargs)
        progress = []
        engine.events.subscribe("progress", lambda *args: progress.append(args))
        await engine.start("ayla", _character())
        return engine, progress

    async def test_timeout_leaves_state(self) -> None:
        engine, progress = await self._started(generator=SlowGenerator(), generation_timeout=0.05)
        with pytest.raises(GenerationError, match="timed out"):
            await engine.choose("ayla", 1)
        await self._assert_unchanged(engine, progress)

    async def test_generator_failure_leaves_state(self) -> None:
        engine, progress = await self._started(generator=FailingGenerator())
        with pytest.raises(GenerationError, match="backend down"):
            await engine.choose("ayla", 1)
        await self._assert_unchanged(engine, progress)

    async def test_unusable_scene_rejected(self) -> None:
        engine, progress = await self._started(responses=["Choice 1: Flee\nChoice 2: Fight"])
        with pytest.raises(SceneRejectedError, match="description"):
            await engine.choose("ayla", 1)
        await self._assert_unchanged(engine, progress)

    async def test_second_choice_while_generating(self) -> None:
        engine, progress = await self._started(generator=SlowGenerator(), generation_timeout=5)
        turn = asyncio.create_task(engine.choose("ayla", 1))
        await asyncio.sleep(0.01)
        with pytest.raises(SessionError, match="already"):
            await engine.choose("ayla", 2)

        turn.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await turn
        assert engine.session("ayla").generating is False
        assert engine.get_state("ayla").current_scene.id == "scene-1"


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------

class TestSaving:
    async def test_auto_save_after_turn(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store, auto_save_interval=0)
        await engine.start("ayla", _character())
        await engine.choose("ayla", 1)
        await engine.save_queue.flush("ayla")
        assert store.records["ayla"][-1]["currentScene"]["id"] == "scene-2"

    async def test_auto_save_waits_for_interval(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store, auto_save_interval=1000)
        await engine.start("ayla", _character())
        await engine.save_queue.flush("ayla")
        await engine.choose("ayla", 1)
        await engine.save_queue.flush("ayla")
        assert store.records["ayla"][-1]["currentScene"]["id"] == "scene-1"
        assert engine.session("ayla").dirty

        await engine.close()
        assert store.records["ayla"][-1]["currentScene"]["id"] == "scene-2"

    async def test_save_now(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store)
        await engine.start("ayla", _character())
        assert await engine.save_now("ayla") is True
        assert engine.session("ayla").save_error is None

    async def test_save_failure_reported_not_raised(self) -> None:
        engine = _engine(BrokenStore())
        statuses = []
        engine.events.subscribe("save_status", lambda key, status, error: statuses.append(status))
        await engine.start("ayla", _character())
        assert await engine.save_now("ayla") is False
        assert "constraint violated" in engine.session("ayla").save_error
        assert "failed" in statuses
        assert engine.get_state("ayla").current_scene.id == "scene-1"

    async def test_invalid_state_never_persisted(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store)
        await engine.start("ayla", _character())
        await engine.save_queue.flush("ayla")
        engine.session("ayla").state = GameState()
        assert await engine.save_now("ayla") is False
        assert "invalid" in engine.session("ayla").save_error
        assert len(store.records["ayla"]) == 1

    async def test_close_session(self) -> None:
        engine = _engine(auto_save_interval=1000)
        await engine.start("ayla", _character())
        await engine.close_session("ayla")
        assert engine.active_sessions() == []


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

class TestCheckpoints:
    async def test_create_and_restore(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store)
        await engine.start("ayla", _character())
        state = await engine.create_checkpoint("ayla")
        assert state.checkpoint.scene.id == "scene-1"

        await engine.choose("ayla", 1)
        restored = await engine.restore_checkpoint("ayla")
        assert restored.current_scene.id == "scene-1"
        assert restored.history == []
        assert restored.checkpoint is not None

        await engine.save_queue.flush("ayla")
        assert store.records["ayla"][-1]["currentScene"]["id"] == "scene-1"
        assert "checkpoint" in store.records["ayla"][-1]

    async def test_restore_without_checkpoint(self) -> None:
        engine = _engine()
        await engine.start("ayla", _character())
        with pytest.raises(CheckpointUnavailableError):
            await engine.restore_checkpoint("ayla")

    async def test_checkpoint_without_scene(self) -> None:
        engine = _engine()
        await engine.start("ayla", _character())
        engine.session("ayla").state = GameState()
        with pytest.raises(CheckpointUnavailableError):
            await engine.create_checkpoint("ayla")


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------

class TestResume:
    async def test_valid_record(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record())
        engine = _engine(store)
        state = await engine.resume("ayla", _character())
        assert state.current_scene.id == "scene-3"
        assert [e.choice for e in state.history] == ["Walk"]
        assert type(state) is GameState

        scene = await engine.choose("ayla", 1)
        assert scene.id == "scene-3"

    async def test_resume_without_character_cannot_play(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record())
        engine = _engine(store)
        await engine.resume("ayla")
        with pytest.raises(SessionError, match="no character"):
            await engine.choose("ayla", 1)

    async def test_legacy_record_migrated(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", {
            "currentScene": {"id": "scene-2", "description": "A wall.", "choices": [{"id": "1", "text": "Climb"}]},
            "history": [{"sceneId": "scene-1", "choice": "Walk"}],
        })
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.choices[0].id == 1
        assert isinstance(state.history[0].timestamp, str)

    async def test_unmigratable_record(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record(version="v7.0"))
        with pytest.raises(SessionRecoveryError) as exc:
            await _engine(store).resume("ayla", _character())
        assert exc.value.__cause__ is not None
        assert len(store.records["ayla"]) == 1
        assert store.records["ayla"][0]["version"] == "v7.0"

    async def test_recovers_from_checkpoint(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record(
            currentScene={"id": "scene-3", "choices": "broken"},
            checkpoint={
                "scene": {"id": "scene-2", "description": "A wall.", "choices": [{"id": 1, "text": "Climb"}]},
                "history": [],
                "timestamp": "2024-01-01T00:00:00+00:00",
            },
        ))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-2"
        assert state.history == []

    async def test_recovers_from_history(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record(
            currentScene=None,
            history=[{"sceneId": "scene-5", "choice": "Hide", "sceneDescription": "A barn."}],
        ))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-5"
        assert state.current_scene.description == "A barn."
        assert [c.text for c in state.current_scene.choices] == list(FALLBACK_CHOICES)

    async def test_nothing_to_recover(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record(currentScene=None, history=[{"junk": 1}]))
        with pytest.raises(SessionRecoveryError, match="Could not resume"):
            await _engine(store).resume("ayla", _character())

    async def test_missing_session(self) -> None:
        with pytest.raises(SessionNotFoundError):
            await _engine().resume("nobody", _character())

    async def test_unreadable_store(self, tmp_path) -> None:
        store = JsonSessionStore(tmp_path)
        (tmp_path / "sessions" / "ayla.json").write_text("{oops")
        with pytest.raises(SessionRecoveryError):
            await _engine(store).resume("ayla", _character())

    async def test_resume_refused_while_generating(self) -> None:
        store = MemorySessionStore()
        generator = HeldGenerator()
        engine = _engine(store, generator=generator, auto_save_interval=0)
        await engine.start("ayla", _character())
        await engine.save_queue.flush("ayla")
        turn = asyncio.create_task(engine.choose("ayla", 1))
        await asyncio.sleep(0.01)
        with pytest.raises(SessionError, match="being generated"):
            await engine.resume("ayla")

        generator.release.set()
        scene = await turn
        await engine.save_queue.flush("ayla")
        assert engine.get_state("ayla").current_scene == scene
        assert store.records["ayla"][-1]["currentScene"]["id"] == "scene-2"

    async def test_damaged_record_falls_back_to_backup(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record())
        store.put_raw("ayla", _record(currentScene=None, history=[{"junk": 1}]))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-3"
        assert [e.choice for e in state.history] == ["Walk"]

    async def test_unmigratable_record_falls_back_to_backup(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record())
        store.put_raw("ayla", _record(version="v0.95"))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-3"

    async def test_unreadable_file_falls_back_to_backup(self, tmp_path) -> None:
        store = JsonSessionStore(tmp_path)
        (tmp_path / "sessions" / "ayla.json").write_text("{oops")
        (tmp_path / "sessions" / "ayla.bak").write_text(json.dumps(_record()))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-3"

    async def test_missing_latest_falls_back_to_backup(self, tmp_path) -> None:
        store = JsonSessionStore(tmp_path)
        (tmp_path / "sessions" / "ayla.bak").write_text(json.dumps(_record()))
        state = await _engine(store).resume("ayla", _character())
        assert state.current_scene.id == "scene-3"

    async def test_backup_also_damaged(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record(version="v7.0"))
        store.put_raw("ayla", _record(currentScene=None, history=[{"junk": 1}]))
        with pytest.raises(SessionRecoveryError, match="no checkpoint or history"):
            await _engine(store).resume("ayla", _character())

    async def test_draft_merged_with_stored(self) -> None:
        store = MemorySessionStore()
        store.put_raw("ayla", _record())
        draft = GameState(
            current_scene=Scene(id="scene-9", description="Elsewhere.", choices=[Choice(id=1, text="Go")]),
            history=[
                GameHistoryEntry(scene_id="scene-1", choice="Walk"),
                GameHistoryEntry(scene_id="scene-1", choice="Run"),
            ],
        )
        engine = _engine(store)
        state = await engine.resume("ayla", _character(), draft=draft)
        assert state.current_scene.id == "scene-3"
        assert [(e.scene_id, e.choice) for e in state.history] == [("scene-1", "Walk"), ("scene-1", "Run")]
        assert engine.session("ayla").dirty

    async def test_draft_without_stored_record(self) -> None:
        draft = GameState(current_scene=Scene(id="scene-4", description="x", choices=[Choice(id=1, text="Go")]))
        state = await _engine().resume("ayla", _character(), draft=draft)
        assert state.current_scene.id == "scene-4"

    async def test_unsaved_progress_kept_on_resume(self) -> None:
        store = MemorySessionStore()
        engine = _engine(store, auto_save_interval=1000)
        await engine.start("ayla", _character())
        await engine.save_queue.flush("ayla")
        await engine.choose("ayla", 1)

        state = await engine.resume("ayla")
        assert state.current_scene.id == "scene-2"
        assert len(state.history) == 1
        assert engine.session("ayla").character == _character()


async def test_full_round_trip_through_files(tmp_path):
    first = _engine(JsonSessionStore(tmp_path), responses=[CAVE], auto_save_interval=0)
    await first.start("Ayla's Quest", _character())
    await first.choose("Ayla's Quest", 1)
    await first.create_checkpoint("Ayla's Quest")
    expected = first.get_state("Ayla's Quest")
    await first.close()

    second = _engine(JsonSessionStore(tmp_path))
    state = await second.resume("Ayla's Quest", _character())
    assert state == expected


def test_prepare_scene_rejects_empty():
    with pytest.raises(SceneRejectedError):
        prepare_scene(Scene(id="s", description="Dark.", choices=[Choice(id=1, text="  ")]))
