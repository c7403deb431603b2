"""FastAPI endpoints under /api.

Sessions are addressed by key; every state in a response uses the stored
camelCase shape. Errors map to status codes:

    404  unknown session
    409  session conflict (already started, busy, over, nothing to restore,
         unrecoverable)
    422  invalid choice or request body
    502  generator failed or produced an unusable scene
    503  client-side generation rate limit hit
"""

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from questline import config
from questline.engine import (
    InvalidChoiceError,
    SceneRejectedError,
    SessionEngine,
    SessionError,
    SessionNotFoundError,
)
from questline.llm import GenerationError, RateLimitError
from questline.models import dump_state
from questline.schemas import ChooseBody, ResumeSession, StartSession, UpdateSettings

router = APIRouter()


def _engine(request: Request) -> SessionEngine:
    return request.app.state.engine


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SessionNotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, InvalidChoiceError):
        return HTTPException(422, str(e))
    if isinstance(e, RateLimitError):
        return HTTPException(503, str(e))
    if isinstance(e, (GenerationError, SceneRejectedError)):
        return HTTPException(502, str(e))
    return HTTPException(409, str(e))


def _session_view(engine: SessionEngine, key: str) -> dict:
    session = engine.session(key)
    return {
        "state": dump_state(session.state),
        "saveStatus": session.save_status,
        "saveError": session.save_error,
    }


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/sessions")
async def list_sessions(request: Request):
    """List sessions held in memory."""
    return {"active": _engine(request).active_sessions()}


@router.post("/sessions/{key}")
async def start_session(key: str, body: StartSession, request: Request):
    """Start a new adventure at the genre's opening scene."""
    engine = _engine(request)
    try:
        await engine.start(key, body.character)
    except SessionError as e:
        raise _http_error(e)
    return _session_view(engine, key)


@router.get("/sessions/{key}")
async def get_session(key: str, request: Request):
    """Current state of a live session, resuming it from storage if needed."""
    engine = _engine(request)
    if key not in engine.active_sessions():
        try:
            await engine.resume(key)
        except SessionError as e:
            raise _http_error(e)
    return _session_view(engine, key)


@router.post("/sessions/{key}/resume")
async def resume_session(key: str, body: ResumeSession, request: Request):
    """Resume from storage, merging an optional local draft."""
    engine = _engine(request)
    try:
        await engine.resume(key, character=body.character, draft=body.draft)
    except SessionError as e:
        raise _http_error(e)
    return _session_view(engine, key)


@router.post("/sessions/{key}/choices")
async def make_choice(key: str, body: ChooseBody, request: Request):
    """Play one turn. Responds once the new scene is committed."""
    engine = _engine(request)
    try:
        scene = await engine.choose(key, body.choice_id)
    except (SessionError, GenerationError) as e:
        raise _http_error(e)
    return {"scene": scene.model_dump(by_alias=True), **_session_view(engine, key)}


@router.post("/sessions/{key}/checkpoint")
async def create_checkpoint(key: str, request: Request):
    engine = _engine(request)
    try:
        await engine.create_checkpoint(key)
    except SessionError as e:
        raise _http_error(e)
    return _session_view(engine, key)


@router.post("/sessions/{key}/restore")
async def restore_checkpoint(key: str, request: Request):
    engine = _engine(request)
    try:
        await engine.restore_checkpoint(key)
    except SessionError as e:
        raise _http_error(e)
    return _session_view(engine, key)


@router.post("/sessions/{key}/save")
async def save_session(key: str, request: Request):
    """Save now and wait for the result."""
    engine = _engine(request)
    try:
        saved = await engine.save_now(key)
    except SessionError as e:
        raise _http_error(e)
    return {"saved": saved, **_session_view(engine, key)}


@router.delete("/sessions/{key}")
async def close_session(key: str, request: Request):
    """Save unsaved progress and drop the session from memory."""
    try:
        await _engine(request).close_session(key)
    except SessionError as e:
        raise _http_error(e)
    return {"ok": True}


@router.get("/settings")
async def get_settings(request: Request):
    """Effective engine configuration. The API key is masked."""
    settings = _engine(request).config.model_dump()
    if settings["api_key"]:
        settings["api_key"] = "***"
    return settings


@router.patch("/settings")
async def update_settings(body: UpdateSettings, request: Request):
    """Merge fields into config.json. Applied on the next start."""
    fields = body.model_dump(exclude_none=True)
    try:
        updated = config.update_config(request.app.state.data_dir, fields)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    stored = updated.model_dump()
    if stored["api_key"]:
        stored["api_key"] = "***"
    return stored
