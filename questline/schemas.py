"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from questline.models import Character, GameState


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartSession(_Body):
    character: Character


class ResumeSession(_Body):
    character: Character | None = None
    draft: GameState | None = None


class ChooseBody(_Body):
    choice_id: int


class UpdateSettings(_Body):
    provider_url: str | None = None
    provider_format: str | None = None
    api_key: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    generation_timeout: float | None = None
    history_context: int | None = None
    auto_save_interval: float | None = None
