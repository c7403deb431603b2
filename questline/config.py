"""Engine configuration (generation backend, timeouts, save policy).

Resolution order, later wins:
  1. EngineConfig field defaults
  2. {data_dir}/config.json, if present (unknown keys ignored)
  3. QUESTLINE_<FIELD> environment variables (OPENAI_API_KEY also fills
     api_key when QUESTLINE_API_KEY is unset)
  4. explicit overrides passed by the caller

Callers load .env themselves (app.py and main.py do) before calling
load_config().
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

ENV_PREFIX = "QUESTLINE_"


class EngineConfig(BaseModel):
    # Generation backend
    provider_url: str = "https://api.openai.com"
    provider_format: Literal["openai", "koboldcpp"] = "openai"
    api_key: str = ""
    model: str = "gpt-4"
    temperature: float = 0.8
    max_tokens: int = 1000
    presence_penalty: float = 0.6
    frequency_penalty: float = 0.3
    generation_timeout: float = Field(30.0, gt=0)
    generation_retries: int = Field(3, ge=1)
    rate_limit_requests: int = Field(3, ge=1)
    rate_limit_window: float = Field(60.0, gt=0)
    history_context: int = Field(5, ge=0)  # history entries sent with each prompt

    # Save queue
    auto_save_interval: float = Field(5.0, ge=0)
    max_queue_size: int = Field(10, ge=1)
    save_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _env_values() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in EngineConfig.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    if "api_key" not in values and os.getenv("OPENAI_API_KEY"):
        values["api_key"] = os.getenv("OPENAI_API_KEY")
    return values


def read_stored_config(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    stored = json.loads(path.read_text())
    if not isinstance(stored, dict):
        return {}
    return {k: v for k, v in stored.items() if k in EngineConfig.model_fields}


def load_config(data_dir: Path | None = None, **overrides: Any) -> EngineConfig:
    """Build the effective configuration."""
    values: dict[str, Any] = {}
    if data_dir is not None:
        values.update(read_stored_config(data_dir))
    values.update(_env_values())
    values.update(overrides)
    return EngineConfig.model_validate(values)


def update_config(data_dir: Path, fields: dict[str, Any]) -> EngineConfig:
    """Merge known fields into config.json and return the effective config."""
    stored = read_stored_config(data_dir)
    stored.update({k: v for k, v in fields.items() if k in EngineConfig.model_fields})
    EngineConfig.model_validate(stored)  # reject bad values before writing
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2))
    return load_config(data_dir)
