"""Application configuration (credentials, model, turn lengths, retry tuning).

get_config() returns defaults merged with data/config.json, then with the
GEMINI_API_KEY, GEMINI_MODEL and UNSPLASH_ACCESS_KEY environment variables.
update_config() applies partial updates (turn_lengths merged key-by-key,
scalars overwritten) and persists them.
"""

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

_CONFIG_DEFAULTS: dict[str, Any] = {
    "gemini_api_key": "",
    "gemini_model": "gemini-2.5-flash",
    "unsplash_access_key": "",
    "talent_points": 10,
    "turn_lengths": {"short": 10, "medium": 20, "long": 35},
    "max_retries": 3,
    "retry_base_delay": 1.0,
    "image_candidates": 10,
    "image_fallback_query": "misty mountain landscape",
}

_ENV_OVERRIDES = {
    "gemini_api_key": "GEMINI_API_KEY",
    "gemini_model": "GEMINI_MODEL",
    "unsplash_access_key": "UNSPLASH_ACCESS_KEY",
}


class Config(BaseModel):
    gemini_api_key: str = ""
    gemini_model: str
    unsplash_access_key: str = ""
    talent_points: int = Field(ge=0)
    turn_lengths: dict[str, int]
    max_retries: int = Field(ge=0)
    retry_base_delay: float = Field(ge=0)
    image_candidates: int = Field(ge=1)
    image_fallback_query: str


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _stored(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    return json.loads(path.read_text())


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if key not in _CONFIG_DEFAULTS:
            continue
        if key == "turn_lengths" and isinstance(value, dict):
            config["turn_lengths"].update(value)
        else:
            config[key] = value


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def get_config(data_dir: Path) -> Config:
    """Read config, returning defaults merged with stored values and env."""
    config = _defaults()
    _merge(config, _stored(data_dir))
    for key, env_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config[key] = value
    return Config.model_validate(config)


def update_config(data_dir: Path, fields: dict[str, Any]) -> Config:
    """Merge fields into the stored config and persist. Returns the full config."""
    stored = _defaults()
    _merge(stored, _stored(data_dir))
    _merge(stored, fields)
    Config.model_validate(stored)
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2))
    return get_config(data_dir)
