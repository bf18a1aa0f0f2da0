"""Configuration management for the optisync client core."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from optisync.utils.http import normalize_base_url

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class BackendSettings(BaseModel):
    url: str = Field(default="http://127.0.0.1:54321")
    anon_key: str = Field(default="", repr=False)
    timeout_seconds: float = Field(default=15.0, ge=0.1, le=300.0)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return normalize_base_url(value)


class StorageSettings(BaseModel):
    session_db_path: str = Field(default="./data/session.sqlite")
    session_db_wal: bool = Field(default=True)
    community_images_bucket: str = Field(default="community-images", min_length=1)
    drawing_thumbnails_bucket: str = Field(default="drawing-thumbnails", min_length=1)


class Settings(BaseModel):
    backend: BackendSettings = Field(default_factory=BackendSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


ENV_KEYS = {
    "backend_url": "BACKEND_URL",
    "backend_anon_key": "BACKEND_ANON_KEY",
    "backend_timeout": "BACKEND_TIMEOUT_SECONDS",
    "session_db_path": "SESSION_DB_PATH",
    "session_db_wal": "SESSION_DB_WAL",
    "community_images_bucket": "COMMUNITY_IMAGES_BUCKET",
    "drawing_thumbnails_bucket": "DRAWING_THUMBNAILS_BUCKET",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "backend": {
            "url": os.getenv(ENV_KEYS["backend_url"], BackendSettings().url),
            "anon_key": os.getenv(ENV_KEYS["backend_anon_key"], BackendSettings().anon_key),
            "timeout_seconds": _env_float(
                ENV_KEYS["backend_timeout"],
                BackendSettings().timeout_seconds,
            ),
        },
        "storage": {
            "session_db_path": _resolve_path(
                os.getenv(ENV_KEYS["session_db_path"], StorageSettings().session_db_path)
            ),
            "session_db_wal": _env_bool(
                ENV_KEYS["session_db_wal"], StorageSettings().session_db_wal
            ),
            "community_images_bucket": os.getenv(
                ENV_KEYS["community_images_bucket"],
                StorageSettings().community_images_bucket,
            ),
            "drawing_thumbnails_bucket": os.getenv(
                ENV_KEYS["drawing_thumbnails_bucket"],
                StorageSettings().drawing_thumbnails_bucket,
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.session_db_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
