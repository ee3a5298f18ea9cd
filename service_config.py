import logging
import os
import tomllib
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "config.toml"
CONFIG_PATH_ENV = "PREVIEW_CONFIG"

logger = logging.getLogger("preview_renderer.config")

# Environment variables that override individual config keys.
ENV_OVERRIDES = {
    "PREVIEW_PORT": ("port",),
    "PREVIEW_UPSCALE_FACTOR": ("upscale_factor",),
    "PREVIEW_GL_PLATFORM": ("gl_platform",),
    "PREVIEW_LOG_LEVEL": ("log_level",),
    "PREVIEW_LOCAL_MODEL_DIR": ("models", "local_model_dir"),
    "PREVIEW_MODELS_BASE_URL": ("models", "models_base_url"),
}


class ModelsConfig(BaseModel):
    local_model_dir: str = "models"
    models_base_url: str = ""
    models: List[str] = Field(default_factory=list)
    s3_endpoint_url: Optional[str] = None

    @field_validator("s3_endpoint_url", mode="before")
    @classmethod
    def _empty_endpoint_is_none(cls, value):
        if value in (None, ""):
            return None
        return value


class ServiceConfig(BaseModel):
    port: int = Field(default=3030, ge=1, le=65535)
    upscale_factor: int = Field(default=1, ge=1)
    queue_size: int = Field(default=10, ge=1)
    max_in_flight: int = Field(default=1, ge=1)
    render_timeout_seconds: Optional[float] = None
    download_timeout_seconds: float = Field(default=30.0, gt=0)
    gl_platform: str = "egl"
    flat_shading: bool = True
    clear_color: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    default_texture: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    models: ModelsConfig = Field(default_factory=ModelsConfig)

    @field_validator("render_timeout_seconds", mode="before")
    @classmethod
    def _non_positive_timeout_disables(cls, value):
        if value in (None, ""):
            return None
        if float(value) <= 0:
            return None
        return value

    @field_validator("default_texture", "log_file", mode="before")
    @classmethod
    def _empty_string_is_none(cls, value):
        if value in (None, ""):
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level '{value}'.")
        return normalized


def _apply_env_overrides(raw: dict) -> dict:
    for env_name, path in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        target = raw
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return raw


def resolve_config_path(path: Optional[str] = None) -> Path:
    return Path(path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None) -> ServiceConfig:
    """Read the TOML config, falling back to defaults when the file is absent."""
    config_path = resolve_config_path(path)
    raw: dict = {}
    if config_path.exists():
        with open(config_path, "rb") as handle:
            raw = tomllib.load(handle)
    else:
        logger.warning("Config file %s not found; using defaults.", config_path)
    return ServiceConfig(**_apply_env_overrides(raw))
