"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. explicit path (KEPLER_CONFIG_PATH or the config_path argument)
2. ./kepler.yaml (working directory)
3. ~/.kepler/config.yaml (user home)

Environment variables override YAML: KEPLER_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found the defaults below apply unchanged.
"""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, get_origin

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "KEPLER_"

DEFAULT_TITLE = "New Chat"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class GenerationConfig(BaseModel):
    """Parameters applied to every streamed chat turn."""

    temperature: float = 0.7
    max_tokens: int | None = None


class ValidationConfig(BaseModel):
    """Credential liveness probe settings."""

    timeout_seconds: float = 10.0
    batch_concurrency: int = 5
    user_agent: str = "Kepler-Chat/1.0"

    @field_validator("batch_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("batch_concurrency must be at least 1")
        return value


class TitleConfig(BaseModel):
    """Background title synthesis settings.

    model_preferences are matched as substrings against the ids of the
    models the user can currently call, in order.
    """

    default_title: str = DEFAULT_TITLE
    model_preferences: list[str] = Field(
        default_factory=lambda: [
            "gemini-2.5-flash-lite",
            "gpt-4.1-mini",
            "claude-3-5-haiku",
            "deepseek-chat",
        ]
    )
    max_tokens: int = 1024
    temperature: float = 0.5


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    allowed_origins: list[str] = []


class KeplerConfig(BaseModel):
    """Top-level configuration for the Kepler Chat backend."""

    generation: GenerationConfig = GenerationConfig()
    validation: ValidationConfig = ValidationConfig()
    title: TitleConfig = TitleConfig()
    server: ServerConfig = ServerConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "kepler.yaml",
        Path.cwd() / "kepler.yml",
        Path.home() / ".kepler" / "config.yaml",
        Path.home() / ".kepler" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply KEPLER_<SECTION>_<KEY> env var overrides to config data.

    For example, ``KEPLER_VALIDATION_TIMEOUT_SECONDS=5`` maps to section
    ``validation``, field ``timeout_seconds``. Only fields the section
    model declares are applied, so unrelated KEPLER_* variables such as
    KEPLER_CREDENTIAL_KEY are ignored.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    known_sections = KeplerConfig.model_fields
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        for section, field_info in known_sections.items():
            section_prefix = section + "_"
            if not suffix.startswith(section_prefix):
                continue
            field_name = suffix[len(section_prefix):]
            if field_name not in field_info.annotation.model_fields:
                continue
            section_data = data.setdefault(section, {})
            if isinstance(section_data, dict):
                declared = field_info.annotation.model_fields[field_name].annotation
                if get_origin(declared) is list:
                    section_data[field_name] = [
                        part.strip() for part in value.split(",") if part.strip()
                    ]
                else:
                    section_data[field_name] = _coerce(value)
            break
    return data


def load_config(config_path: str | None = None) -> KeplerConfig:
    """Load configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, checks
            KEPLER_CONFIG_PATH, then the standard locations.

    Returns:
        Parsed and validated KeplerConfig (defaults when no file exists).

    Raises:
        FileNotFoundError: If an explicit path does not exist.
    """
    explicit = config_path or os.environ.get("KEPLER_CONFIG_PATH", "").strip() or None
    if explicit:
        path: Path | None = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {explicit}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return KeplerConfig(**data)


@lru_cache(maxsize=1)
def get_config() -> KeplerConfig:
    """Return the process-wide configuration, loaded once."""
    return load_config()
