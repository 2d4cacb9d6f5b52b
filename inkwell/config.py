"""Configuration: TOML file, then environment overrides."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from inkwell.constants import (
    DEFAULT_CHAT_MODEL,
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_EMBED_CONCURRENCY,
    DEFAULT_EMBED_MODEL,
    DEFAULT_MAX_HISTORY_TURNS,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_REFLECTION_WINDOW,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SESSION_TIMEOUT_MINUTES,
    DEFAULT_TOP_K,
)

CONFIG_PATH = Path.home() / ".config" / "inkwell" / "config.toml"
CONFIG_PATH_2 = Path("inkwell.toml")
DEFAULT_VAULT_DIR = Path.home() / ".local" / "share" / "inkwell"

# Environment variable -> config field. Earlier names win.
_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "vault_dir": ("INKWELL_DIR",),
    "session_timeout_minutes": ("INKWELL_SESSION_TIMEOUT",),
    "openai_base_url": ("OPENAI_BASE_URL", "OLLAMA_URL"),
    "openai_api_key": ("OPENAI_API_KEY",),
    "chat_model": ("INKWELL_CHAT_MODEL",),
    "embed_model": ("INKWELL_EMBED_MODEL",),
}


class ConfigError(ValueError):
    """The configuration file could not be read."""


class InkwellConfig(BaseModel):
    """Runtime settings."""

    vault_dir: Path = DEFAULT_VAULT_DIR
    session_timeout_minutes: float = Field(default=DEFAULT_SESSION_TIMEOUT_MINUTES, gt=0)
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_api_key: str | None = None
    chat_model: str = DEFAULT_CHAT_MODEL
    embed_model: str = DEFAULT_EMBED_MODEL
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    chunk_overlap: int = Field(default=DEFAULT_CHUNK_OVERLAP, ge=0)
    top_k: int = Field(default=DEFAULT_TOP_K, gt=0)
    max_history_turns: int = Field(default=DEFAULT_MAX_HISTORY_TURNS, gt=0)
    reflection_window: int = Field(default=DEFAULT_REFLECTION_WINDOW, ge=0)
    embed_concurrency: int = Field(default=DEFAULT_EMBED_CONCURRENCY, gt=0)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)

    @field_validator("vault_dir", mode="after")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("openai_base_url", mode="after")
    @classmethod
    def _ensure_v1(cls, value: str) -> str:
        # Ollama's native URL has no /v1 suffix; the OpenAI-compatible API needs it.
        value = value.rstrip("/")
        return value if value.endswith("/v1") else f"{value}/v1"

    @property
    def session_timeout_seconds(self) -> float:
        """Inactivity timeout in seconds."""
        return self.session_timeout_minutes * 60


def _replace_dashed_keys_recursive(d: dict[str, Any]) -> dict[str, Any]:
    """Recursively replace dashed keys with underscores in a dictionary."""
    new_dict = {}
    for k, v in d.items():
        new_key = k.replace("-", "_")
        if isinstance(v, dict):
            new_dict[new_key] = _replace_dashed_keys_recursive(v)
        else:
            new_dict[new_key] = v
    return new_dict


def load_config_file(config_path_str: str | None = None) -> dict[str, Any]:
    """Load the TOML configuration file, or ``{}`` if there is none.

    Raises:
        ConfigError: An explicitly given file is missing, or a file does not parse.

    """
    if config_path_str:
        config_path = Path(config_path_str).expanduser()
        if not config_path.exists():
            msg = f"Config file not found at {config_path}"
            raise ConfigError(msg)
    elif CONFIG_PATH.exists():
        config_path = CONFIG_PATH
    elif CONFIG_PATH_2.exists():
        config_path = CONFIG_PATH_2
    else:
        return {}

    try:
        with config_path.open("rb") as f:
            cfg = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Error parsing config file {config_path}: {e}"
        raise ConfigError(msg) from e
    # Settings may live at top level or under [inkwell]
    cfg = _replace_dashed_keys_recursive(cfg)
    return cfg.get("inkwell", cfg)


def load_config(
    config_path_str: str | None = None,
    *,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> InkwellConfig:
    """Build the effective configuration.

    Precedence, lowest first: defaults, config file, environment, ``overrides``
    (explicit command line options; ``None`` values are ignored).

    Raises:
        ConfigError: The file cannot be read or a value is invalid.

    """
    env = os.environ if environ is None else environ
    values = load_config_file(config_path_str)
    for field, names in _ENV_OVERRIDES.items():
        for name in names:
            if env.get(name):
                values[field] = env[name]
                break
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return InkwellConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        msg = f"Invalid configuration: {problems}"
        raise ConfigError(msg) from e
