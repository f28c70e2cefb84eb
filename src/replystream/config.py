from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path

from .constants import API_KEY_ENV


class ConfigError(RuntimeError):
    pass


def read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def require_api_key(environ: Mapping[str, str]) -> str:
    value = environ.get(API_KEY_ENV)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("Gemini API key is required")
    return value.strip()
