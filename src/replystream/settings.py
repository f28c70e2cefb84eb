from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, read_config
from .constants import HOME_CONFIG_PATH, THROTTLE_INTERVAL_S

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class GenerationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    model: NonEmptyStr = "gemini-1.5-flash"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_k: int = Field(default=40, gt=0)
    top_p: float = Field(default=0.95, gt=0.0, le=1.0)
    max_output_tokens: int = Field(default=8192, gt=0)
    api_base: NonEmptyStr = "https://generativelanguage.googleapis.com/v1beta"
    timeout_s: float = Field(default=120.0, gt=0)

    def to_payload(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topK": self.top_k,
            "topP": self.top_p,
            "maxOutputTokens": self.max_output_tokens,
        }


class ReplySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    throttle_interval_s: float = Field(default=THROTTLE_INTERVAL_S, gt=0)


class ReplyStreamSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="REPLYSTREAM__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    channel_id: NonEmptyStr = "messaging:local"
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    reply: ReplySettings = Field(default_factory=ReplySettings)
    idle_timeout_s: float | None = Field(default=None, gt=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(
    path: str | Path | None = None,
) -> tuple[ReplyStreamSettings, Path | None]:
    """Load settings from TOML plus ``REPLYSTREAM__*`` environment overrides.

    An explicit path must exist. Without one, the home config is used when
    present and defaults apply otherwise.
    """
    if path:
        cfg_path = Path(path).expanduser()
        _ensure_config_file(cfg_path)
    elif HOME_CONFIG_PATH.is_file():
        cfg_path = HOME_CONFIG_PATH
    else:
        try:
            return ReplyStreamSettings(), None
        except ValidationError as exc:
            raise ConfigError(f"Invalid settings: {exc}") from exc
    read_config(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def _ensure_config_file(cfg_path: Path) -> None:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    if not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.") from None


def _load_settings_from_path(cfg_path: Path) -> ReplyStreamSettings:
    cfg = dict(ReplyStreamSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "ReplyStreamSettingsBound",
        (ReplyStreamSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
