from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Annotated

from pydantic import (
    AliasChoices,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .telegram.bot import DEFAULT_ERROR_BACKOFF_S
from .telegram.client_api import (
    API_URL,
    DEFAULT_POLL_TIMEOUT_S,
    DEFAULT_REQUEST_TIMEOUT_S,
)

HOME_CONFIG_PATH = Path.home() / ".pollbot" / "pollbot.toml"

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class ConfigError(RuntimeError):
    pass


class BotSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        env_prefix="POLLBOT__",
        str_strip_whitespace=True,
    )

    bot_token: NonEmptyStr = Field(
        validation_alias=AliasChoices(
            "bot_token", "POLLBOT__BOT_TOKEN", "TELEGRAM_BOT_TOKEN"
        )
    )
    poll_timeout_s: int = Field(default=DEFAULT_POLL_TIMEOUT_S, ge=0)
    request_timeout_s: float = Field(default=DEFAULT_REQUEST_TIMEOUT_S, gt=0)
    error_backoff_s: float = Field(default=DEFAULT_ERROR_BACKOFF_S, ge=0)
    max_concurrent_handlers: int | None = Field(default=None, ge=1)
    drain_timeout_s: float | None = Field(default=0, ge=0)
    api_base_url: NonEmptyStr = API_URL

    @field_validator("api_base_url")
    @classmethod
    def _validate_api_base_url(cls, value: str) -> str:
        for placeholder in ("{token}", "{method}"):
            if placeholder not in value:
                raise ValueError(f"api_base_url must contain {placeholder}")
        return value

    @model_validator(mode="after")
    def _validate_timeouts(self) -> BotSettings:
        if self.request_timeout_s <= self.poll_timeout_s:
            raise ValueError(
                "request_timeout_s must be longer than poll_timeout_s "
                f"({self.request_timeout_s} <= {self.poll_timeout_s})"
            )
        return self

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


def load_settings(path: str | Path | None = None) -> BotSettings:
    """Load settings from environment variables and an optional TOML file.

    An explicit ``path`` must exist; the default ``~/.pollbot/pollbot.toml``
    is only read when present.
    """
    cfg_path = Path(path).expanduser() if path else HOME_CONFIG_PATH
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.")
    if path and not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.")
    toml_file = cfg_path if cfg_path.exists() else None
    return _load_settings(toml_file)


def _load_settings(toml_file: Path | None) -> BotSettings:
    cfg = dict(BotSettings.model_config)
    cfg["toml_file"] = toml_file
    Bound = type(
        "BotSettingsBound",
        (BotSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    source = toml_file if toml_file is not None else "environment"
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {source}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed TOML in {source}: {exc}") from None
