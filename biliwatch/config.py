"""Configuration loader for biliwatch (Pydantic edition)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Mapping, Sequence

import requests
from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

LOGGER = logging.getLogger(__name__)
REMOTE_CONFIG_TIMEOUT_SECONDS = 10.0

# Keys of the JSON config file format mapped onto the preferred field alias,
# so file values take precedence over the same setting from the environment.
JSON_FIELD_ALIASES: Mapping[str, str] = {
    "token": "APP_TELEGRAM_TOKEN",
    "cache_store": "APP_CREDENTIAL_STORE",
    "mid": "APP_ACCOUNT_ID",
    "admins": "APP_RECIPIENTS",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded safely."""


class AppConfig(BaseSettings):
    """Strongly typed runtime configuration loaded from a config file and the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
        validate_default=True,
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENVIRONMENT", "APP_ENV"),
    )
    log_path: Path = Field(
        default=Path("logs/biliwatch.log"),
        validation_alias=AliasChoices("APP_LOG_PATH", "LOG_PATH"),
    )

    # Watched account and audience
    telegram_token: SecretStr = Field(validation_alias=AliasChoices("APP_TELEGRAM_TOKEN", "TELEGRAM_BOT_TOKEN"))
    credential_store_path: Path = Field(validation_alias=AliasChoices("APP_CREDENTIAL_STORE", "APP_CACHE_STORE"))
    account_id: int = Field(ge=1, validation_alias=AliasChoices("APP_ACCOUNT_ID", "APP_MID"))
    recipients: Annotated[tuple[int, ...], NoDecode] = Field(
        default_factory=tuple,
        validation_alias=AliasChoices("APP_RECIPIENTS", "APP_ADMINS"),
    )

    # Cadences and timeouts
    poll_interval_seconds: int = Field(60, ge=1, validation_alias="APP_POLL_INTERVAL")
    login_timeout_seconds: int = Field(180, ge=1, validation_alias="APP_LOGIN_TIMEOUT")
    login_poll_interval_seconds: float = Field(2.0, gt=0, validation_alias="APP_LOGIN_POLL_INTERVAL")
    http_timeout_seconds: float = Field(10.0, gt=0, validation_alias="APP_HTTP_TIMEOUT")
    telegram_long_poll_seconds: int = Field(30, ge=0, validation_alias="APP_TELEGRAM_LONG_POLL")
    update_backoff_seconds: float = Field(5.0, ge=0, validation_alias="APP_UPDATE_BACKOFF")

    @field_validator("log_path", "credential_store_path", mode="after")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        expanded = value.expanduser()
        return expanded if expanded.is_absolute() else (Path.cwd() / expanded).resolve()

    @field_validator("recipients", mode="before")
    @classmethod
    def _parse_recipients(cls, value: str | int | Sequence[int | str] | None) -> tuple[int, ...]:
        if value is None:
            return ()
        if isinstance(value, int):
            return (value,)
        if isinstance(value, str):
            value = [part.strip() for part in value.replace("\n", ",").split(",") if part.strip()]
        # dict.fromkeys keeps the configured order while dropping duplicates
        return tuple(dict.fromkeys(int(item) for item in value))

    @model_validator(mode="after")
    def _validate_login_timing(self) -> "AppConfig":
        if self.login_poll_interval_seconds >= self.login_timeout_seconds:
            raise ValueError("login_poll_interval_seconds must be smaller than login_timeout_seconds")
        return self

    def ensure_runtime_directories(self) -> None:
        """Create directories required for runtime operation."""
        for directory in (self.log_path.parent, self.credential_store_path.parent):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def telegram_token_value(self) -> str:
        return self.telegram_token.get_secret_value().strip()


def is_remote_source(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def read_config_source(source: str) -> dict[str, Any]:
    """Read a JSON config document from a local path or an http(s) URL."""
    try:
        if is_remote_source(source):
            response = requests.get(source, timeout=REMOTE_CONFIG_TIMEOUT_SECONDS)
            response.raise_for_status()
            payload = response.json()
        else:
            payload = json.loads(Path(source).expanduser().read_text(encoding="utf-8"))
    except (OSError, requests.RequestException) as exc:
        raise ConfigError(f"Cannot read config source {source}") from exc
    except ValueError as exc:
        raise ConfigError(f"Config source {source} is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Config source {source} must contain a JSON object")
    return {JSON_FIELD_ALIASES.get(key, key): value for key, value in payload.items()}


def load_config(source: str | None = None, env_path: Path | None = None) -> AppConfig:
    """Load configuration from an optional JSON source plus .env/environment."""
    load_kwargs: dict[str, Any] = {}
    if env_path is not None:
        load_dotenv(env_path, override=False)
        load_kwargs["_env_file"] = str(env_path)
    else:
        load_dotenv(override=False)
    if source:
        load_kwargs.update(read_config_source(source))
    try:
        config = AppConfig(**load_kwargs)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc.error_count()} error(s)") from exc

    config.ensure_runtime_directories()

    LOGGER.info(
        "AppConfig loaded",
        extra={
            "event": "config.loaded",
            "environment": config.environment,
            "account_id": config.account_id,
            "recipients": len(config.recipients),
            "paths": {
                "credentials": str(config.credential_store_path),
                "log": str(config.log_path),
            },
        },
    )
    return config
