from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from mq_system.core.errors import ConfigError
from mq_system.core.topics import is_device_path, is_value_name


SYSTEM_CONFIG_FILE = Path("/etc/mq_system/system.toml")
HISTORY_CONFIG_FILE = Path("/etc/mq_system/mq_db_daemon.toml")
ENGINE_CONFIG_FILE = Path("/etc/mq_system/mq_exe_daemon.toml")

NANOSECONDS_PER_SECOND = 1_000_000_000

SettingsT = TypeVar("SettingsT", bound=BaseSettings)


class _FileBackedSettings(BaseSettings):
    # File values arrive as init kwargs; environment variables take precedence.
    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


class SystemSettings(_FileBackedSettings):
    mqtt_host: str = Field(default="127.0.0.1")
    mqtt_port: int = Field(default=1887, ge=1, le=65535)
    mqtt_keepalive: int = Field(default=60, ge=5, le=3600)
    mqtt_connect_attempts: int = Field(default=10, ge=1, le=600)
    log_file: str = Field(default="/var/log/mq_system/system.log")
    log_db: str = Field(default="")
    log_mqtt: bool = Field(default=False)
    log_level: int | None = Field(default=None, ge=0, le=6)

    model_config = SettingsConfigDict(env_prefix="MQ_SYSTEM_", case_sensitive=False, extra="ignore")


class HistoryValueConfig(BaseModel):
    name: str
    interval: float = Field(default=0, ge=0)
    averaging: bool = False
    precision: float = Field(default=0.0, ge=0.0)

    @field_validator("name")
    @classmethod
    def _check_value_name(cls, value: str) -> str:
        if not is_value_name(value):
            raise ValueError(f"malformed value name: {value!r}")
        return value

    @property
    def interval_ns(self) -> int:
        return int(round(self.interval * NANOSECONDS_PER_SECOND))


class HistorySensorConfig(BaseModel):
    name: str
    values: list[HistoryValueConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_device_path(cls, value: str) -> str:
        if not is_device_path(value):
            raise ValueError(f"malformed device path: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_unique_values(self) -> "HistorySensorConfig":
        names = [value.name for value in self.values]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate value names for sensor {self.name}")
        return self


class HistorySettings(_FileBackedSettings):
    uri: str = Field(default="/var/db/mq_system.db")
    log_level: int | None = Field(default=None, ge=0, le=6)
    db: list[HistorySensorConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="MQ_DB_", case_sensitive=False, extra="ignore")

    @model_validator(mode="after")
    def _check_unique_sensors(self) -> "HistorySettings":
        names = [sensor.name for sensor in self.db]
        if len(names) != len(set(names)):
            raise ValueError("duplicate sensor entries in db configuration")
        return self


class EngineSettings(_FileBackedSettings):
    uri: str = Field(default="/var/db/mq_exe_system.db")
    log_level: int | None = Field(default=None, ge=0, le=6)
    join_timeout_seconds: float = Field(default=10.0, gt=0.0, le=600.0)

    model_config = SettingsConfigDict(env_prefix="MQ_EXE_", case_sensitive=False, extra="ignore")


class WebSettings(BaseSettings):
    history_uri: str = Field(default="/var/db/mq_system.db")
    script_uri: str = Field(default="/var/db/mq_exe_system.db")
    log_uri: str = Field(default="")
    history_default_hours: int = Field(default=24, ge=1, le=24 * 366)

    model_config = SettingsConfigDict(env_prefix="MQ_WEB_", case_sensitive=False, extra="ignore")


def load_settings(settings_cls: type[SettingsT], path: Path | str | None) -> SettingsT:
    """Build ``settings_cls`` from a TOML file, letting the environment override it.

    ``path=None`` skips the file entirely. Any I/O, parse or validation problem
    is reported as ``ConfigError``.
    """
    data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigError(f"configuration file not found: {config_path}")
        try:
            data = TomlConfigSettingsSource(settings_cls, toml_file=config_path)()
        except (OSError, ValueError) as exc:
            raise ConfigError(f"unable to parse configuration file {config_path}: {exc}") from exc
    try:
        return settings_cls(**data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration for {settings_cls.__name__}: {exc}") from exc


@lru_cache(maxsize=1)
def get_web_settings() -> WebSettings:
    return WebSettings()
