"""Configuration management for revwatch."""

from __future__ import annotations

import os
import shlex
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

CONFIG_FILE_ENV = "REVWATCH_CONFIG_FILE"
DEFAULT_CONFIG_FILE = Path("revwatch.yaml")


def _default_install_dir() -> Path:
    return Path.home() / "revwatch"


def split_command(command: str) -> list[str]:
    return shlex.split(command, posix=os.name != "nt")


def normalize_log_level(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        raise ValueError(
            "REVWATCH_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
        )
    return normalized


class WatchSettings(BaseSettings):
    """Runtime configuration sourced from environment, an optional .env file and revwatch.yaml."""

    model_config = SettingsConfigDict(
        env_prefix="REVWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file=DEFAULT_CONFIG_FILE,
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    repo_url: str | None = None
    install_dir: Path = Field(default_factory=_default_install_dir)
    remote_name: str = "origin"
    build_command: str = "mvn clean package -DskipTests"
    build_manifest: str | None = "pom.xml"
    launch_command: str = "java -jar lwjgl3/build/libs/Dashboard-1.0.0.jar"
    poll_interval: float = 60.0
    stop_grace_period: float = 10.0
    git_timeout: float = 120.0
    git_username: str | None = None
    git_password: str | None = Field(default=None, repr=False)
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return normalize_log_level(value)

    @field_validator("poll_interval", "stop_grace_period", "git_timeout")
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"must be > 0 (got {value})")
        return value

    @field_validator("build_command", "launch_command")
    @classmethod
    def _require_command(cls, value: str) -> str:
        if not split_command(value):
            raise ValueError("command must not be empty")
        return value

    @field_validator("repo_url", "build_manifest", "git_username", "git_password", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def build_args(self) -> list[str]:
        args = split_command(self.build_command)
        if os.name == "nt":
            # build tools such as mvn are .cmd shims on Windows
            return ["cmd.exe", "/c", *args]
        return args

    @property
    def launch_args(self) -> list[str]:
        return split_command(self.launch_command)


def load_settings(config_file: Path | None = None) -> WatchSettings:
    """Build settings, reading YAML from ``config_file`` instead of ./revwatch.yaml when given.

    Without an explicit file, ``REVWATCH_CONFIG_FILE`` is honoured.
    """

    if config_file is None and os.environ.get(CONFIG_FILE_ENV):
        config_file = Path(os.environ[CONFIG_FILE_ENV])
    if config_file is None:
        settings = WatchSettings()
    else:
        if not Path(config_file).is_file():
            raise ValueError(f"config file not found: {config_file}")

        class _FileSettings(WatchSettings):
            model_config = SettingsConfigDict(yaml_file=Path(config_file))

        settings = _FileSettings()
    settings.install_dir = settings.install_dir.expanduser().resolve()
    return settings


def prepare_install_dir(settings: WatchSettings) -> Path:
    settings.install_dir.mkdir(parents=True, exist_ok=True)
    return settings.install_dir


__all__ = [
    "WatchSettings",
    "load_settings",
    "normalize_log_level",
    "prepare_install_dir",
    "split_command",
]
