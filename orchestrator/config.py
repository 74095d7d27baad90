"""Pipeline configuration settings."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from common.errors import ConfigValidationError
from common.log import DEFAULT_LOG_FORMAT
from common.models.profile import WORKLOAD_MIXES, FioDefaults
from common.utils import deep_merge, load_yaml

# Level names used by older config files
_LOG_LEVEL_ALIASES = {
    "WARN": "WARNING",
    "TRACE": "DEBUG",
}


class GeneralSettings(BaseModel):
    """Process-wide paths and logging."""
    log_directory: Path = Field(default=Path("./sysperf_logs"))
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT
    database_path: Path = Field(default=Path("./sysperf.db"))

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        v = _LOG_LEVEL_ALIASES.get(v, v)
        if v not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"unknown log level: {v}")
        return v


class FioSettings(BaseModel):
    """fio binary, named profiles and global defaults."""
    binary: str = "fio"
    profiles: dict[str, dict[str, Any]] = Field(default_factory=dict)
    defaults: FioDefaults = Field(default_factory=FioDefaults)
    builtin_profiles: bool = Field(default=True, description="Offer the reference workload mixes")

    def all_profiles(self) -> dict[str, dict[str, Any]]:
        """Configured profiles over the built-in mixes; a configured name replaces the mix."""
        merged = dict(WORKLOAD_MIXES) if self.builtin_profiles else {}
        merged.update(self.profiles)
        return merged


class StorageSettings(BaseModel):
    """Storage benchmarking settings."""
    test_directory: Path = Field(default=Path("./storage_tests"))
    max_concurrent_tests: int = Field(default=4, ge=1)
    default_timeout: float = Field(default=3600, gt=0)  # seconds
    grace_margin: float = Field(default=30, ge=0)  # seconds
    kill_grace_period: float = Field(default=10, ge=0)  # seconds
    store_retry_backoff: float = Field(default=0.5, ge=0)  # seconds
    retention_days: int = Field(default=30, ge=1)

    # Raw definitions, validated by the registry
    targets: list[dict[str, Any]] = Field(default_factory=list)
    fio: FioSettings = Field(default_factory=FioSettings)


class Settings(BaseSettings):
    """Application settings loaded from a config file and environment variables."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    class Config:
        env_prefix = "SYSPERF_"
        env_nested_delimiter = "__"
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def database_path(self) -> Path:
        return self.general.database_path

    @property
    def runs_path(self) -> Path:
        """Directory holding run config snapshots."""
        return self.general.database_path.parent / "runs"


def load_settings(path: Union[str, Path], overrides: Optional[dict] = None) -> Settings:
    """Load settings from a YAML or TOML file.

    Values from the file take precedence over environment variables;
    ``overrides`` are deep-merged over the file contents.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigValidationError(f"Config file not found: {path}")

    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            data = load_yaml(path)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Cannot parse {path}: {e}") from e

    if overrides:
        data = deep_merge(data, overrides)

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        ) from e
