"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override it using ``__``
as the nested delimiter (e.g. ``KUBE__CONTEXT=staging``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from kuberun.config import get_settings

    s = get_settings()
    print(s.kube.context)
    print(s.retry.max_interval_s)
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class KubeConfig(_StrictModel):
    """How cluster credentials are located.

    ``auto`` tries the in-cluster service account first and falls back to the
    default kubeconfig, which is what you want both on a laptop and in a pod.
    """

    mode: Literal["auto", "kubeconfig", "in_cluster"] = "auto"
    config_file: str | None = None  # None = ~/.kube/config (or $KUBECONFIG)
    context: str | None = None  # None = current-context


class RetryConfig(_StrictModel):
    initial_interval_s: float = 0.5
    multiplier: float = 1.5
    max_interval_s: float = 30.0
    jitter: float = 0.1  # fraction of the interval, applied +/-

    @field_validator("initial_interval_s", "max_interval_s", "jitter")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("multiplier")
    @classmethod
    def at_least_one(cls, v: float) -> float:
        if v < 1:
            raise ValueError("multiplier must be >= 1")
        return v

    @model_validator(mode="after")
    def _initial_within_max(self) -> RetryConfig:
        if self.initial_interval_s > self.max_interval_s:
            raise ValueError("initial_interval_s must not exceed max_interval_s")
        return self


class StreamsConfig(_StrictModel):
    chunk_size: int = 8192

    @field_validator("chunk_size")
    @classmethod
    def clamp_chunk_size(cls, v: int) -> int:
        return max(1, v)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    kube: KubeConfig = KubeConfig()
    retry: RetryConfig = RetryConfig()
    streams: StreamsConfig = StreamsConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
