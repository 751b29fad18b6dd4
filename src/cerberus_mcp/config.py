"""Configuration management for Cerberus MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CerberusSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(default=Path("./.cerberus"), validation_alias="CERBERUS_STATE_DIR")
    pipeline_path: Path | None = Field(default=None, validation_alias="CERBERUS_PIPELINE_PATH")
    log_level: str = Field(default="INFO", validation_alias="CERBERUS_LOG_LEVEL")
    max_attempts: int = Field(default=3, validation_alias="CERBERUS_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=5.0, validation_alias="CERBERUS_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=300.0, validation_alias="CERBERUS_RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.25, validation_alias="CERBERUS_RETRY_JITTER")
    stagger_delay: float = Field(default=2.0, validation_alias="CERBERUS_STAGGER_DELAY")
    lock_timeout: float = Field(default=30.0, validation_alias="CERBERUS_LOCK_TIMEOUT")
    agent_timeout: float = Field(default=3600.0, validation_alias="CERBERUS_AGENT_TIMEOUT")
    agent_command: str = Field(default="claude", validation_alias="CERBERUS_AGENT_COMMAND")
    isolate_parallel: bool = Field(default=True, validation_alias="CERBERUS_ISOLATE_PARALLEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CERBERUS_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("pipeline_path", mode="before")
    @classmethod
    def _parse_pipeline_path(cls, value):
        if value is None or value == "":
            return None
        return value

    @field_validator("max_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CERBERUS_MAX_ATTEMPTS must be >= 1")
        return value

    @field_validator("lock_timeout", "agent_timeout", "retry_max_delay")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and delay caps must be > 0")
        return value

    @field_validator("retry_base_delay", "stagger_delay")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delays must be >= 0")
        return value

    @field_validator("retry_jitter")
    @classmethod
    def _validate_jitter(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError("CERBERUS_RETRY_JITTER must be within [0, 1)")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CerberusSettings:
    """Return cached settings instance."""

    settings = CerberusSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    if settings.pipeline_path is not None:
        settings.pipeline_path = settings.pipeline_path.expanduser().resolve()
    return settings


__all__ = ["CerberusSettings", "get_settings"]
