"""Access graph settings (Pydantic v2)."""

from __future__ import annotations

import os
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
ALLOWED_LOG_FORMATS = frozenset({"console", "json"})
DEFAULT_DATABASE_URL = "sqlite:///./data/access_graph.sqlite"


def _env_file() -> str:
    override = os.getenv("ACCESS_GRAPH_ENV_FILE")
    if override and override.strip():
        return str(Path(override).expanduser().resolve())
    return str((Path.cwd() / ".env").resolve())


def access_graph_settings_config() -> SettingsConfigDict:
    """Return the standard ``BaseSettings`` config dict."""

    return SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        env_prefix="ACCESS_GRAPH_",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        str_strip_whitespace=True,
    )


def create_settings_accessors[T](
    settings_type: type[T],
) -> tuple[Callable[[], T], Callable[[], T]]:
    """Create ``get_settings`` and ``reload_settings`` helpers for a settings class."""

    @lru_cache(maxsize=1)
    def _build() -> T:
        return settings_type()

    def get_settings() -> T:
        return _build()

    def reload_settings() -> T:
        _build.cache_clear()
        return _build()

    return get_settings, reload_settings


def normalize_log_format(value: str, *, env_var: str = "ACCESS_GRAPH_LOG_FORMAT") -> str:
    normalized = value.strip().lower()
    if normalized not in ALLOWED_LOG_FORMATS:
        allowed = ", ".join(sorted(ALLOWED_LOG_FORMATS))
        raise ValueError(f"{env_var} must be one of: {allowed}.")
    return normalized


def normalize_log_level(value: str | None, *, env_var: str) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    if normalized not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ValueError(f"{env_var} must be one of: {allowed}.")
    return normalized


class Settings(BaseSettings):
    """Access graph settings loaded from ACCESS_GRAPH_* env vars (and .env)."""

    model_config = access_graph_settings_config()

    def __init__(self, **values: Any) -> None:
        # ACCESS_GRAPH_ENV_FILE and the cwd are read per instance, not at import.
        values.setdefault("_env_file", _env_file())
        super().__init__(**values)

    # ---- Database ------------------------------------------------------------
    database_url: str = DEFAULT_DATABASE_URL
    database_echo: bool = False

    database_pool_size: int = Field(5, ge=1)
    database_max_overflow: int = Field(10, ge=0)
    database_pool_timeout: int = Field(30, gt=0)
    database_pool_recycle: int = Field(1800, ge=0)

    database_sqlite_journal_mode: Literal[
        "WAL",
        "DELETE",
        "TRUNCATE",
        "PERSIST",
        "MEMORY",
        "OFF",
    ] = "WAL"
    database_sqlite_busy_timeout_ms: int = Field(30_000, ge=0)

    # ---- Logging -------------------------------------------------------------
    log_level: str = "INFO"
    log_format: str = "console"
    database_log_level: str | None = None

    # ---- Graph behaviour -----------------------------------------------------
    default_guard_name: str = Field("User", min_length=1)
    audit_zero_delta_reconciles: bool = True
    reconcile_mode: Literal["best_effort", "transactional"] = "best_effort"
    cascade_mode: Literal["transactional", "best_effort"] = "transactional"
    edge_write_concurrency: int = Field(1, ge=1, le=64)
    anchor_locking: bool = True

    # ---- Validators ----------------------------------------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def _v_log_level(cls, v: Any) -> str:
        raw = "" if v is None else str(v)
        return normalize_log_level(raw or "INFO", env_var="ACCESS_GRAPH_LOG_LEVEL") or "INFO"

    @field_validator("database_log_level", mode="before")
    @classmethod
    def _v_database_log_level(cls, v: Any) -> str | None:
        if v in (None, ""):
            return None
        return normalize_log_level(str(v), env_var="ACCESS_GRAPH_DATABASE_LOG_LEVEL")

    @field_validator("log_format", mode="before")
    @classmethod
    def _v_log_format(cls, v: Any) -> str:
        if v in (None, ""):
            return "console"
        return normalize_log_format(str(v))

    @field_validator("reconcile_mode", "cascade_mode", mode="before")
    @classmethod
    def _v_mode(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v

    @property
    def transactional_reconcile(self) -> bool:
        return self.reconcile_mode == "transactional"

    @property
    def transactional_cascade(self) -> bool:
        return self.cascade_mode == "transactional"


get_settings, reload_settings = create_settings_accessors(Settings)


__all__ = [
    "ALLOWED_LOG_FORMATS",
    "ALLOWED_LOG_LEVELS",
    "DEFAULT_DATABASE_URL",
    "Settings",
    "access_graph_settings_config",
    "create_settings_accessors",
    "get_settings",
    "normalize_log_format",
    "normalize_log_level",
    "reload_settings",
]
