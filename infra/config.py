"""Centralized application configuration with schema validation.

This module is compatibility-first:
- Supports flat environment names (for example ``DB_URL``).
- Supports nested names (for example ``DB__URL``) for consistency.
- Optionally reads a local ``.env`` file before process env values.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_LIBRARY_NAMESPACE = "org.jvmxray.events.system.lib"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce_flag(value: object, default: bool) -> bool:
    """Parse permissive boolean flags, falling back to ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="postgresql:// or duckdb:// URL")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return text
        return "INFO"


class DbMetricsConfig(BaseModel):
    """DB query instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        return _coerce_flag(value, True)

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _normalize_threshold_ms(cls, value: object) -> float:
        if value is None:
            return 1000.0
        text = str(value).strip()
        if text == "":
            return 1000.0
        try:
            parsed = float(text)
        except (TypeError, ValueError):
            return 1000.0
        return max(0.0, parsed)


class PipelineConfig(BaseModel):
    """Stage scheduling and per-stage switches."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=1000, ge=1, le=100_000)
    interval_seconds: int = Field(default=60, ge=1)
    raw_to_parsed_enabled: bool = Field(default=True)
    parsed_to_catalog_enabled: bool = Field(default=True)
    catalog_enrichment_enabled: bool = Field(default=True)
    library_namespace: str = Field(default=DEFAULT_LIBRARY_NAMESPACE)
    removal_stale_after_seconds: int = Field(default=86_400, ge=1)

    @field_validator(
        "raw_to_parsed_enabled",
        "parsed_to_catalog_enabled",
        "catalog_enrichment_enabled",
        mode="before",
    )
    @classmethod
    def _normalize_enabled(cls, value: object) -> bool:
        return _coerce_flag(value, True)

    @field_validator("library_namespace", mode="before")
    @classmethod
    def _normalize_namespace(cls, value: object) -> str:
        text = str(value or "").strip()
        return text or DEFAULT_LIBRARY_NAMESPACE


class MatcherConfig(BaseModel):
    """Vulnerability correlation settings."""

    model_config = ConfigDict(frozen=True)

    engine: str = Field(default="none")
    feed_path: str | None = Field(default=None)
    pattern_cache_ttl_seconds: int = Field(default=3600, ge=1)
    pattern_fallback_enabled: bool = Field(default=True)

    @field_validator("engine", mode="before")
    @classmethod
    def _normalize_engine(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        return text or "none"

    @field_validator("feed_path", mode="before")
    @classmethod
    def _normalize_feed_path(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("pattern_fallback_enabled", mode="before")
    @classmethod
    def _normalize_fallback(cls, value: object) -> bool:
        return _coerce_flag(value, True)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    matcher: MatcherConfig = Field(default_factory=MatcherConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _section(env: Mapping[str, str], fields: Mapping[str, tuple[str, ...]]) -> dict[str, str]:
    """Resolve one settings section, dropping keys with no configured value."""
    out: dict[str, str] = {}
    for field_name, keys in fields.items():
        value = _first_non_empty(env, *keys)
        if value is not None:
            out[field_name] = value
    return out


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    return {
        "db": _section(
            env,
            {
                "url": ("DB__URL", "DB_URL"),
                "pool_maxconn": ("DB__POOL_MAXCONN", "DB_POOL_MAXCONN"),
                "connect_timeout": ("DB__CONNECT_TIMEOUT", "DB_CONNECT_TIMEOUT"),
            },
        ),
        "logging": _section(
            env,
            {
                "level": ("LOGGING__LEVEL", "LIBWATCH_LOG_LEVEL"),
                "json_logs": ("LOGGING__JSON_LOGS", "LIBWATCH_LOG_JSON"),
                "override_root_handlers": ("LOGGING__OVERRIDE_ROOT_HANDLERS", "LIBWATCH_LOG_OVERRIDE"),
            },
        ),
        "db_metrics": _section(
            env,
            {
                "metrics_enabled": ("DB_METRICS__ENABLED", "DB_QUERY_METRICS_ENABLED"),
                "slow_query_threshold_ms": (
                    "DB_METRICS__SLOW_QUERY_THRESHOLD_MS",
                    "DB_SLOW_QUERY_THRESHOLD_MS",
                ),
            },
        ),
        "pipeline": _section(
            env,
            {
                "batch_size": ("PIPELINE__BATCH_SIZE", "PIPELINE_BATCH_SIZE"),
                "interval_seconds": ("PIPELINE__INTERVAL_SECONDS", "PIPELINE_INTERVAL_SECONDS"),
                "raw_to_parsed_enabled": ("PIPELINE__RAW_TO_PARSED_ENABLED", "STAGE0_ENABLED"),
                "parsed_to_catalog_enabled": ("PIPELINE__PARSED_TO_CATALOG_ENABLED", "STAGE1_ENABLED"),
                "catalog_enrichment_enabled": ("PIPELINE__CATALOG_ENRICHMENT_ENABLED", "STAGE2_ENABLED"),
                "library_namespace": ("PIPELINE__LIBRARY_NAMESPACE", "LIBRARY_NAMESPACE"),
                "removal_stale_after_seconds": (
                    "PIPELINE__REMOVAL_STALE_AFTER_SECONDS",
                    "REMOVAL_STALE_AFTER_SECONDS",
                ),
            },
        ),
        "matcher": _section(
            env,
            {
                "engine": ("MATCHER__ENGINE", "VULN_ENGINE"),
                "feed_path": ("MATCHER__FEED_PATH", "VULN_FEED_PATH"),
                "pattern_cache_ttl_seconds": (
                    "MATCHER__PATTERN_CACHE_TTL_SECONDS",
                    "CVE_PATTERN_CACHE_TTL_SECONDS",
                ),
                "pattern_fallback_enabled": (
                    "MATCHER__PATTERN_FALLBACK_ENABLED",
                    "CVE_PATTERN_FALLBACK_ENABLED",
                ),
            },
        ),
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "DEFAULT_LIBRARY_NAMESPACE",
    "DatabaseConfig",
    "DbMetricsConfig",
    "LoggingSettings",
    "MatcherConfig",
    "PipelineConfig",
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
