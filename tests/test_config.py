"""Unit tests for centralized configuration parsing and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from infra.config import (
    DEFAULT_LIBRARY_NAMESPACE,
    Settings,
    ValidationError,
    clear_settings_cache,
    get_settings,
)


def test_settings_reads_legacy_env_keys() -> None:
    """Legacy flat env keys should map to nested settings models."""
    env = {
        "DB_URL": "postgresql://legacy/db",
        "DB_POOL_MAXCONN": "15",
        "DB_CONNECT_TIMEOUT": "9",
        "PIPELINE_BATCH_SIZE": "250",
        "PIPELINE_INTERVAL_SECONDS": "5",
        "STAGE1_ENABLED": "false",
        "VULN_ENGINE": "FEED",
        "VULN_FEED_PATH": "/etc/libwatch/feed.json",
        "CVE_PATTERN_CACHE_TTL_SECONDS": "120",
        "LIBWATCH_LOG_LEVEL": "debug",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.db.url == "postgresql://legacy/db"
    assert settings.db.pool_maxconn == 15
    assert settings.db.connect_timeout == 9
    assert settings.pipeline.batch_size == 250
    assert settings.pipeline.interval_seconds == 5
    assert settings.pipeline.raw_to_parsed_enabled is True
    assert settings.pipeline.parsed_to_catalog_enabled is False
    assert settings.matcher.engine == "feed"
    assert settings.matcher.feed_path == "/etc/libwatch/feed.json"
    assert settings.matcher.pattern_cache_ttl_seconds == 120
    assert settings.logging.level == "DEBUG"


def test_settings_reads_nested_env_keys() -> None:
    """Nested env keys should be supported with `__` delimiter."""
    env = {
        "DB__URL": "duckdb:///tmp/catalog.duckdb",
        "DB__POOL_MAXCONN": "11",
        "PIPELINE__LIBRARY_NAMESPACE": "custom.lib",
        "PIPELINE__CATALOG_ENRICHMENT_ENABLED": "off",
        "MATCHER__PATTERN_FALLBACK_ENABLED": "0",
        "DB_METRICS__SLOW_QUERY_THRESHOLD_MS": "250",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.db.url == "duckdb:///tmp/catalog.duckdb"
    assert settings.db.pool_maxconn == 11
    assert settings.pipeline.library_namespace == "custom.lib"
    assert settings.pipeline.catalog_enrichment_enabled is False
    assert settings.matcher.pattern_fallback_enabled is False
    assert settings.db_metrics.slow_query_threshold_ms == 250.0


def test_nested_key_wins_over_legacy_key() -> None:
    env = {"DB__URL": "postgresql://nested/db", "DB_URL": "postgresql://legacy/db"}
    assert Settings.from_env(env=env, env_file=".missing.env").db.url == "postgresql://nested/db"


def test_defaults_without_env() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")

    assert settings.db.url is None
    assert settings.pipeline.batch_size == 1000
    assert settings.pipeline.interval_seconds == 60
    assert settings.pipeline.library_namespace == DEFAULT_LIBRARY_NAMESPACE
    assert settings.pipeline.removal_stale_after_seconds == 86_400
    assert settings.matcher.engine == "none"
    assert settings.matcher.pattern_cache_ttl_seconds == 3600
    assert settings.db_metrics.metrics_enabled is True


def test_settings_invalid_pool_size_raises_validation_error() -> None:
    """Invalid constrained values should fail schema validation."""
    with pytest.raises(ValidationError):
        Settings.from_env(env={"DB_POOL_MAXCONN": "0"}, env_file=".missing.env")


def test_settings_invalid_batch_size_raises_validation_error() -> None:
    with pytest.raises(ValidationError):
        Settings.from_env(env={"PIPELINE_BATCH_SIZE": "0"}, env_file=".missing.env")


def test_unknown_flag_values_fall_back_to_defaults() -> None:
    settings = Settings.from_env(
        env={"STAGE0_ENABLED": "maybe", "LIBWATCH_LOG_LEVEL": "verbose", "DB_SLOW_QUERY_THRESHOLD_MS": "abc"},
        env_file=".missing.env",
    )
    assert settings.pipeline.raw_to_parsed_enabled is True
    assert settings.logging.level == "INFO"
    assert settings.db_metrics.slow_query_threshold_ms == 1000.0


def test_dotenv_values_are_overridden_by_process_env(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# local overrides\nDB_URL='duckdb:///from-dotenv.duckdb'\nPIPELINE_BATCH_SIZE=42\nnot a pair\n",
        encoding="utf-8",
    )

    settings = Settings.from_env(env={"PIPELINE_BATCH_SIZE": "7"}, env_file=str(env_file))

    assert settings.db.url == "duckdb:///from-dotenv.duckdb"
    assert settings.pipeline.batch_size == 7


def test_settings_are_frozen() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")
    with pytest.raises(ValidationError):
        settings.pipeline.batch_size = 5  # type: ignore[misc]


def test_get_settings_reload_rebuilds_cache(monkeypatch: Any) -> None:
    """Reload should rebuild cached settings from current process env."""
    clear_settings_cache()
    monkeypatch.setenv("DB_URL", "postgresql://first/db")
    first = get_settings(reload=True)

    monkeypatch.setenv("DB_URL", "postgresql://second/db")
    cached = get_settings()
    second = get_settings(reload=True)

    assert first.db.url == "postgresql://first/db"
    assert cached is first
    assert second.db.url == "postgresql://second/db"
