"""Shared fixtures: settings isolation and an in-memory DuckDB catalog."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from apps.backend.db_migrate import apply_migrations
from apps.backend.duckdb_conn import DuckDBConnection
from infra.config import clear_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Settings are cached per process; rebuild them for every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def catalog_conn() -> Iterator[DuckDBConnection]:
    """A migrated in-memory catalog."""
    conn = DuckDBConnection.connect("duckdb://:memory:")
    apply_migrations(conn)
    try:
        yield conn
    finally:
        conn.close()
