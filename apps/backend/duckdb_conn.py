"""
duckdb_conn.py

psycopg2-shaped adapter over an embedded DuckDB database.

The storage helpers in ``apps.backend.db`` and the SQL in
``apps.backend.pipeline_store`` are written against the psycopg2 surface:
``conn.cursor()`` used as a context manager, ``%s`` placeholders, an implicit
transaction opened by the first statement and ended by ``commit()`` or
``rollback()``. This module provides that surface for DuckDB so the same code
runs against a local catalog file or an in-memory database.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

import duckdb

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"%s")

DUCKDB_SCHEME = "duckdb://"


def is_duckdb_url(url: str | None) -> bool:
    """Return True when *url* selects the embedded DuckDB backend."""
    return str(url or "").strip().lower().startswith(DUCKDB_SCHEME)


def duckdb_path(url: str) -> str:
    """Map ``duckdb:///abs/path``, ``duckdb://rel.db`` or ``duckdb://:memory:`` to a database path."""
    text = str(url or "").strip()
    if not is_duckdb_url(text):
        raise ValueError(f"not a duckdb url: {url!r}")
    path = text[len(DUCKDB_SCHEME):]
    return path or ":memory:"


def _translate(sql: str) -> str:
    return _PLACEHOLDER_RE.sub("?", sql)


class DuckDBCursor:
    """Cursor bound to the adapter's single DuckDB connection."""

    def __init__(self, owner: DuckDBConnection) -> None:
        self._owner = owner

    def __enter__(self) -> DuckDBCursor:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    @property
    def description(self) -> Any:
        return self._owner.raw.description

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        self._owner._begin_if_needed()
        statement = _translate(sql)
        if params:
            self._owner.raw.execute(statement, list(params))
        else:
            self._owner.raw.execute(statement)

    def executemany(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        rows = [list(p) for p in seq_of_params]
        if not rows:
            return
        self._owner._begin_if_needed()
        self._owner.raw.executemany(_translate(sql), rows)

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._owner.raw.fetchone()

    def fetchall(self) -> list[tuple[Any, ...]]:
        return list(self._owner.raw.fetchall())

    def close(self) -> None:
        """Cursors share the owner's connection; nothing to release."""


class DuckDBConnection:
    """Transaction-tracking wrapper around ``duckdb.DuckDBPyConnection``."""

    def __init__(self, raw: duckdb.DuckDBPyConnection) -> None:
        self.raw = raw
        self._in_txn = False

    @classmethod
    def connect(cls, url: str) -> DuckDBConnection:
        path = duckdb_path(url)
        logger.debug("duckdb_connect path=%s", path)
        return cls(duckdb.connect(database=path))

    @property
    def in_transaction(self) -> bool:
        return self._in_txn

    def _begin_if_needed(self) -> None:
        if not self._in_txn:
            self.raw.begin()
            self._in_txn = True

    def cursor(self) -> DuckDBCursor:
        return DuckDBCursor(self)

    def commit(self) -> None:
        if self._in_txn:
            self._in_txn = False
            self.raw.commit()

    def rollback(self) -> None:
        if self._in_txn:
            self._in_txn = False
            self.raw.rollback()

    def close(self) -> None:
        try:
            self.rollback()
        finally:
            self.raw.close()
