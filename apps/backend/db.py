"""
db.py

Connection and query helpers for the catalog store.

Two backends share one calling convention:

- ``postgresql://`` URLs use a process-global psycopg2 SimpleConnectionPool.
- ``duckdb://`` URLs use one process-global embedded DuckDB connection,
  wrapped by ``apps.backend.duckdb_conn`` so it behaves like psycopg2.

Stage processors receive a connection and call the *_conn helpers, so a
whole batch runs on one connection and one transaction.
"""

from __future__ import annotations

import atexit
import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence, Tuple

from apps.backend.db_metrics import measure_query
from apps.backend.duckdb_conn import DuckDBConnection, is_duckdb_url
from infra.config import get_settings

logger = logging.getLogger(__name__)


def _db_url() -> str:
    url = str(get_settings().db.url or "").strip()
    if not url:
        raise RuntimeError("DB_URL is not set")
    return url


# One pool (or embedded database) per process.
_POOL = None
_POOL_DSN: Optional[str] = None
_DUCKDB: Optional[DuckDBConnection] = None
_DUCKDB_URL: Optional[str] = None


def _get_pool():
    """Return a process-global psycopg2 pool, creating it on first use."""
    global _POOL, _POOL_DSN

    dsn = _db_url()
    if _POOL is not None and _POOL_DSN == dsn:
        return _POOL

    from psycopg2.pool import SimpleConnectionPool  # type: ignore

    cfg = get_settings().db
    _POOL = SimpleConnectionPool(
        minconn=1,
        maxconn=int(cfg.pool_maxconn),
        dsn=dsn,
        connect_timeout=int(cfg.connect_timeout),
    )
    _POOL_DSN = dsn
    return _POOL


def _get_duckdb(url: str) -> DuckDBConnection:
    """Return the process-global DuckDB connection for *url*."""
    global _DUCKDB, _DUCKDB_URL

    if _DUCKDB is not None and _DUCKDB_URL == url:
        return _DUCKDB
    if _DUCKDB is not None:
        _DUCKDB.close()
    _DUCKDB = DuckDBConnection.connect(url)
    _DUCKDB_URL = url
    return _DUCKDB


def close_all() -> None:
    """Close the pool and the embedded database (also runs at exit)."""
    global _POOL, _DUCKDB, _POOL_DSN, _DUCKDB_URL
    try:
        if _POOL is not None:
            _POOL.closeall()
    except Exception as exc:  # pragma: no cover - best effort at shutdown
        logger.debug("pool_close_failed error=%s", exc)
    finally:
        _POOL = None
        _POOL_DSN = None
    try:
        if _DUCKDB is not None:
            _DUCKDB.close()
    except Exception as exc:  # pragma: no cover - best effort at shutdown
        logger.debug("duckdb_close_failed error=%s", exc)
    finally:
        _DUCKDB = None
        _DUCKDB_URL = None


atexit.register(close_all)


@contextmanager
def db_conn() -> Iterator[Any]:
    """Yield a connection for the configured DB_URL.

    Callers must not close it. Any transaction left open when the block
    exits is rolled back, so callers commit explicitly.
    """
    url = _db_url()
    if is_duckdb_url(url):
        conn = _get_duckdb(url)
        try:
            yield conn
        finally:
            try:
                conn.rollback()
            except Exception as exc:
                logger.warning("duckdb_rollback_failed error=%s", exc)
        return

    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        # Never hand back a connection that is still inside a transaction.
        try:
            conn.rollback()
        except Exception as exc:
            logger.debug("pooled_rollback_failed error=%s", exc)
        try:
            pool.putconn(conn)
        except Exception:
            try:
                conn.close()
            except Exception as exc:
                logger.debug("pooled_close_failed error=%s", exc)


# ---------------------------
# *_conn primitives
# ---------------------------

def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query operation label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def fetch_one_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Tuple[Any, ...]]:
    """Execute a query on an existing connection and return one row (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_conn")):
            cur.execute(sql, params or ())
        return cur.fetchone()


def fetch_all_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[Tuple[Any, ...]]:
    """Execute a query on an existing connection and return all rows."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_conn")):
            cur.execute(sql, params or ())
        return cur.fetchall()


def execute_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> None:
    """Execute a statement on an existing connection (no returned rows)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())


def execute_many_conn(conn: Any, sql: str, seq_of_params: list[Sequence[Any]]) -> None:
    """Execute a statement against many parameter sets on an existing connection."""
    if not seq_of_params:
        return
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_many_conn")):
            cur.executemany(sql, seq_of_params)


def _cols_from_description(desc: Any) -> list[str]:
    """Extract lower-cased column names from cursor.description.

    Postgres folds unquoted identifiers to lower case while DuckDB keeps them
    as written, so names are normalized here.
    """
    if not desc:
        return []
    cols: list[str] = []
    for i, d in enumerate(desc):
        try:
            name = d[0]
        except (IndexError, KeyError, TypeError):
            name = None
        cols.append(str(name).lower() if name else f"col_{i}")
    return cols


def fetch_one_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[dict[str, Any]]:
    """Execute a query and return one row as a dict (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_dict_conn")):
            cur.execute(sql, params or ())
        cols = _cols_from_description(getattr(cur, "description", None))
        row = cur.fetchone()
        if row is None:
            return None
        if not cols:
            return None
        return dict(zip(cols, row, strict=False))


def fetch_all_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
    """Execute a query and return all rows as dicts keyed by lower-case column name."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_dict_conn")):
            cur.execute(sql, params or ())
        cols = _cols_from_description(getattr(cur, "description", None))
        rows = cur.fetchall()
        if not cols:
            return []
        return [dict(zip(cols, r, strict=False)) for r in rows]


def to_json(value: Any) -> str:
    """Serialize a Python object to the compact JSON text stored in TEXT columns."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
