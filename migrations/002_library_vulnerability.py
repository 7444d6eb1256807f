"""
Add the library/CVE link table and the Postgres-only catalog indexes.

DuckDB rewrites an UPDATE touching an indexed column as delete+insert and
rejects it under its primary-key check, so indexes over columns the stages
update (GROUP_ID, IS_ACTIVE, LAST_SEEN) are only created on Postgres.
"""

from __future__ import annotations

from typing import Any

from apps.backend.duckdb_conn import DuckDBConnection

_LINK_TABLE = """
CREATE TABLE IF NOT EXISTS STAGE2_LIBRARY_VULNERABILITY (
  LIBRARY_ID  TEXT NOT NULL,
  CVE_ID      TEXT NOT NULL,
  SOURCE      TEXT NOT NULL,
  MATCHED_AT  BIGINT NOT NULL,
  PRIMARY KEY (LIBRARY_ID, CVE_ID)
)
"""

_PORTABLE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS IDX_LIBVULN_CVE ON STAGE2_LIBRARY_VULNERABILITY (CVE_ID)",
)

_POSTGRES_INDEXES = (
    "CREATE INDEX IF NOT EXISTS IDX_STAGE1_EVENT_NS ON STAGE1_EVENT (NAMESPACE, IS_STABLE, TIMESTAMP)",
    "CREATE INDEX IF NOT EXISTS IDX_STAGE2_LIBRARY_PENDING ON STAGE2_LIBRARY (FIRST_SEEN) WHERE GROUP_ID IS NULL",
    "CREATE INDEX IF NOT EXISTS IDX_STAGE2_LIBRARY_AID_ACTIVE ON STAGE2_LIBRARY (AID, IS_ACTIVE, LAST_SEEN)",
)


def upgrade(conn: Any) -> None:
    """Create the link table and dialect-appropriate indexes."""
    statements = [_LINK_TABLE, *_PORTABLE_INDEXES]
    if not isinstance(conn, DuckDBConnection):
        statements.extend(_POSTGRES_INDEXES)
    with conn.cursor() as cur:
        for stmt in statements:
            cur.execute(stmt)
