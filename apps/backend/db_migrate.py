"""
Minimal migration runner for the catalog schema.

Works against both backends selected by DB_URL (Postgres or DuckDB).

Usage:
  python -m apps.backend.db_migrate
  python -m apps.backend.db_migrate --dry-run
  python -m apps.backend.db_migrate --migrations-dir migrations
"""

from __future__ import annotations

import argparse
import importlib.util
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from apps.backend.db import db_conn, execute_conn, fetch_all_conn

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"

# Tokens that may contain a ';' which must not end a statement.
_SQL_TOKEN_RE = re.compile(
    r"""
      (?P<line_comment>--[^\n]*)
    | (?P<block_comment>/\*.*?\*/)
    | (?P<squote>'(?:[^']|'')*')
    | (?P<dollar>(?P<tag>\$[A-Za-z0-9_]*\$).*?(?P=tag))
    | (?P<semi>;)
    """,
    re.VERBOSE | re.DOTALL,
)


def _ensure_migrations_table(conn: Any) -> None:
    """Create schema_migrations table if missing."""
    execute_conn(
        conn,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version TEXT PRIMARY KEY,
          applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    conn.commit()


def _applied_versions(conn: Any) -> set[str]:
    """Return applied migration versions from the DB."""
    rows = fetch_all_conn(conn, "SELECT version FROM schema_migrations") or []
    return {str(r[0]) for r in rows if r and r[0]}


def _split_sql(sql: str) -> list[str]:
    """Split a SQL script into statements.

    Semicolons inside quotes, comments and dollar-quoted bodies are kept.
    """
    statements: list[str] = []
    start = 0
    for match in _SQL_TOKEN_RE.finditer(sql):
        if match.lastgroup != "semi":
            continue
        stmt = sql[start : match.start()].strip()
        if stmt:
            statements.append(stmt)
        start = match.end()
    tail = sql[start:].strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if _has_code(s)]


def _has_code(stmt: str) -> bool:
    """Return False for fragments made only of comments."""
    stripped = re.sub(r"--[^\n]*|/\*.*?\*/", "", stmt, flags=re.DOTALL)
    return bool(stripped.strip())


def _apply_sql_migration(conn: Any, path: Path) -> None:
    """Apply a .sql migration file inside one transaction."""
    raw = path.read_text(encoding="utf-8")
    for stmt in _split_sql(raw):
        execute_conn(conn, stmt)


def _apply_py_migration(conn: Any, path: Path) -> None:
    """Apply a .py migration module exposing upgrade(conn)."""
    mod_name = f"migration_{path.stem}"
    spec = importlib.util.spec_from_file_location(mod_name, str(path))
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Failed to load migration module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[call-arg]
    if not hasattr(module, "upgrade"):
        raise RuntimeError(f"Migration module missing upgrade(): {path}")
    module.upgrade(conn)


def _iter_migration_files(migrations_dir: Path) -> Iterable[Path]:
    """List migration files in name order."""
    if not migrations_dir.exists():
        return []
    files = [
        p
        for p in migrations_dir.iterdir()
        if p.is_file() and p.suffix in {".sql", ".py"} and not p.name.startswith("_")
    ]
    return sorted(files, key=lambda p: p.name)


def pending_migration_versions(conn: Any, *, migrations_dir: Path) -> list[str]:
    """Return pending migration versions for the provided connection."""
    _ensure_migrations_table(conn)
    applied = _applied_versions(conn)
    return [p.stem for p in _iter_migration_files(migrations_dir) if p.stem not in applied]


def ensure_schema_current(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR) -> None:
    """Fail fast when database schema is behind local migrations."""
    with db_conn() as conn:
        pending = pending_migration_versions(conn, migrations_dir=migrations_dir)
    if pending:
        pending_csv = ", ".join(pending)
        raise RuntimeError(
            f"Database schema is out of date. Pending migrations: {pending_csv}. "
            "Run `libwatch migrate` before starting the pipeline worker."
        )


def apply_migrations(conn: Any, *, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR) -> list[str]:
    """Apply pending migrations on *conn*, one transaction per migration."""
    pending_versions = set(pending_migration_versions(conn, migrations_dir=migrations_dir))
    applied: list[str] = []
    for path in _iter_migration_files(migrations_dir):
        version = path.stem
        if version not in pending_versions:
            continue
        logger.info("migration_apply version=%s", version)
        try:
            if path.suffix == ".sql":
                _apply_sql_migration(conn, path)
            else:
                _apply_py_migration(conn, path)
            execute_conn(conn, "INSERT INTO schema_migrations (version) VALUES (%s)", (version,))
            conn.commit()
        except Exception:
            conn.rollback()
            logger.exception("migration_failed version=%s", version)
            raise
        applied.append(version)
    return applied


def run_migrations(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR, dry_run: bool = False) -> None:
    """Apply pending migrations (or print them in dry-run)."""
    with db_conn() as conn:
        if dry_run:
            pending = pending_migration_versions(conn, migrations_dir=migrations_dir)
            for version in pending:
                print(f"PENDING: {version}")
            if not pending:
                print("No pending migrations.")
            return

        applied = apply_migrations(conn, migrations_dir=migrations_dir)
        for version in applied:
            print(f"Applied {version}")
        if not applied:
            print("Schema is up to date.")


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Apply catalog schema migrations.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show pending migrations without applying.",
    )
    parser.add_argument(
        "--migrations-dir",
        default=str(DEFAULT_MIGRATIONS_DIR),
        help="Path to migrations directory (default: ./migrations).",
    )
    args = parser.parse_args(argv)

    run_migrations(
        migrations_dir=Path(args.migrations_dir),
        dry_run=bool(args.dry_run),
    )


if __name__ == "__main__":
    main()
