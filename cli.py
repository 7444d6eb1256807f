"""
libwatch CLI (flat-layout friendly).

Usage
-----
libwatch migrate --db-url "duckdb:///var/lib/libwatch/catalog.duckdb"
libwatch run --once
libwatch run --batch-size 500 --interval 30
libwatch sweep --aid agent-01 --stale-after 86400
libwatch import-cves --feed advisories.json
libwatch stats
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import List, Optional


def _apply_db_url(db_url: Optional[str]) -> None:
    """Make --db-url visible to the settings loader."""
    if db_url:
        os.environ["DB_URL"] = db_url

    from infra.config import get_settings

    if not get_settings(reload=True).db.url:
        raise SystemExit("Missing --db-url (or DB_URL env var).")


def cmd_migrate(args: argparse.Namespace) -> None:
    _apply_db_url(args.db_url)
    from apps.backend.db_migrate import DEFAULT_MIGRATIONS_DIR, run_migrations

    migrations_dir = Path(args.migrations_dir) if args.migrations_dir else DEFAULT_MIGRATIONS_DIR
    run_migrations(migrations_dir=migrations_dir, dry_run=bool(args.dry_run))


def cmd_run(args: argparse.Namespace) -> None:
    from apps.worker import pipeline_worker

    argv: list[str] = []
    if args.once:
        argv.append("--once")
    if args.batch_size is not None:
        argv += ["--batch-size", str(args.batch_size)]
    if args.interval is not None:
        argv += ["--interval", str(args.interval)]
    if args.db_url:
        argv += ["--db-url", args.db_url]
    if args.skip_schema_check:
        argv.append("--skip-schema-check")
    pipeline_worker.main(argv)


def cmd_sweep(args: argparse.Namespace) -> None:
    from apps.worker import removal_sweep

    argv = ["--aid", args.aid]
    if args.stale_after is not None:
        argv += ["--stale-after", str(args.stale_after)]
    if args.db_url:
        argv += ["--db-url", args.db_url]
    removal_sweep.main(argv)


def cmd_import_cves(args: argparse.Namespace) -> None:
    _apply_db_url(args.db_url)
    from apps.backend.db import db_conn
    from apps.backend.pipeline_store import upsert_cve
    from pipeline.vulnerability.engines import FeedEngine

    cves = FeedEngine(args.feed).advisories()
    with db_conn() as conn:
        for cve in cves:
            upsert_cve(conn, cve)
        conn.commit()
    print(f"Imported {len(cves)} CVE records from {args.feed}")


def cmd_stats(args: argparse.Namespace) -> None:
    _apply_db_url(args.db_url)
    from apps.backend.db import db_conn
    from apps.backend.pipeline_store import stage_counts
    from pipeline.vulnerability.pattern_matcher import PatternMatcher

    with db_conn() as conn:
        report = {
            "stages": stage_counts(conn),
            "cves_by_severity": PatternMatcher.cve_counts_by_severity(conn),
        }
    print(json.dumps(report, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="libwatch", description="Library catalog pipeline CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_db_url(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--db-url", default=None, help="postgresql:// or duckdb:// URL (or DB_URL env var).")

    sp = sub.add_parser("migrate", help="Apply pending schema migrations.")
    add_db_url(sp)
    sp.add_argument("--dry-run", action="store_true", help="List pending migrations only.")
    sp.add_argument("--migrations-dir", default=None, help="Migrations directory. Default: ./migrations")
    sp.set_defaults(func=cmd_migrate)

    sp = sub.add_parser("run", help="Run pipeline cycles (loop, or one cycle with --once).")
    add_db_url(sp)
    sp.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    sp.add_argument("--batch-size", type=int, default=None, help="Max records per stage per cycle.")
    sp.add_argument("--interval", type=float, default=None, help="Seconds between cycles.")
    sp.add_argument("--skip-schema-check", action="store_true", help="Start without checking migrations.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("sweep", help="Mark libraries not seen recently on an agent as removed.")
    add_db_url(sp)
    sp.add_argument("--aid", required=True, help="Agent id to sweep.")
    sp.add_argument("--stale-after", type=int, default=None, help="Seconds without observation.")
    sp.set_defaults(func=cmd_sweep)

    sp = sub.add_parser("import-cves", help="Load CVE records from an advisory feed into the catalog.")
    add_db_url(sp)
    sp.add_argument("--feed", required=True, help="Path to the JSON advisory feed.")
    sp.set_defaults(func=cmd_import_cves)

    sp = sub.add_parser("stats", help="Print row counts per stage and CVE counts by severity.")
    add_db_url(sp)
    sp.set_defaults(func=cmd_stats)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
