"""Mark libraries no longer observed on an agent as removed.

A library is considered removed from an agent when it is still active in
the catalog but its ``LAST_SEEN`` is older than ``now - stale_after``.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass

from apps.backend.db import db_conn
from apps.backend.pipeline_store import fetch_stale_libraries, mark_library_removed
from contracts.interfaces import LibraryObserver
from infra.config import get_settings
from infra.logging_config import setup_logging
from pipeline.stages.base import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovalSweepOptions:
    """Input options for one sweep."""

    aid: str
    stale_after_seconds: int
    now_ms: int | None = None


def sweep_removed_libraries(conn, options: RemovalSweepOptions, *, tracker: LibraryObserver | None = None) -> list[str]:
    """Mark stale libraries of ``options.aid`` removed and return their ids.

    The updates commit as one transaction; the tracker is only told after
    the commit succeeded.
    """
    if int(options.stale_after_seconds) < 1:
        raise ValueError("stale_after_seconds must be >= 1")
    aid = str(options.aid or "").strip()
    if not aid:
        raise ValueError("aid must be non-empty")

    now = int(options.now_ms) if options.now_ms is not None else now_ms()
    cutoff = now - int(options.stale_after_seconds) * 1000

    try:
        stale = fetch_stale_libraries(conn, aid, cutoff)
        for library_id in stale:
            mark_library_removed(conn, library_id, aid, now)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.exception("removal_sweep_failed aid=%s", aid)
        raise

    if tracker is not None:
        for library_id in stale:
            tracker.mark_removed(aid, library_id, now)
    logger.info("removal_sweep aid=%s cutoff=%d removed=%d", aid, cutoff, len(stale))
    return stale


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the removal sweep."""
    parser = argparse.ArgumentParser(description="Mark libraries not seen recently as removed.")
    parser.add_argument("--aid", required=True, help="Agent id to sweep.")
    parser.add_argument(
        "--stale-after",
        type=int,
        default=None,
        help="Seconds without observation before a library counts as removed "
        "(default: REMOVAL_STALE_AFTER_SECONDS or 86400).",
    )
    parser.add_argument("--db-url", default=None, help="postgresql:// or duckdb:// URL (or DB_URL env var).")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    if args.db_url:
        os.environ["DB_URL"] = str(args.db_url)
    settings = get_settings(reload=True)
    setup_logging()

    options = RemovalSweepOptions(
        aid=str(args.aid),
        stale_after_seconds=int(args.stale_after or settings.pipeline.removal_stale_after_seconds),
    )
    with db_conn() as conn:
        removed = sweep_removed_libraries(conn, options)
    for library_id in removed:
        print(library_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
