"""Poll-and-batch scheduler driving the stage processors.

One cycle opens one DB connection and runs every enabled stage in order
(raw_to_parsed, parsed_to_catalog, catalog_enrichment). A failing stage is
logged and the cycle moves on to the next stage; the next cycle retries.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any

from apps.backend.db import db_conn
from apps.backend.db_migrate import ensure_schema_current
from contracts.interfaces import StageProcessor
from infra.config import MatcherConfig, PipelineConfig, get_settings
from infra.logging_config import request_context, setup_logging
from pipeline.stages.registry import StageDependencies, build_pipeline
from pipeline.tracking.temporal_tracker import LibraryTemporalTracker
from pipeline.vulnerability.engines import build_engine
from pipeline.vulnerability.pattern_matcher import PatternMatcher
from version import ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION

logger = logging.getLogger(__name__)

ConnFactory = Callable[[], AbstractContextManager[Any]]


@dataclass(frozen=True)
class PipelineWorkerOptions:
    """Input options for one worker process."""

    batch_size: int = 1000
    interval_seconds: float = 60.0
    once: bool = False
    check_schema: bool = True


@dataclass(frozen=True)
class CycleStats:
    """Records moved by each stage in one cycle."""

    raw_to_parsed: int = 0
    parsed_to_catalog: int = 0
    catalog_enrichment: int = 0
    failed_stages: tuple[str, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return self.raw_to_parsed + self.parsed_to_catalog + self.catalog_enrichment


def build_dependencies(matcher_cfg: MatcherConfig, tracker: LibraryTemporalTracker | None = None) -> StageDependencies:
    """Resolve the vulnerability engine and pattern matcher from config."""
    pattern_matcher = (
        PatternMatcher(ttl_seconds=matcher_cfg.pattern_cache_ttl_seconds)
        if matcher_cfg.pattern_fallback_enabled
        else None
    )
    return StageDependencies(
        tracker=tracker or LibraryTemporalTracker(),
        engine=build_engine(matcher_cfg),
        pattern_matcher=pattern_matcher,
    )


class PipelineWorker:
    """Runs stage cycles on a fixed cadence until stopped."""

    def __init__(
        self,
        stages: Sequence[StageProcessor],
        *,
        options: PipelineWorkerOptions | None = None,
        conn_factory: ConnFactory = db_conn,
        tracker: LibraryTemporalTracker | None = None,
    ) -> None:
        self._stages = list(stages)
        self._options = options or PipelineWorkerOptions()
        self._conn_factory = conn_factory
        self._stop = threading.Event()
        self._cycle = 0
        self.tracker = tracker

    @property
    def stages(self) -> list[StageProcessor]:
        return list(self._stages)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_cycle(self) -> CycleStats:
        """Run every enabled stage once; stage failures are isolated."""
        if int(self._options.batch_size) < 1:
            raise ValueError("batch_size must be >= 1")

        self._cycle += 1
        counts: dict[str, int] = {}
        failed: list[str] = []
        with request_context(cycle=self._cycle), self._conn_factory() as conn:
            for stage in self._stages:
                name = stage.processor_name
                if not stage.is_enabled():
                    logger.debug("stage_skipped stage=%s reason=disabled", name)
                    continue
                try:
                    counts[name] = stage.process_batch(conn, int(self._options.batch_size))
                except Exception:
                    failed.append(name)
                    logger.exception("stage_failed stage=%s cycle=%d", name, self._cycle)

        stats = CycleStats(
            raw_to_parsed=counts.get("raw_to_parsed", 0),
            parsed_to_catalog=counts.get("parsed_to_catalog", 0),
            catalog_enrichment=counts.get("catalog_enrichment", 0),
            failed_stages=tuple(failed),
        )
        logger.info(
            "cycle_done cycle=%d raw_to_parsed=%d parsed_to_catalog=%d catalog_enrichment=%d failed=%s",
            self._cycle,
            stats.raw_to_parsed,
            stats.parsed_to_catalog,
            stats.catalog_enrichment,
            ",".join(stats.failed_stages) or "-",
        )
        return stats

    def run_forever(self) -> int:
        """Loop until ``stop()``; returns the number of cycles run."""
        cycles = 0
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                # Connection-level failures end the cycle, not the worker.
                logger.exception("cycle_failed cycle=%d", self._cycle)
            cycles += 1
            if self._options.once:
                break
            self._stop.wait(float(self._options.interval_seconds))
        logger.info("worker_stopped cycles=%d", cycles)
        return cycles


def create_worker(
    options: PipelineWorkerOptions,
    *,
    pipeline_cfg: PipelineConfig | None = None,
    matcher_cfg: MatcherConfig | None = None,
    conn_factory: ConnFactory = db_conn,
) -> PipelineWorker:
    """Assemble stages and collaborators from settings."""
    settings = get_settings()
    pipeline_cfg = pipeline_cfg or settings.pipeline
    deps = build_dependencies(matcher_cfg or settings.matcher)
    stages = build_pipeline(pipeline_cfg, deps)
    return PipelineWorker(stages, options=options, conn_factory=conn_factory, tracker=deps.tracker)


def _install_signal_handlers(worker: PipelineWorker) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        logger.info("worker_signal signal=%s", signal.Signals(signum).name)
        worker.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the pipeline worker."""
    parser = argparse.ArgumentParser(description="Run the library catalog pipeline.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Max records per stage per cycle (default: PIPELINE_BATCH_SIZE or 1000).",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles (default: PIPELINE_INTERVAL_SECONDS or 60).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="postgresql:// or duckdb:// URL (or DB_URL env var).",
    )
    parser.add_argument(
        "--skip-schema-check",
        action="store_true",
        help="Do not verify that migrations are applied before starting.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    if args.db_url:
        os.environ["DB_URL"] = str(args.db_url)
    settings = get_settings(reload=True)
    setup_logging()

    if not settings.db.url:
        raise SystemExit("Missing --db-url (or DB_URL env var).")

    options = PipelineWorkerOptions(
        batch_size=int(args.batch_size or settings.pipeline.batch_size),
        interval_seconds=float(args.interval or settings.pipeline.interval_seconds),
        once=bool(args.once),
        check_schema=not bool(args.skip_schema_check),
    )
    if options.batch_size < 1:
        raise SystemExit("--batch-size must be >= 1")

    logger.info(
        "worker_start engine=%s version=%s schema=%s batch_size=%d interval=%.1f",
        ENGINE_NAME,
        ENGINE_VERSION,
        SCHEMA_VERSION,
        options.batch_size,
        options.interval_seconds,
    )
    if options.check_schema:
        ensure_schema_current()

    worker = create_worker(options)
    if not options.once:
        _install_signal_handlers(worker)
    worker.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
