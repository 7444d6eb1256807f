"""
db_metrics.py

Query-timing helpers shared by the storage layer and the stage processors.

- Slow statements are logged with stable ``key=value`` fields.
- An optional histogram emitter hook lets deployments forward timings to a
  metrics backend without this package depending on one.
- ``measure_stage`` times a whole stage batch the same way.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from infra.config import get_settings

_LOGGER = logging.getLogger(__name__)
_QUERY_HISTOGRAM = "db_query_duration_ms"
_STAGE_HISTOGRAM = "pipeline_stage_duration_ms"
_METRIC_EMITTER: Callable[[str, float, Sequence[str]], None] | None = None


def query_metrics_enabled() -> bool:
    """Return whether DB query instrumentation is enabled."""
    return bool(get_settings().db_metrics.metrics_enabled)


def slow_query_threshold_ms() -> float:
    """Return the slow-query warning threshold in milliseconds."""
    return float(get_settings().db_metrics.slow_query_threshold_ms)


def register_histogram_emitter(emitter: Callable[[str, float, Sequence[str]], None] | None) -> None:
    """Register (or clear with ``None``) a histogram emitter callback.

    The callback receives the metric name, the observed value in
    milliseconds and a list of tags such as ``["query:fetch_all_conn:select"]``.
    """
    global _METRIC_EMITTER
    _METRIC_EMITTER = emitter


def _emit_histogram(name: str, value: float, tags: Sequence[str]) -> None:
    if _METRIC_EMITTER is None:
        return
    try:
        _METRIC_EMITTER(name, value, tags)
    except (TypeError, ValueError, RuntimeError) as exc:
        _LOGGER.debug("db metric emitter failed: %s", exc)


@contextmanager
def measure_query(name: str) -> Iterator[None]:
    """Measure query duration, warn on slow queries, and emit histogram data."""
    if not query_metrics_enabled():
        yield
        return

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        rounded_ms = round(duration_ms, 2)
        if duration_ms >= slow_query_threshold_ms():
            _LOGGER.warning("slow_query query_name=%s duration_ms=%.2f", str(name), rounded_ms)
        _emit_histogram(_QUERY_HISTOGRAM, rounded_ms, [f"query:{name}"])


@contextmanager
def measure_stage(stage: str) -> Iterator[None]:
    """Time one stage batch and emit it as a histogram sample."""
    if not query_metrics_enabled():
        yield
        return

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = round((time.perf_counter() - start) * 1000.0, 2)
        _LOGGER.debug("stage_timing stage=%s duration_ms=%.2f", stage, duration_ms)
        _emit_histogram(_STAGE_HISTOGRAM, duration_ms, [f"stage:{stage}"])
