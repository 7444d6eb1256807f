"""Local CVE correlation by glob patterns stored with each CVE record.

``STAGE2_LIBRARY_CVE.AFFECTED_LIBRARIES`` holds a JSON list of globs such as
``["log4j-core*", "log4j*"]``. A library is affected when any glob is found
in its lower-cased display name or full artifact path. Globs are anchored at
the start of the text or of a path segment, so ``log4j*`` matches
``log4j-core`` and ``/opt/lib/log4j-core-2.14.jar`` but not
``mylog4jwrapper``.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

from apps.backend.pipeline_store import cve_counts_by_severity, fetch_pattern_candidates, parse_json_list
from contracts.schema import LINK_SOURCE_PATTERN, MATCHED_SEVERITIES
from pipeline.vulnerability.models import CveInfo

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600
_SEGMENT_ANCHOR = r"(?:^|[/\\])"


def glob_to_regex(glob: str) -> str:
    """Translate ``*`` to ``.*`` and ``?`` to ``.``; everything else is literal."""
    parts: list[str] = []
    for ch in str(glob):
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return "".join(parts)


def compile_glob(glob: str) -> re.Pattern[str]:
    return re.compile(_SEGMENT_ANCHOR + glob_to_regex(glob), re.IGNORECASE)


def matches_library(patterns: list[re.Pattern[str]], library_name: str | None, jar_path: str | None) -> bool:
    name = str(library_name or "").lower()
    path = str(jar_path or "").lower()
    for pattern in patterns:
        if (name and pattern.search(name)) or (path and pattern.search(path)):
            return True
    return False


def _cve_from_row(row: Mapping[str, Any]) -> CveInfo:
    score = row.get("cvss_v3")
    cwe_text = str(row.get("cwe_ids") or "")
    return CveInfo(
        cve_id=str(row.get("cve_id")),
        name=row.get("cve_name"),
        severity=str(row.get("cvss_severity") or "").upper() or None,
        cvss_score=float(score) if score is not None else None,
        description=row.get("description"),
        cwe_ids=tuple(c.strip() for c in cwe_text.split(",") if c.strip()),
        source=LINK_SOURCE_PATTERN,
    )


class PatternMatcher:
    """Glob matcher with a per-instance compiled-pattern cache.

    The cache maps CVE id to compiled patterns and is dropped wholesale once
    it is older than ``ttl_seconds``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._cache: dict[str, list[re.Pattern[str]]] = {}
        self._cache_started: float | None = None

    @property
    def cached_cve_count(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_started = None

    def _expire_if_stale(self) -> None:
        now = self._clock()
        if self._cache_started is None:
            self._cache_started = now
            return
        if now - self._cache_started >= self._ttl_seconds:
            logger.debug("pattern_cache_expired entries=%d", len(self._cache))
            self._cache.clear()
            self._cache_started = now

    def _patterns_for(self, cve_id: str, affected_raw: Any) -> list[re.Pattern[str]]:
        cached = self._cache.get(cve_id)
        if cached is not None:
            return cached

        compiled: list[re.Pattern[str]] = []
        try:
            globs = parse_json_list(affected_raw)
        except ValueError as exc:
            logger.warning("cve_patterns_invalid cve_id=%s error=%s", cve_id, exc)
            globs = []
        for glob in globs:
            if not glob.strip():
                continue
            try:
                compiled.append(compile_glob(glob.strip()))
            except re.error as exc:
                logger.warning("cve_pattern_uncompilable cve_id=%s pattern=%s error=%s", cve_id, glob, exc)
        self._cache[cve_id] = compiled
        return compiled

    def find_matching_cves(
        self,
        conn: Any,
        library_name: str | None,
        jar_path: str | None,
        method: str | None = None,
    ) -> list[CveInfo]:
        """Return stored CRITICAL/HIGH/MEDIUM CVEs whose patterns match the library."""
        if not library_name and not jar_path:
            return []
        self._expire_if_stale()

        matches: list[CveInfo] = []
        for row in fetch_pattern_candidates(conn):
            cve_id = str(row.get("cve_id") or "")
            if not cve_id:
                continue
            patterns = self._patterns_for(cve_id, row.get("affected_libraries"))
            if patterns and matches_library(patterns, library_name, jar_path):
                matches.append(_cve_from_row(row))

        if matches:
            logger.info(
                "pattern_match library=%s method=%s cves=%d",
                library_name,
                method,
                len(matches),
            )
        return matches

    @staticmethod
    def cve_counts_by_severity(conn: Any) -> dict[str, int]:
        """Counts per severity, with zero entries for the matched severities."""
        counts = {severity: 0 for severity in MATCHED_SEVERITIES}
        counts.update(cve_counts_by_severity(conn))
        return counts
