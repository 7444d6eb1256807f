"""Registry of external vulnerability engines.

Engines implement ``contracts.interfaces.VulnerabilityMatcher``. They are
registered under a name and resolved from ``MatcherConfig.engine`` at
startup:

- ``none``: disabled; enrichment relies on the local pattern matcher.
- ``feed``: a local JSON advisory feed matched by exact coordinates.

Feed format::

    {"advisories": [
      {"cve_id": "CVE-2021-44228", "severity": "CRITICAL", "cvss_score": 10.0,
       "description": "...", "cwe_ids": ["CWE-502"],
       "affected": [{"group_id": "org.apache.logging.log4j",
                     "artifact_id": "log4j-core",
                     "versions": ["2.14.0", "2.14.1"]}],
       "patterns": ["log4j-core*"], "fixed_versions": ["2.15.0"]}
    ]}

An empty or missing ``versions`` list means every version is affected.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from contracts.interfaces import VulnerabilityMatcher
from contracts.schema import LINK_SOURCE_ENGINE
from infra.config import MatcherConfig
from pipeline.vulnerability.models import CveInfo, LibraryMetadata

logger = logging.getLogger(__name__)

EngineFactory = Callable[[MatcherConfig], VulnerabilityMatcher]

_ENGINE_REGISTRY: dict[str, EngineFactory] = {}


class VulnerabilityEngineError(RuntimeError):
    """Raised when an engine cannot produce results (bad feed, backend error)."""


def register_engine(name: str) -> Callable[[EngineFactory], EngineFactory]:
    """Register an engine factory under ``name``."""

    normalized = str(name or "").strip().lower()
    if not normalized:
        raise ValueError("engine name must be non-empty")

    def _decorator(factory: EngineFactory) -> EngineFactory:
        if normalized in _ENGINE_REGISTRY:
            raise KeyError(f"Engine already registered for '{normalized}'")
        _ENGINE_REGISTRY[normalized] = factory
        return factory

    return _decorator


def list_engines() -> list[str]:
    return sorted(_ENGINE_REGISTRY)


def build_engine(config: MatcherConfig) -> VulnerabilityMatcher:
    """Instantiate the engine selected by ``config.engine``."""
    factory = _ENGINE_REGISTRY.get(str(config.engine or "").strip().lower())
    if factory is None:
        raise KeyError(f"Unknown vulnerability engine: {config.engine!r} (known: {', '.join(list_engines())})")
    engine = factory(config)
    logger.info("vulnerability_engine name=%s enabled=%s", engine.name, engine.is_enabled())
    return engine


class DisabledEngine:
    """Engine that never reports anything."""

    name = "none"

    def is_enabled(self) -> bool:
        return False

    def analyze(self, metadata: LibraryMetadata) -> list[CveInfo]:
        _ = metadata
        return []


@dataclass(frozen=True)
class _Affected:
    group_id: str | None
    artifact_id: str
    versions: frozenset[str]

    def matches(self, metadata: LibraryMetadata) -> bool:
        if not metadata.artifact_id or metadata.artifact_id.lower() != self.artifact_id:
            return False
        if self.group_id and metadata.group_id and metadata.group_id.lower() != self.group_id:
            return False
        if not self.versions:
            return True
        return metadata.version is not None and metadata.version in self.versions


def _text_tuple(values: Any) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(str(v).strip() for v in values if v is not None and str(v).strip())


def _advisory(entry: Mapping[str, Any]) -> tuple[CveInfo, list[_Affected]]:
    cve_id = str(entry.get("cve_id") or "").strip()
    if not cve_id:
        raise ValueError("advisory without cve_id")
    score = entry.get("cvss_score")
    affected = [
        _Affected(
            group_id=str(item.get("group_id") or "").strip().lower() or None,
            artifact_id=str(item.get("artifact_id") or "").strip().lower(),
            versions=frozenset(_text_tuple(item.get("versions"))),
        )
        for item in entry.get("affected") or []
        if isinstance(item, Mapping) and str(item.get("artifact_id") or "").strip()
    ]
    patterns = _text_tuple(entry.get("patterns")) or tuple(f"{a.artifact_id}*" for a in affected)
    cve = CveInfo(
        cve_id=cve_id,
        name=entry.get("name") or cve_id,
        severity=str(entry.get("severity") or "").upper() or None,
        cvss_score=float(score) if score is not None else None,
        description=entry.get("description"),
        cwe_ids=_text_tuple(entry.get("cwe_ids")),
        source=LINK_SOURCE_ENGINE,
        affected_libraries=patterns,
        fixed_versions=_text_tuple(entry.get("fixed_versions")),
    )
    return cve, affected


class FeedEngine:
    """Exact-coordinate matching against a local advisory feed."""

    name = "feed"

    def __init__(self, feed_path: str | Path | None) -> None:
        self._feed_path = Path(feed_path) if feed_path else None
        self._advisories: list[tuple[CveInfo, list[_Affected]]] | None = None

    def is_enabled(self) -> bool:
        return self._feed_path is not None

    def _load(self) -> list[tuple[CveInfo, list[_Affected]]]:
        if self._advisories is not None:
            return self._advisories
        if self._feed_path is None:
            raise VulnerabilityEngineError("feed engine has no feed_path configured")
        try:
            payload = json.loads(self._feed_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise VulnerabilityEngineError(f"cannot read advisory feed {self._feed_path}: {exc}") from exc

        entries = payload.get("advisories") if isinstance(payload, Mapping) else None
        if not isinstance(entries, list):
            raise VulnerabilityEngineError(f"advisory feed {self._feed_path} has no 'advisories' list")

        advisories: list[tuple[CveInfo, list[_Affected]]] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            try:
                advisories.append(_advisory(entry))
            except (TypeError, ValueError) as exc:
                logger.warning("feed_advisory_skipped error=%s", exc)
        logger.info("feed_loaded path=%s advisories=%d", self._feed_path, len(advisories))
        self._advisories = advisories
        return advisories

    def advisories(self) -> list[CveInfo]:
        """Every CVE in the feed, for seeding the local CVE table."""
        return [cve for cve, _ in self._load()]

    def analyze(self, metadata: LibraryMetadata) -> list[CveInfo]:
        if not self.is_enabled():
            return []
        return [
            cve
            for cve, affected in self._load()
            if any(item.matches(metadata) for item in affected)
        ]


@register_engine("none")
def _build_disabled(config: MatcherConfig) -> VulnerabilityMatcher:
    _ = config
    return DisabledEngine()


@register_engine("feed")
def _build_feed(config: MatcherConfig) -> VulnerabilityMatcher:
    if not config.feed_path:
        logger.warning("feed_engine_without_path engine=feed")
    return FeedEngine(config.feed_path)
