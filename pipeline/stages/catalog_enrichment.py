"""Stage2 enrichment: coordinates, manifest metadata and CVE correlation.

Libraries with ``GROUP_ID IS NULL`` are picked oldest first. The external
engine is asked first; when it is disabled, fails or finds nothing, the
local pattern matcher is consulted. Every library ends with a non-NULL
``GROUP_ID`` (the group id or the empty-string sentinel) so it is not
selected again. Each library is committed on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.backend.pipeline_store import (
    fetch_unenriched_libraries,
    link_library_cve,
    update_library_metadata,
    upsert_cve,
)
from contracts.interfaces import LibraryObserver, VulnerabilityMatcher
from contracts.schema import LINK_SOURCE_ENGINE, LINK_SOURCE_PATTERN
from infra.config import PipelineConfig
from pipeline.stages.base import BaseStageProcessor, now_ms
from pipeline.stages.registry import StageDependencies, register_stage
from pipeline.vulnerability.engines import DisabledEngine
from pipeline.vulnerability.models import CveInfo, LibraryMetadata
from pipeline.vulnerability.pattern_matcher import PatternMatcher

logger = logging.getLogger(__name__)


class CatalogEnrichmentProcessor(BaseStageProcessor):
    processor_name = "catalog_enrichment"
    enabled_setting = "catalog_enrichment_enabled"

    def __init__(
        self,
        *,
        engine: VulnerabilityMatcher | None = None,
        pattern_matcher: PatternMatcher | None = None,
        tracker: LibraryObserver | None = None,
    ) -> None:
        super().__init__()
        self._engine: VulnerabilityMatcher = engine or DisabledEngine()
        self._pattern_matcher = pattern_matcher
        self._tracker = tracker

    def _on_initialize(self, config: PipelineConfig) -> None:
        logger.info(
            "enrichment_sources engine=%s engine_enabled=%s pattern_fallback=%s",
            self._engine.name,
            self._engine.is_enabled(),
            self._pattern_matcher is not None,
        )

    def _engine_cves(self, library: Mapping[str, Any], metadata: LibraryMetadata) -> list[CveInfo]:
        if not self._engine.is_enabled():
            return []
        try:
            return list(self._engine.analyze(metadata))
        except Exception as exc:
            logger.warning(
                "engine_failed engine=%s library_id=%s error=%s",
                self._engine.name,
                library.get("library_id"),
                exc,
            )
            return []

    def _pattern_cves(self, conn: Any, library: Mapping[str, Any]) -> list[CveInfo]:
        if self._pattern_matcher is None:
            return []
        return self._pattern_matcher.find_matching_cves(
            conn,
            library.get("library_name"),
            library.get("jarpath"),
            library.get("method"),
        )

    def enrich_library(self, conn: Any, library: Mapping[str, Any]) -> list[CveInfo]:
        """Enrich one library on *conn* without committing; returns the linked CVEs."""
        library_id = str(library["library_id"])
        metadata = LibraryMetadata.from_catalog(library.get("library_name"), library.get("jarpath"))

        engine_cves = self._engine_cves(library, metadata)
        matched_at = now_ms()
        for cve in engine_cves:
            upsert_cve(conn, cve)
            link_library_cve(conn, library_id, cve.cve_id, source=LINK_SOURCE_ENGINE, matched_at=matched_at)

        pattern_cves: list[CveInfo] = []
        if not engine_cves:
            pattern_cves = self._pattern_cves(conn, library)
            for cve in pattern_cves:
                link_library_cve(conn, library_id, cve.cve_id, source=LINK_SOURCE_PATTERN, matched_at=matched_at)

        update_library_metadata(conn, library_id, metadata)
        return engine_cves + pattern_cves

    def _process(self, conn: Any, batch_size: int) -> int:
        libraries = fetch_unenriched_libraries(conn, batch_size)
        enriched = 0
        for library in libraries:
            library_id = str(library.get("library_id"))
            try:
                cves = self.enrich_library(conn, library)
                conn.commit()
            except Exception:
                conn.rollback()
                logger.exception("library_enrichment_failed library_id=%s", library_id)
                continue

            enriched += 1
            if cves:
                logger.info(
                    "library_vulnerable library_id=%s name=%s cves=%s",
                    library_id,
                    library.get("library_name"),
                    ",".join(sorted({c.cve_id for c in cves})),
                )
            if self._tracker is not None and library.get("last_seen") is not None:
                self._tracker.update_timestamp(library.get("aid"), library_id, int(library["last_seen"]))
        conn.rollback()
        return enriched


@register_stage("catalog_enrichment")
def _build(deps: StageDependencies) -> CatalogEnrichmentProcessor:
    return CatalogEnrichmentProcessor(
        engine=deps.engine,
        pattern_matcher=deps.pattern_matcher,
        tracker=deps.tracker,
    )
