"""Stage1 -> Stage2: fold library-load events into the content-addressed catalog.

Each event is its own transaction: the library upsert (keyed by the sensor's
SHA-256) and the deletion of the source event commit together. Events
missing the artifact path, load method or hash are left in Stage1 and do
not count towards ``batch_size``; selection pages past them.

After commit the tracker records the observation, and a library that the
catalog had marked inactive is reactivated in the tracker as well.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from apps.backend.pipeline_store import (
    LibraryObservation,
    delete_parsed_event,
    fetch_event_keypairs,
    fetch_stable_events,
    upsert_library,
)
from contracts.interfaces import LibraryObserver
from contracts.schema import KEY_JAR_PATH, KEY_METHOD, KEY_SHA256
from pipeline.parsing.record_parser import parse_keypairs
from pipeline.stages.base import BaseStageProcessor
from pipeline.stages.registry import StageDependencies, register_stage
from pipeline.vulnerability.models import file_name

logger = logging.getLogger(__name__)

_TRAILING_VERSION_RE = re.compile(r"-\d+\..*$")


def library_display_name(jar_path: str) -> str:
    """``/opt/lib/log4j-core-2.14.1.jar`` -> ``log4j-core``.

    Falls back to the bare file name when stripping leaves nothing.
    """
    name = file_name(jar_path)
    stripped = name[: -len(".jar")] if name.lower().endswith(".jar") else name
    stripped = _TRAILING_VERSION_RE.sub("", stripped, count=1)
    return stripped or name


def build_observation(event: Mapping[str, Any], pairs: Mapping[str, str]) -> LibraryObservation | None:
    """Return the catalog observation for *event*, or None when identity is missing."""
    event_id = str(event.get("event_id"))
    jar_path = str(pairs.get(KEY_JAR_PATH) or "").strip()
    method = str(pairs.get(KEY_METHOD) or "").strip()
    if not jar_path or not method:
        logger.warning("library_event_incomplete event_id=%s jar_path=%s method=%s", event_id, jar_path, method)
        return None

    sha256 = str(pairs.get(KEY_SHA256) or "").strip()
    if not sha256:
        logger.warning("library_event_missing_hash event_id=%s jar_path=%s", event_id, jar_path)
        return None

    return LibraryObservation(
        library_id=sha256,
        event_id=event_id,
        aid=event.get("aid"),
        cid=event.get("cid"),
        jar_path=jar_path,
        library_name=library_display_name(jar_path),
        sha256=sha256,
        method=method,
        observed_at=int(event.get("timestamp") or 0),
    )


class ParsedToCatalogProcessor(BaseStageProcessor):
    processor_name = "parsed_to_catalog"
    enabled_setting = "parsed_to_catalog_enabled"

    def __init__(self, tracker: LibraryObserver | None = None) -> None:
        super().__init__()
        self._tracker = tracker

    def _event_pairs(self, conn: Any, event: Mapping[str, Any]) -> dict[str, str]:
        pairs = fetch_event_keypairs(conn, str(event.get("event_id")))
        if pairs:
            return pairs
        return parse_keypairs(event.get("keypairs"))

    def _catalog_one(self, conn: Any, event: Mapping[str, Any]) -> bool | None:
        """Catalog one event in its own transaction.

        Returns None when the event was skipped, otherwise whether a removed
        library was reactivated. Errors propagate after rollback.
        """
        event_id = str(event.get("event_id"))
        try:
            obs = build_observation(event, self._event_pairs(conn, event))
            if obs is None:
                conn.rollback()
                return None
            reactivated = bool(upsert_library(conn, obs))
            delete_parsed_event(conn, event_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        if self._tracker is not None:
            self._tracker.update_timestamp(obs.aid, obs.library_id, obs.observed_at)
            if reactivated:
                self._tracker.reactivate(obs.aid, obs.library_id, obs.observed_at)
        return reactivated

    def _process(self, conn: Any, batch_size: int) -> int:
        # Skipped events stay in Stage1; page past them so they never fill the batch.
        cataloged = 0
        attempted = 0
        cursor: tuple[int, str] | None = None
        while attempted < batch_size:
            events = fetch_stable_events(conn, self.config.library_namespace, batch_size, after=cursor)
            for event in events:
                if attempted >= batch_size:
                    break
                event_id = str(event.get("event_id"))
                cursor = (int(event.get("timestamp") or 0), event_id)
                try:
                    outcome = self._catalog_one(conn, event)
                except Exception:
                    attempted += 1
                    logger.exception("library_event_failed stage=%s event_id=%s", self.processor_name, event_id)
                    continue
                if outcome is None:
                    continue
                attempted += 1
                cataloged += 1
            if len(events) < batch_size:
                break
        conn.rollback()
        return cataloged


@register_stage("parsed_to_catalog")
def _build(deps: StageDependencies) -> ParsedToCatalogProcessor:
    return ParsedToCatalogProcessor(tracker=deps.tracker)
