"""Stage0 -> Stage1: decode raw events into parsed events with key/value rows.

A batch is one transaction. Each event is written to Stage1 as unstable,
its key/value rows are inserted, the event is flipped stable and the raw
row is deleted. Any failure rolls back the whole batch, which then stays in
Stage0 for the next poll.
"""

from __future__ import annotations

import logging
from typing import Any

from apps.backend.pipeline_store import (
    delete_raw_event,
    fetch_raw_events,
    insert_event_keypairs,
    insert_parsed_event,
    mark_event_stable,
)
from pipeline.parsing.record_parser import parse_keypairs
from pipeline.stages.base import BaseStageProcessor, StageProcessingError
from pipeline.stages.registry import StageDependencies, register_stage

logger = logging.getLogger(__name__)


class RawToParsedProcessor(BaseStageProcessor):
    processor_name = "raw_to_parsed"
    enabled_setting = "raw_to_parsed_enabled"

    def _process(self, conn: Any, batch_size: int) -> int:
        events = fetch_raw_events(conn, batch_size)
        if not events:
            conn.rollback()
            return 0

        current: str | None = None
        try:
            for event in events:
                current = str(event["event_id"])
                insert_parsed_event(conn, event)
                insert_event_keypairs(conn, current, parse_keypairs(event.get("keypairs")))
                mark_event_stable(conn, current)
                delete_raw_event(conn, current)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            logger.error(
                "stage_batch_rolled_back stage=%s events=%d event_id=%s error=%s",
                self.processor_name,
                len(events),
                current,
                exc,
            )
            raise StageProcessingError(self.processor_name, f"batch rolled back: {exc}", event_id=current) from exc

        return len(events)


@register_stage("raw_to_parsed")
def _build(deps: StageDependencies) -> RawToParsedProcessor:
    _ = deps
    return RawToParsedProcessor()
