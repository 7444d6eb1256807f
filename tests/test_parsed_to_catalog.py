"""Integration tests for the Stage1 -> Stage2 processor on DuckDB."""

from __future__ import annotations

from typing import Any

import pytest

from apps.backend.pipeline_store import fetch_library
from infra.config import PipelineConfig
from pipeline.stages import parsed_to_catalog
from pipeline.stages.parsed_to_catalog import ParsedToCatalogProcessor, library_display_name
from pipeline.stages.raw_to_parsed import RawToParsedProcessor
from pipeline.tracking.temporal_tracker import LibraryTemporalTracker
from tests._catalog import insert_raw_event, insert_stable_event, scalar


def _processor(tracker: LibraryTemporalTracker | None = None, **cfg: Any) -> ParsedToCatalogProcessor:
    processor = ParsedToCatalogProcessor(tracker=tracker)
    processor.initialize(PipelineConfig(**cfg))
    return processor


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/opt/lib/log4j-core-2.14.1.jar", "log4j-core"),
        ("C:\\app\\lib\\commons-lang3-3.12.0.jar", "commons-lang3"),
        ("/opt/lib/guava.jar", "guava"),
        ("/opt/lib/app-1.0-SNAPSHOT.jar", "app"),
        ("/opt/lib/-1.2.jar", "-1.2.jar"),
        ("plain-name", "plain-name"),
    ],
)
def test_library_display_name(path: str, expected: str) -> None:
    assert library_display_name(path) == expected


def test_identical_hash_collapses_to_one_library(catalog_conn: Any) -> None:
    tracker = LibraryTemporalTracker()
    insert_stable_event(
        catalog_conn,
        "e-late",
        timestamp=5_000,
        pairs={"jarPath": "/srv/b/lib/log4j-core-2.14.1.jar", "method": "URLClassLoader", "sha256": "abc"},
    )
    insert_stable_event(
        catalog_conn,
        "e-early",
        timestamp=1_000,
        pairs={"jarPath": "/srv/a/lib/log4j-core-2.14.1.jar", "method": "static", "sha256": "abc"},
    )

    assert _processor(tracker).process_batch(catalog_conn, 10) == 2

    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE2_LIBRARY") == 1
    library = fetch_library(catalog_conn, "abc")
    assert library is not None
    assert library["first_seen"] == 1_000
    assert library["last_seen"] == 5_000
    assert library["is_active"] is True
    assert library["library_name"] == "log4j-core"
    assert library["jarpath"] == "/srv/a/lib/log4j-core-2.14.1.jar"
    assert library["group_id"] is None
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE1_EVENT") == 0
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE1_EVENT_KEYPAIR") == 0
    assert tracker.get_first_seen("agent-1", "abc") == 1_000
    assert tracker.get_last_seen("agent-1", "abc") == 5_000


def test_earlier_reobservation_moves_first_seen_back(catalog_conn: Any) -> None:
    pairs = {"jarPath": "/lib/a-1.0.jar", "method": "static", "sha256": "h1"}
    insert_stable_event(catalog_conn, "e1", timestamp=9_000, pairs=pairs)
    _processor().process_batch(catalog_conn, 10)
    catalog_conn.raw.execute("UPDATE STAGE2_LIBRARY SET IS_ACTIVE = FALSE")

    insert_stable_event(catalog_conn, "e2", timestamp=4_000, pairs=pairs)
    _processor().process_batch(catalog_conn, 10)

    library = fetch_library(catalog_conn, "h1")
    assert library is not None
    assert library["first_seen"] == 4_000
    assert library["last_seen"] == 9_000
    assert library["is_active"] is True


def test_missing_hash_is_skipped_and_left_in_stage1(catalog_conn: Any, caplog: Any) -> None:
    caplog.set_level("WARNING")
    insert_stable_event(
        catalog_conn,
        "e1",
        timestamp=1,
        pairs={"jarPath": "/lib/foo.jar", "method": "URLClassLoader"},
    )

    assert _processor().process_batch(catalog_conn, 10) == 0

    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE2_LIBRARY") == 0
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE1_EVENT") == 1
    assert any("library_event_missing_hash event_id=e1" in r.message for r in caplog.records)


def test_missing_path_or_method_is_skipped(catalog_conn: Any) -> None:
    insert_stable_event(catalog_conn, "e1", timestamp=1, pairs={"method": "static", "sha256": "x"})
    insert_stable_event(catalog_conn, "e2", timestamp=2, pairs={"jarPath": "/lib/a.jar", "sha256": "y"})

    assert _processor().process_batch(catalog_conn, 10) == 0
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE1_EVENT") == 2


def test_skipped_events_do_not_block_later_ones(catalog_conn: Any) -> None:
    for i in range(1, 4):
        insert_stable_event(catalog_conn, f"nohash{i}", timestamp=i, pairs={"jarPath": "/lib/x.jar", "method": "m"})
    insert_stable_event(catalog_conn, "tie-a", timestamp=3, pairs={"jarPath": "/lib/y.jar", "method": "m"})
    insert_stable_event(catalog_conn, "good", timestamp=3, pairs={"jarPath": "/lib/c.jar", "method": "m", "sha256": "c"})
    insert_stable_event(catalog_conn, "good2", timestamp=4, pairs={"jarPath": "/lib/d.jar", "method": "m", "sha256": "d"})
    insert_stable_event(catalog_conn, "good3", timestamp=5, pairs={"jarPath": "/lib/e.jar", "method": "m", "sha256": "e"})

    processor = _processor()
    assert processor.process_batch(catalog_conn, 2) == 2
    assert fetch_library(catalog_conn, "c") is not None
    assert fetch_library(catalog_conn, "d") is not None
    assert fetch_library(catalog_conn, "e") is None

    assert processor.process_batch(catalog_conn, 2) == 1
    assert processor.process_batch(catalog_conn, 2) == 0
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE2_LIBRARY") == 3
    assert scalar(catalog_conn, "SELECT COUNT(*) FROM STAGE1_EVENT") == 4


def test_catalog_reactivation_clears_tracker_removal(catalog_conn: Any) -> None:
    tracker = LibraryTemporalTracker()
    pairs = {"jarPath": "/lib/a-1.0.jar", "method": "static", "sha256": "h1"}
    insert_stable_event(catalog_conn, "e1", timestamp=1_000, pairs=pairs)
    _processor(tracker).process_batch(catalog_conn, 10)
    catalog_conn.raw.execute("UPDATE STAGE2_LIBRARY SET IS_ACTIVE = FALSE")
    tracker.mark_removed("agent-1", "h1", 2_000)

    insert_stable_event(catalog_conn, "e2", timestamp=3_000, pairs=pairs)
    assert _processor(tracker).process_batch(catalog_conn, 10) == 1

    info = tracker.get_info("agent-1", "h1")
    assert info is not None
    assert info.removed is False
    assert info.last_seen == 3_000
    assert "h1" in tracker.get_active_libraries("agent-1")


def test_active_reobservation_leaves_tracker_removal(catalog_conn: Any) -> None:
    tracker = LibraryTemporalTracker()
    pairs = {"jarPath": "/lib/a-1.0.jar", "method": "static", "sha256": "h1"}
    insert_stable_event(catalog_conn, "e1", timestamp=1_000, pairs=pairs)
    _processor(tracker).process_batch(catalog_conn, 10)
    tracker.mark_removed("agent-1", "h1", 2_000)

    insert_stable_event(catalog_conn, "e2", timestamp=3_000, pairs=pairs)
    _processor(tracker).process_batch(catalog_conn, 10)

    info = tracker.get_info("agent-1", "h1")
    assert info is not None and info.removed is True


def test_other_namespaces_and_unstable_events_are_ignored(catalog_conn: Any) -> None:
    pairs = {"jarPath": "/lib/a.jar", "method": "static", "sha256": "x"}
    insert_stable_event(catalog_conn, "other", timestamp=1, pairs=pairs, namespace="org.jvmxray.events.io")
    insert_stable_event(catalog_conn, "custom", timestamp=1, pairs=pairs, namespace="custom.lib")
    catalog_conn.raw.execute("UPDATE STAGE1_EVENT SET IS_STABLE = FALSE WHERE EVENT_ID = 'custom'")

    assert _processor().process_batch(catalog_conn, 10) == 0
    assert _processor(library_namespace="custom.lib").process_batch(catalog_conn, 10) == 0


def test_keypairs_column_is_used_when_rows_are_absent(catalog_conn: Any) -> None:
    insert_stable_event(
        catalog_conn,
        "e1",
        timestamp=1,
        pairs={"jarPath": "/lib/netty-all-4.1.jar", "method": "static", "sha256": "n1"},
        store_pairs=False,
    )

    assert _processor().process_batch(catalog_conn, 10) == 1
    library = fetch_library(catalog_conn, "n1")
    assert library is not None
    assert library["library_name"] == "netty-all"


def test_failure_is_isolated_to_one_event(catalog_conn: Any, monkeypatch: Any) -> None:
    insert_stable_event(catalog_conn, "bad", timestamp=1, pairs={"jarPath": "/a.jar", "method": "m", "sha256": "bad"})
    insert_stable_event(catalog_conn, "good", timestamp=2, pairs={"jarPath": "/b.jar", "method": "m", "sha256": "good"})

    original = parsed_to_catalog.upsert_library

    def _fail_for_bad(conn: Any, obs: Any) -> None:
        if obs.library_id == "bad":
            raise RuntimeError("disk full")
        original(conn, obs)

    monkeypatch.setattr(parsed_to_catalog, "upsert_library", _fail_for_bad)

    assert _processor().process_batch(catalog_conn, 10) == 1
    assert scalar(catalog_conn, "SELECT EVENT_ID FROM STAGE1_EVENT") == "bad"
    assert fetch_library(catalog_conn, "good") is not None


def test_raw_events_flow_into_catalog(catalog_conn: Any) -> None:
    insert_raw_event(
        catalog_conn,
        "r1",
        timestamp=10,
        keypairs={"jarPath": "/lib/jackson-databind-2.13.0.jar", "method": "URLClassLoader", "sha256": "j1"},
    )
    stage0 = RawToParsedProcessor()
    stage0.initialize(PipelineConfig())

    assert stage0.process_batch(catalog_conn, 10) == 1
    assert _processor().process_batch(catalog_conn, 10) == 1
    assert scalar(catalog_conn, "SELECT LIBRARY_NAME FROM STAGE2_LIBRARY") == "jackson-databind"
