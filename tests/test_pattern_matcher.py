"""Tests for glob-based CVE correlation over stored CVE records."""

from __future__ import annotations

from typing import Any

import pytest

from pipeline.vulnerability.pattern_matcher import PatternMatcher, compile_glob, glob_to_regex
from tests._catalog import insert_cve


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_glob_to_regex_escapes_metacharacters() -> None:
    assert glob_to_regex("log4j*") == "log4j.*"
    assert glob_to_regex("a?c") == "a.c"
    assert glob_to_regex("spring.core+") == r"spring\.core\+"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("log4j-core", True),
        ("/opt/lib/log4j-core-2.14.jar", True),
        ("c:\\app\\lib\\log4j-api.jar", True),
        ("LOG4J", True),
        ("mylog4jwrapper", False),
        ("/opt/lib/mylog4j.jar", False),
    ],
)
def test_glob_is_anchored_at_name_or_segment_start(text: str, expected: bool) -> None:
    assert bool(compile_glob("log4j*").search(text.lower())) is expected


def test_question_mark_matches_single_character() -> None:
    pattern = compile_glob("commons-text-1.?")
    assert pattern.search("commons-text-1.9")
    assert not pattern.search("commons-text-1")


def test_find_matching_cves_by_name_and_path(catalog_conn: Any) -> None:
    insert_cve(catalog_conn, "CVE-2021-44228", severity="CRITICAL", score=10.0, patterns=["log4j-core*"])
    insert_cve(catalog_conn, "CVE-2021-45046", severity="HIGH", score=9.0, patterns=["log4j*"])
    insert_cve(catalog_conn, "CVE-2022-0001", severity="LOW", score=3.0, patterns=["log4j*"])
    insert_cve(catalog_conn, "CVE-2022-22965", severity="CRITICAL", score=9.8, patterns=["spring-beans*"])

    matcher = PatternMatcher()
    by_name = matcher.find_matching_cves(catalog_conn, "log4j-core", None, "URLClassLoader")
    by_path = matcher.find_matching_cves(catalog_conn, None, "/opt/lib/log4j-api-2.14.jar")

    assert [c.cve_id for c in by_name] == ["CVE-2021-44228", "CVE-2021-45046"]
    assert [c.cve_id for c in by_path] == ["CVE-2021-45046"]
    assert by_name[0].severity == "CRITICAL"
    assert by_name[0].cvss_score == 10.0
    assert by_name[0].source == "pattern"
    assert matcher.find_matching_cves(catalog_conn, "mylog4jwrapper", "/opt/mylog4jwrapper.jar") == []


def test_invalid_pattern_json_is_ignored(catalog_conn: Any, caplog: Any) -> None:
    caplog.set_level("WARNING")
    insert_cve(catalog_conn, "CVE-BROKEN", severity="HIGH", score=7.0, patterns="not-json")
    insert_cve(catalog_conn, "CVE-OK", severity="HIGH", score=7.0, patterns=["guava*"])

    matches = PatternMatcher().find_matching_cves(catalog_conn, "guava", "/lib/guava-31.0.jar")

    assert [c.cve_id for c in matches] == ["CVE-OK"]
    assert any("cve_patterns_invalid cve_id=CVE-BROKEN" in r.message for r in caplog.records)


def test_pattern_cache_expires_after_ttl(catalog_conn: Any) -> None:
    insert_cve(catalog_conn, "CVE-1", severity="HIGH", score=7.0, patterns=["jackson*"])
    clock = _Clock()
    matcher = PatternMatcher(ttl_seconds=3600, clock=clock)

    assert matcher.find_matching_cves(catalog_conn, "jackson-databind", None)
    assert matcher.cached_cve_count == 1

    # Stored patterns change; the cached compilation is still used until the TTL elapses.
    with catalog_conn.cursor() as cur:
        cur.execute("UPDATE STAGE2_LIBRARY_CVE SET AFFECTED_LIBRARIES = %s WHERE CVE_ID = %s", ('["gson*"]', "CVE-1"))
    catalog_conn.commit()

    clock.now = 3599.0
    assert matcher.find_matching_cves(catalog_conn, "jackson-databind", None)

    clock.now = 3600.0
    assert matcher.find_matching_cves(catalog_conn, "jackson-databind", None) == []
    assert matcher.find_matching_cves(catalog_conn, "gson", None)


def test_counts_by_severity_includes_zero_buckets(catalog_conn: Any) -> None:
    insert_cve(catalog_conn, "CVE-A", severity="CRITICAL", score=9.9, patterns=[])
    insert_cve(catalog_conn, "CVE-B", severity="critical", score=9.1, patterns=[])
    insert_cve(catalog_conn, "CVE-C", severity="LOW", score=2.0, patterns=[])

    counts = PatternMatcher.cve_counts_by_severity(catalog_conn)

    assert counts == {"CRITICAL": 2, "HIGH": 0, "MEDIUM": 0, "LOW": 1}
