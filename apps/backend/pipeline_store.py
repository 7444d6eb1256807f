"""SQL for the pipeline stages.

Every function takes an open connection and leaves transaction control to
the caller, so a stage decides whether a batch or a single record is the
unit of commit. Statements use ``%s`` placeholders and portable
``ON CONFLICT`` clauses; ``TIMESTAMP`` is always referenced through a table
alias because it is also a type keyword.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from apps.backend.db import (
    execute_conn,
    execute_many_conn,
    fetch_all_conn,
    fetch_all_dict_conn,
    fetch_one_conn,
    to_json,
)
from contracts.schema import ENRICHED_SENTINEL, MATCHED_SEVERITIES
from pipeline.vulnerability.models import CveInfo, LibraryMetadata

logger = logging.getLogger(__name__)

_EVENT_SELECT = """
SELECT e.EVENT_ID, e.CONFIG_FILE, e.TIMESTAMP, e.THREAD_ID, e.PRIORITY,
       e.NAMESPACE, e.AID, e.CID, e.KEYPAIRS
"""


@dataclass(frozen=True)
class LibraryObservation:
    """One library-load event reduced to the fields the catalog stores."""

    library_id: str
    event_id: str
    aid: str | None
    cid: str | None
    jar_path: str
    library_name: str
    sha256: str
    method: str
    observed_at: int


# ---------------------------
# Stage0 -> Stage1
# ---------------------------

def fetch_raw_events(conn: Any, limit: int) -> list[dict[str, Any]]:
    """Oldest raw events first, ties broken by event id."""
    sql = _EVENT_SELECT + """
    FROM STAGE0_EVENT e
    ORDER BY e.TIMESTAMP ASC, e.EVENT_ID ASC
    LIMIT %s
    """
    return fetch_all_dict_conn(conn, sql, (int(limit),))


def insert_parsed_event(conn: Any, event: Mapping[str, Any]) -> None:
    """Insert a Stage1 copy of *event* with ``IS_STABLE = FALSE``."""
    execute_conn(
        conn,
        """
        INSERT INTO STAGE1_EVENT
          (EVENT_ID, CONFIG_FILE, TIMESTAMP, THREAD_ID, PRIORITY, NAMESPACE, AID, CID, KEYPAIRS, IS_STABLE)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, FALSE)
        """,
        (
            event.get("event_id"),
            event.get("config_file"),
            int(event.get("timestamp") or 0),
            event.get("thread_id"),
            event.get("priority"),
            event.get("namespace"),
            event.get("aid"),
            event.get("cid"),
            event.get("keypairs"),
        ),
    )


def insert_event_keypairs(conn: Any, event_id: str, pairs: Mapping[str, str]) -> None:
    execute_many_conn(
        conn,
        "INSERT INTO STAGE1_EVENT_KEYPAIR (EVENT_ID, KEY, VALUE) VALUES (%s, %s, %s)",
        [(event_id, key, value) for key, value in pairs.items()],
    )


def mark_event_stable(conn: Any, event_id: str) -> None:
    execute_conn(conn, "UPDATE STAGE1_EVENT SET IS_STABLE = TRUE WHERE EVENT_ID = %s", (event_id,))


def delete_raw_event(conn: Any, event_id: str) -> None:
    execute_conn(conn, "DELETE FROM STAGE0_EVENT WHERE EVENT_ID = %s", (event_id,))


# ---------------------------
# Stage1 -> Stage2
# ---------------------------

def fetch_stable_events(
    conn: Any,
    namespace: str,
    limit: int,
    *,
    after: tuple[int, str] | None = None,
) -> list[dict[str, Any]]:
    """Stable Stage1 events in *namespace*, oldest first.

    ``after`` is a ``(timestamp, event_id)`` keyset cursor: only events
    ordered strictly after it are returned.
    """
    params: list[Any] = [namespace]
    cursor_clause = ""
    if after is not None:
        ts, event_id = after
        cursor_clause = "AND (e.TIMESTAMP > %s OR (e.TIMESTAMP = %s AND e.EVENT_ID > %s))"
        params.extend([int(ts), int(ts), str(event_id)])
    params.append(int(limit))
    sql = _EVENT_SELECT + f"""
    FROM STAGE1_EVENT e
    WHERE e.IS_STABLE = TRUE
      AND e.NAMESPACE = %s
      {cursor_clause}
    ORDER BY e.TIMESTAMP ASC, e.EVENT_ID ASC
    LIMIT %s
    """
    return fetch_all_dict_conn(conn, sql, tuple(params))


def fetch_event_keypairs(conn: Any, event_id: str) -> dict[str, str]:
    rows = fetch_all_conn(
        conn,
        "SELECT k.KEY, k.VALUE FROM STAGE1_EVENT_KEYPAIR k WHERE k.EVENT_ID = %s",
        (event_id,),
    )
    return {str(key): str(value) for key, value in rows if key is not None and value is not None}


def delete_parsed_event(conn: Any, event_id: str) -> None:
    """Delete a Stage1 event, key/value rows first."""
    execute_conn(conn, "DELETE FROM STAGE1_EVENT_KEYPAIR WHERE EVENT_ID = %s", (event_id,))
    execute_conn(conn, "DELETE FROM STAGE1_EVENT WHERE EVENT_ID = %s", (event_id,))


def upsert_library(conn: Any, obs: LibraryObservation) -> bool:
    """Insert a library or refresh the seen window and ``IS_ACTIVE`` of the existing row.

    ``FIRST_SEEN`` only moves earlier and ``LAST_SEEN`` only moves later, so
    the stored window does not depend on the order observations arrive in.
    Returns True when an existing row was inactive before this call.
    """
    previous = fetch_one_conn(conn, "SELECT IS_ACTIVE FROM STAGE2_LIBRARY WHERE LIBRARY_ID = %s", (obs.library_id,))
    execute_conn(
        conn,
        """
        INSERT INTO STAGE2_LIBRARY
          (LIBRARY_ID, EVENT_ID, AID, CID, JARPATH, LIBRARY_NAME, SHA256_HASH, METHOD,
           FIRST_SEEN, LAST_SEEN, IS_ACTIVE)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
        ON CONFLICT (LIBRARY_ID) DO NOTHING
        """,
        (
            obs.library_id,
            obs.event_id,
            obs.aid,
            obs.cid,
            obs.jar_path,
            obs.library_name,
            obs.sha256,
            obs.method,
            obs.observed_at,
            obs.observed_at,
        ),
    )
    execute_conn(
        conn,
        """
        UPDATE STAGE2_LIBRARY
        SET FIRST_SEEN = LEAST(FIRST_SEEN, %s), LAST_SEEN = GREATEST(LAST_SEEN, %s), IS_ACTIVE = TRUE
        WHERE LIBRARY_ID = %s
        """,
        (obs.observed_at, obs.observed_at, obs.library_id),
    )
    return previous is not None and not bool(previous[0])


def fetch_library(conn: Any, library_id: str) -> dict[str, Any] | None:
    rows = fetch_all_dict_conn(conn, "SELECT * FROM STAGE2_LIBRARY WHERE LIBRARY_ID = %s", (library_id,))
    return rows[0] if rows else None


# ---------------------------
# Stage2 enrichment
# ---------------------------

def fetch_unenriched_libraries(conn: Any, limit: int) -> list[dict[str, Any]]:
    """Libraries not yet enriched (``GROUP_ID IS NULL``), oldest first."""
    return fetch_all_dict_conn(
        conn,
        """
        SELECT LIBRARY_ID, EVENT_ID, AID, CID, JARPATH, LIBRARY_NAME, SHA256_HASH, METHOD,
               FIRST_SEEN, LAST_SEEN
        FROM STAGE2_LIBRARY
        WHERE GROUP_ID IS NULL
        ORDER BY FIRST_SEEN ASC, LIBRARY_ID ASC
        LIMIT %s
        """,
        (int(limit),),
    )


def _json_list(values: Iterable[str]) -> str | None:
    items = [str(v) for v in values if str(v or "").strip()]
    return to_json(items) if items else None


def upsert_cve(conn: Any, cve: CveInfo) -> None:
    """Insert a CVE; on conflict refresh only severity, score and description."""
    execute_conn(
        conn,
        """
        INSERT INTO STAGE2_LIBRARY_CVE
          (CVE_ID, CVE_NAME, CVSS_SEVERITY, CVSS_V3, DESCRIPTION, AFFECTED_LIBRARIES, FIXED_VERSIONS, CWE_IDS)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (CVE_ID) DO UPDATE SET
          CVSS_SEVERITY = EXCLUDED.CVSS_SEVERITY,
          CVSS_V3 = EXCLUDED.CVSS_V3,
          DESCRIPTION = EXCLUDED.DESCRIPTION
        """,
        (
            cve.cve_id,
            cve.name,
            str(cve.severity).upper() if cve.severity else None,
            cve.cvss_score,
            cve.description,
            _json_list(cve.affected_libraries),
            _json_list(cve.fixed_versions),
            ",".join(cve.cwe_ids) if cve.cwe_ids else None,
        ),
    )


def link_library_cve(conn: Any, library_id: str, cve_id: str, *, source: str, matched_at: int) -> None:
    execute_conn(
        conn,
        """
        INSERT INTO STAGE2_LIBRARY_VULNERABILITY (LIBRARY_ID, CVE_ID, SOURCE, MATCHED_AT)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (LIBRARY_ID, CVE_ID) DO NOTHING
        """,
        (library_id, cve_id, source, int(matched_at)),
    )


def update_library_metadata(conn: Any, library_id: str, metadata: LibraryMetadata | None) -> None:
    """Write enrichment results; GROUP_ID falls back to the enriched sentinel."""
    if metadata is None:
        metadata = LibraryMetadata()
    execute_conn(
        conn,
        """
        UPDATE STAGE2_LIBRARY SET
          GROUP_ID = %s, ARTIFACT_ID = %s, VERSION = %s,
          IMPL_TITLE = %s, IMPL_VENDOR = %s, PACKAGE_NAMES = %s
        WHERE LIBRARY_ID = %s
        """,
        (
            metadata.group_id or ENRICHED_SENTINEL,
            metadata.artifact_id,
            metadata.version,
            metadata.impl_title,
            metadata.impl_vendor,
            metadata.package_names_text(),
            library_id,
        ),
    )


def fetch_pattern_candidates(conn: Any) -> list[dict[str, Any]]:
    """CVE rows the local matcher may use, most severe first."""
    placeholders = ", ".join(["%s"] * len(MATCHED_SEVERITIES))
    sql = f"""
    SELECT CVE_ID, CVE_NAME, CVSS_SEVERITY, CVSS_V3, DESCRIPTION,
           AFFECTED_LIBRARIES, FIXED_VERSIONS, CWE_IDS
    FROM STAGE2_LIBRARY_CVE
    WHERE UPPER(CVSS_SEVERITY) IN ({placeholders})
    ORDER BY
      CASE UPPER(CVSS_SEVERITY) WHEN 'CRITICAL' THEN 0 WHEN 'HIGH' THEN 1 ELSE 2 END,
      CVSS_V3 DESC NULLS LAST,
      CVE_ID ASC
    """
    return fetch_all_dict_conn(conn, sql, MATCHED_SEVERITIES)


def cve_counts_by_severity(conn: Any) -> dict[str, int]:
    rows = fetch_all_conn(
        conn,
        """
        SELECT UPPER(COALESCE(CVSS_SEVERITY, 'UNKNOWN')) AS SEVERITY, COUNT(*)
        FROM STAGE2_LIBRARY_CVE
        GROUP BY UPPER(COALESCE(CVSS_SEVERITY, 'UNKNOWN'))
        """,
    )
    return {str(severity): int(count) for severity, count in rows}


def fetch_library_cves(conn: Any, library_id: str) -> list[str]:
    rows = fetch_all_conn(
        conn,
        "SELECT CVE_ID FROM STAGE2_LIBRARY_VULNERABILITY WHERE LIBRARY_ID = %s ORDER BY CVE_ID",
        (library_id,),
    )
    return [str(r[0]) for r in rows]


# ---------------------------
# Removal sweep and stats
# ---------------------------

def fetch_stale_libraries(conn: Any, aid: str, cutoff: int) -> list[str]:
    rows = fetch_all_conn(
        conn,
        """
        SELECT LIBRARY_ID FROM STAGE2_LIBRARY
        WHERE AID = %s AND IS_ACTIVE = TRUE AND LAST_SEEN < %s
        ORDER BY LAST_SEEN ASC, LIBRARY_ID ASC
        """,
        (aid, int(cutoff)),
    )
    return [str(r[0]) for r in rows]


def mark_library_removed(conn: Any, library_id: str, aid: str, removed_on: int) -> None:
    execute_conn(
        conn,
        "UPDATE STAGE2_LIBRARY SET REMOVED_ON = %s, IS_ACTIVE = FALSE WHERE LIBRARY_ID = %s AND AID = %s",
        (int(removed_on), library_id, aid),
    )


def stage_counts(conn: Any) -> dict[str, int]:
    """Row counts per stage table, for operators."""
    queries = {
        "stage0_events": "SELECT COUNT(*) FROM STAGE0_EVENT",
        "stage1_events_pending": "SELECT COUNT(*) FROM STAGE1_EVENT WHERE IS_STABLE = FALSE",
        "stage1_events_stable": "SELECT COUNT(*) FROM STAGE1_EVENT WHERE IS_STABLE = TRUE",
        "libraries_total": "SELECT COUNT(*) FROM STAGE2_LIBRARY",
        "libraries_active": "SELECT COUNT(*) FROM STAGE2_LIBRARY WHERE IS_ACTIVE = TRUE",
        "libraries_unenriched": "SELECT COUNT(*) FROM STAGE2_LIBRARY WHERE GROUP_ID IS NULL",
        "cves": "SELECT COUNT(*) FROM STAGE2_LIBRARY_CVE",
        "library_cve_links": "SELECT COUNT(*) FROM STAGE2_LIBRARY_VULNERABILITY",
    }
    out: dict[str, int] = {}
    for label, sql in queries.items():
        row = fetch_one_conn(conn, sql)
        out[label] = int(row[0]) if row else 0
    return out


def parse_json_list(raw: Any) -> list[str]:
    """Decode a JSON list column; raises ValueError on malformed content."""
    if raw is None or str(raw).strip() == "":
        return []
    decoded = json.loads(str(raw))
    if not isinstance(decoded, list):
        raise ValueError(f"expected JSON list, got {type(decoded).__name__}")
    return [str(item) for item in decoded if item is not None]
