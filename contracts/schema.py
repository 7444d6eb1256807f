"""Shared constants used by the store and the stages.

Table and column names live in the SQL itself (``migrations/`` and
``apps/backend/pipeline_store.py``); identifiers are unquoted, so Postgres
folds them to lower case and DuckDB keeps them as written.
"""

from __future__ import annotations

# Severities considered by the local pattern matcher, most severe first.
MATCHED_SEVERITIES: tuple[str, ...] = ("CRITICAL", "HIGH", "MEDIUM")

# GROUP_ID value written when enrichment ran but found no group id.
ENRICHED_SENTINEL = ""

LINK_SOURCE_ENGINE = "engine"
LINK_SOURCE_PATTERN = "pattern"

# Event key names emitted by the library-load sensor.
KEY_JAR_PATH = "jarPath"
KEY_METHOD = "method"
KEY_SHA256 = "sha256"
