"""Decode event key/value payloads into a flat ``dict[str, str]``.

Sensors have written three encodings over time:

1. JSON objects, e.g. ``{"jarPath": "/opt/app/lib/a.jar", "sha256": "..."}``
2. JSON objects whose ``message`` value embeds one pair, e.g.
   ``{"message": "Library loaded: jarPath=/opt/a.jar"}``
3. The legacy delimited form ``jarPath=/opt/a.jar, method=static``

``parse_keypairs`` never raises; undecodable input yields ``{}``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_KEY = "message"
LEGACY_PAIR_SEPARATOR = ", "

_UNESCAPED_EQUALS_RE = re.compile(r"(?<!\\)=")
_WHITESPACE_RE = re.compile(r"\s")


def _unescape(text: str) -> str:
    return text.replace("\\=", "=").replace("\\, ", ", ")


def extract_message_pair(message: str) -> tuple[str, str] | None:
    """Pull one ``key=value`` pair out of a free-text log message.

    Everything up to and including the first ``": "`` is treated as a prefix
    and dropped. Returns None when no well-formed pair is present.
    """
    text = str(message or "")
    _, sep, rest = text.partition(": ")
    if sep:
        text = rest

    parts = _UNESCAPED_EQUALS_RE.split(text, maxsplit=1)
    if len(parts) != 2:
        return None
    key = _unescape(parts[0].strip())
    value = _unescape(parts[1].strip())
    if not key or not value or _WHITESPACE_RE.search(key):
        return None
    return key, value


def _stringify(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)


def _parse_json_object(text: str) -> dict[str, str] | None:
    """Return the decoded object, or None when *text* is not a JSON object."""
    try:
        decoded = json.loads(text)
    except ValueError as exc:
        logger.warning("keypairs_json_invalid error=%s", exc)
        return None
    if not isinstance(decoded, dict):
        logger.warning("keypairs_json_not_object type=%s", type(decoded).__name__)
        return None

    out: dict[str, str] = {}
    for raw_key, raw_value in decoded.items():
        if raw_value is None:
            continue
        key = str(raw_key)
        value = _stringify(raw_value)
        if key == MESSAGE_KEY:
            pair = extract_message_pair(value)
            if pair is not None:
                out[pair[0]] = pair[1]
                continue
        out[key] = value
    return out


def parse_legacy_keypairs(text: str) -> dict[str, str]:
    """Parse the ``k1=v1, k2=v2`` form; malformed pairs are skipped."""
    out: dict[str, str] = {}
    for chunk in str(text or "").split(LEGACY_PAIR_SEPARATOR):
        key, sep, value = chunk.partition("=")
        key = key.strip()
        value = value.strip()
        if not sep or not key or not value:
            continue
        out[key] = value
    return out


def parse_keypairs(raw: str | bytes | None) -> dict[str, str]:
    """Decode a KEYPAIRS payload in any supported encoding."""
    if raw is None:
        return {}
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.warning("keypairs_undecodable error=%s", exc)
            return {}

    text = str(raw).strip()
    if not text:
        return {}

    if text.startswith("{") and text.endswith("}"):
        parsed = _parse_json_object(text)
        if parsed is not None:
            return parsed

    pairs = parse_legacy_keypairs(text)
    if not pairs:
        logger.warning("keypairs_unparsed length=%d", len(text))
    return pairs
