"""Unit tests for KEYPAIRS payload decoding."""

from __future__ import annotations

from typing import Any

import pytest

from pipeline.parsing.record_parser import extract_message_pair, parse_keypairs, parse_legacy_keypairs


@pytest.mark.parametrize("raw", [None, "", "   ", b""])
def test_blank_input_yields_empty_map(raw: Any) -> None:
    assert parse_keypairs(raw) == {}


def test_json_object_is_flattened_to_strings() -> None:
    raw = '{"jarPath": "/opt/lib/a.jar", "size": 42, "signed": true, "missing": null}'
    assert parse_keypairs(raw) == {"jarPath": "/opt/lib/a.jar", "size": "42", "signed": "true"}


def test_message_embedded_pair_replaces_message() -> None:
    raw = '{"user":"alice","message":"Environment Setting: PATH=/usr/bin"}'
    assert parse_keypairs(raw) == {"user": "alice", "PATH": "/usr/bin"}


def test_message_without_pair_is_kept() -> None:
    raw = '{"message": "library loaded without details"}'
    assert parse_keypairs(raw) == {"message": "library loaded without details"}


def test_message_with_whitespace_in_key_is_kept() -> None:
    raw = '{"message": "Loaded: some key=value"}'
    assert parse_keypairs(raw) == {"message": "Loaded: some key=value"}


def test_message_escapes_are_removed() -> None:
    assert extract_message_pair(r"Setting: opts=a\=b\, c") == ("opts", "a=b, c")


def test_message_split_skips_escaped_equals() -> None:
    assert extract_message_pair(r"k\=x=v") == ("k=x", "v")


def test_message_only_first_prefix_is_dropped() -> None:
    assert extract_message_pair("Env: Setting: A=1") is None
    assert extract_message_pair("Env: A=b: c") == ("A", "b: c")


def test_message_with_empty_value_is_rejected() -> None:
    assert extract_message_pair("Setting: KEY=  ") is None


def test_legacy_delimited_payload() -> None:
    raw = "jarPath=/opt/lib/a.jar, method=URLClassLoader, sha256=abc=def"
    assert parse_keypairs(raw) == {
        "jarPath": "/opt/lib/a.jar",
        "method": "URLClassLoader",
        "sha256": "abc=def",
    }


def test_legacy_skips_malformed_pairs() -> None:
    assert parse_legacy_keypairs("=x, novalue=, plain, ok=1") == {"ok": "1"}


def test_broken_json_falls_back_to_legacy(caplog: Any) -> None:
    caplog.set_level("WARNING")
    assert parse_keypairs("{jarPath=/a.jar, method=static}") == {"{jarPath": "/a.jar", "method": "static}"}
    assert any("keypairs_json_invalid" in r.message for r in caplog.records)


def test_unparseable_input_returns_empty_and_warns(caplog: Any) -> None:
    caplog.set_level("WARNING")
    assert parse_keypairs("just some text") == {}
    assert any("keypairs_unparsed" in r.message for r in caplog.records)


def test_bytes_payload_is_decoded() -> None:
    assert parse_keypairs(b'{"a": "b"}') == {"a": "b"}
