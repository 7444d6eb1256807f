"""Payload decoding for raw telemetry events."""

from pipeline.parsing.record_parser import parse_keypairs

__all__ = ["parse_keypairs"]
