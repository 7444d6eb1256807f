"""Vulnerability correlation: engine registry, local pattern matcher and value types."""
