"""Contracts and canonical schema.

The contracts package defines:
- shared constants (sensor key names, severities, link sources)
- Protocol definitions for stage processors, vulnerability engines and
  library observers
"""

from contracts import interfaces
from contracts import schema

__all__ = [
    "LibraryObserver",
    "StageProcessor",
    "VulnerabilityMatcher",
    "schema",
]

LibraryObserver = interfaces.LibraryObserver
StageProcessor = interfaces.StageProcessor
VulnerabilityMatcher = interfaces.VulnerabilityMatcher
