"""
Protocol definitions for dependency injection.

The worker and the stages depend on these narrow contracts rather than on
concrete classes, so tests can substitute small fakes:

- ``StageProcessor``: one pipeline stage moving rows between storage tiers.
- ``VulnerabilityMatcher``: an external engine mapping library metadata to
  known vulnerabilities.
- ``LibraryObserver``: receives catalog observations (the temporal tracker).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from infra.config import PipelineConfig
    from pipeline.vulnerability.models import CveInfo, LibraryMetadata


@runtime_checkable
class StageProcessor(Protocol):
    """A batch-oriented stage processor."""

    processor_name: str

    def initialize(self, config: PipelineConfig) -> None:
        """Apply configuration before the first batch."""
        ...

    def is_enabled(self) -> bool:
        """Return whether the scheduler should run this stage."""
        ...

    def process_batch(self, conn: Any, batch_size: int) -> int:
        """Process up to ``batch_size`` records and return how many moved."""
        ...


@runtime_checkable
class VulnerabilityMatcher(Protocol):
    """External vulnerability engine contract (metadata in, CVE list out)."""

    name: str

    def is_enabled(self) -> bool:
        ...

    def analyze(self, metadata: LibraryMetadata) -> list[CveInfo]:
        """Return known vulnerabilities for ``metadata``; may raise."""
        ...


@runtime_checkable
class LibraryObserver(Protocol):
    """Receives per-agent library observations."""

    def update_timestamp(self, aid: str | None, library_id: str | None, timestamp: int) -> None:
        ...

    def mark_removed(self, aid: str | None, library_id: str | None, timestamp: int) -> None:
        ...

    def reactivate(self, aid: str | None, library_id: str | None, timestamp: int) -> bool:
        """Clear a removed flag after the catalog saw the library again."""
        ...
