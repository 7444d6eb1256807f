"""Process-local library lifecycle tracking."""

from pipeline.tracking.temporal_tracker import LibraryStats, LibraryTemporalTracker, TemporalInfo

__all__ = ["LibraryStats", "LibraryTemporalTracker", "TemporalInfo"]
