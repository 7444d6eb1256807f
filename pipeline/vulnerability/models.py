"""Value types exchanged with vulnerability engines and the pattern matcher."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_VERSION_SUFFIX_RE = re.compile(r"-(\d+\..*)$")


@dataclass(frozen=True)
class LibraryMetadata:
    """Coordinates and manifest attributes describing one cataloged library."""

    group_id: str | None = None
    artifact_id: str | None = None
    version: str | None = None
    impl_title: str | None = None
    impl_vendor: str | None = None
    package_names: tuple[str, ...] = ()

    @classmethod
    def from_catalog(cls, library_name: str | None, jar_path: str | None) -> LibraryMetadata:
        """Build a minimal descriptor from the display name and artifact path.

        The artifact is never opened, so manifest attributes stay empty; the
        version is the trailing ``-<digit>.<anything>`` part of the file
        name, when present.
        """
        version = version_from_path(jar_path)
        name = str(library_name or "").strip() or None
        return cls(artifact_id=name, version=version)

    def package_names_text(self) -> str | None:
        return ",".join(self.package_names) if self.package_names else None


@dataclass(frozen=True)
class CveInfo:
    """One vulnerability reported against a library."""

    cve_id: str
    name: str | None = None
    severity: str | None = None
    cvss_score: float | None = None
    description: str | None = None
    cwe_ids: tuple[str, ...] = field(default_factory=tuple)
    source: str = "engine"
    # Glob patterns and fixed versions, stored on first insert only.
    affected_libraries: tuple[str, ...] = field(default_factory=tuple)
    fixed_versions: tuple[str, ...] = field(default_factory=tuple)


def file_name(jar_path: str | None) -> str:
    """Return the last path segment, accepting both separator styles."""
    text = str(jar_path or "").strip()
    return re.split(r"[/\\]", text)[-1] if text else ""


def version_from_path(jar_path: str | None) -> str | None:
    """Extract ``2.14.1`` from ``/opt/lib/log4j-core-2.14.1.jar``."""
    name = file_name(jar_path)
    if name.lower().endswith(".jar"):
        name = name[: -len(".jar")]
    match = _VERSION_SUFFIX_RE.search(name)
    return match.group(1) if match else None
