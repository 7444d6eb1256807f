"""Registry and discovery for stage processor implementations."""

from __future__ import annotations

import importlib
import pkgutil
from collections.abc import Callable
from dataclasses import dataclass, field

from contracts.interfaces import StageProcessor, VulnerabilityMatcher
from infra.config import PipelineConfig
from pipeline.tracking.temporal_tracker import LibraryTemporalTracker
from pipeline.vulnerability.engines import DisabledEngine
from pipeline.vulnerability.pattern_matcher import PatternMatcher

# Run order within one scheduler cycle.
STAGE_ORDER: tuple[str, ...] = ("raw_to_parsed", "parsed_to_catalog", "catalog_enrichment")


@dataclass
class StageDependencies:
    """Collaborators shared by the stages of one worker."""

    tracker: LibraryTemporalTracker = field(default_factory=LibraryTemporalTracker)
    engine: VulnerabilityMatcher = field(default_factory=DisabledEngine)
    pattern_matcher: PatternMatcher | None = field(default_factory=PatternMatcher)


StageFactory = Callable[[StageDependencies], StageProcessor]

_STAGE_REGISTRY: dict[str, StageFactory] = {}


def register_stage(name: str) -> Callable[[StageFactory], StageFactory]:
    """Register a stage factory under ``name``."""

    normalized = str(name or "").strip().lower()
    if not normalized:
        raise ValueError("stage name must be non-empty")

    def _decorator(factory: StageFactory) -> StageFactory:
        if normalized in _STAGE_REGISTRY:
            raise KeyError(f"Stage already registered for '{normalized}'")
        _STAGE_REGISTRY[normalized] = factory
        return factory

    return _decorator


def discover(package_name: str = "pipeline.stages") -> None:
    """Import every module of ``package_name`` so registrations run."""
    package = importlib.import_module(package_name)
    package_path = getattr(package, "__path__", None)
    if package_path is None:
        return
    for module_info in pkgutil.iter_modules(package_path, package.__name__ + "."):
        importlib.import_module(module_info.name)


def list_stages() -> list[str]:
    return sorted(_STAGE_REGISTRY)


def create_stage(name: str, deps: StageDependencies) -> StageProcessor:
    factory = _STAGE_REGISTRY.get(str(name or "").strip().lower())
    if factory is None:
        raise KeyError(f"Unknown stage: {name!r}")
    return factory(deps)


def build_pipeline(
    config: PipelineConfig,
    deps: StageDependencies,
    names: tuple[str, ...] = STAGE_ORDER,
) -> list[StageProcessor]:
    """Create and initialize the stages in ``names`` order."""
    discover()
    stages: list[StageProcessor] = []
    for name in names:
        stage = create_stage(name, deps)
        stage.initialize(config)
        stages.append(stage)
    return stages
