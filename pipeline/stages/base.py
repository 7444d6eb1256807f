"""Shared plumbing for stage processors."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from apps.backend.db_metrics import measure_stage
from infra.config import PipelineConfig

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class StageProcessingError(RuntimeError):
    """A stage batch failed and was rolled back."""

    def __init__(self, stage: str, message: str, *, event_id: str | None = None) -> None:
        super().__init__(f"{stage}: {message}" + (f" (event_id={event_id})" if event_id else ""))
        self.stage = stage
        self.event_id = event_id


class BaseStageProcessor(ABC):
    """Template for ``contracts.interfaces.StageProcessor`` implementations.

    Subclasses set ``processor_name`` and ``enabled_setting`` (the
    ``PipelineConfig`` flag that switches them on) and implement
    ``_process``.
    """

    processor_name: str = ""
    enabled_setting: str = ""

    def __init__(self) -> None:
        self._config = PipelineConfig()
        self._enabled = True
        self._initialized = False

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def initialize(self, config: PipelineConfig) -> None:
        self._config = config
        self._enabled = bool(getattr(config, self.enabled_setting, True)) if self.enabled_setting else True
        self._on_initialize(config)
        self._initialized = True
        logger.info("stage_initialized stage=%s enabled=%s", self.processor_name, self._enabled)

    def _on_initialize(self, config: PipelineConfig) -> None:
        """Hook for subclasses; called from ``initialize``."""
        _ = config

    def is_enabled(self) -> bool:
        return self._enabled

    def process_batch(self, conn: Any, batch_size: int) -> int:
        """Validate arguments, time the batch and delegate to ``_process``."""
        if int(batch_size) < 1:
            raise ValueError("batch_size must be >= 1")
        if not self._initialized:
            self.initialize(self._config)
        with measure_stage(self.processor_name):
            processed = self._process(conn, int(batch_size))
        if processed:
            logger.info("stage_batch stage=%s processed=%d", self.processor_name, processed)
        return processed

    @abstractmethod
    def _process(self, conn: Any, batch_size: int) -> int:
        raise NotImplementedError
