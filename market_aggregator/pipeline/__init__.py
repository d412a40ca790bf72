"""Aggregation pipeline: run configuration, status and orchestration"""

from .config import PipelineConfig, TEST_MODE_PRESETS, resolve_config
from .status import PipelinePhase, PipelineProgress, PipelineStatus
from .orchestrator import AggregationPipeline

__all__ = [
    "PipelineConfig",
    "TEST_MODE_PRESETS",
    "resolve_config",
    "PipelinePhase",
    "PipelineProgress",
    "PipelineStatus",
    "AggregationPipeline",
]
