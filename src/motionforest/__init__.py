"""motionforest: random-forest activity-quality classification for wearable motion-sensor tables."""

from loguru import logger

from motionforest.exceptions import DataLoadError, MotionForestError, SchemaMismatchError, TrainingError
from motionforest.logging import PACKAGE_NAME, enable_logging
from motionforest.pipeline import run_pipeline
from motionforest.report import render_report
from motionforest.settings import PipelineSettings

logger.disable(PACKAGE_NAME)  # noqa: RUF067 - Disable logging for the motionforest module by default

__all__ = [
    "DataLoadError",
    "MotionForestError",
    "PipelineSettings",
    "SchemaMismatchError",
    "TrainingError",
    "enable_logging",
    "render_report",
    "run_pipeline",
]
