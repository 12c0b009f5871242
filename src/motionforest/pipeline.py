"""End-to-end run: load, filter, train, and predict."""

from __future__ import annotations

import polars as pl
from loguru import logger

from motionforest.column_filter import align_feature_schemas, feature_columns
from motionforest.exceptions import DataLoadError, TrainingError
from motionforest.forest.fitting import FittedForest, predict, train_forest
from motionforest.forest.models import PipelineResult
from motionforest.loader import load_tables
from motionforest.logging import STAGE_LEVEL
from motionforest.persistence import compute_fingerprint, restore_cached_run, save_cached_run
from motionforest.settings import PipelineSettings

__all__ = ["run_pipeline"]


def run_pipeline(settings: PipelineSettings) -> PipelineResult:
    """Run the full pipeline described by `settings`.

    When `settings.cache_dir` is set and holds artifacts for the same inputs
    and training settings, loading, filtering, and training are skipped.

    Args:
        settings (PipelineSettings): Run settings.

    Returns:
        PipelineResult: Table shapes, the training report, and predictions.

    Raises:
        DataLoadError: If an input table cannot be read.
        SchemaMismatchError: If the filtered tables disagree, or the testing
            table lacks a feature column.
        TrainingError: If training fails.
    """
    fingerprint: str | None = None
    cached = None
    if settings.cache_dir is not None:
        fingerprint = _fingerprint(settings)
        cached = restore_cached_run(settings.cache_dir, fingerprint=fingerprint)

    if cached is not None:
        logger.log(STAGE_LEVEL, "Using cached tables and forest", cache_dir=str(settings.cache_dir))
        training, testing = cached.training, cached.testing
        training_shape, testing_shape = cached.training_shape, cached.testing_shape
        fitted = cached.fitted
    else:
        logger.log(STAGE_LEVEL, "Loading tables")
        raw_training, raw_testing = load_tables(settings.training_path, settings.testing_path)
        training_shape, testing_shape = raw_training.shape, raw_testing.shape

        logger.log(STAGE_LEVEL, "Filtering columns")
        training, testing = align_feature_schemas(
            raw_training,
            raw_testing,
            label_column=settings.label_column,
            id_column=settings.id_column,
        )

        logger.log(STAGE_LEVEL, "Training forest")
        fitted = _train(settings, training)

        if settings.cache_dir is not None and fingerprint is not None:
            save_cached_run(
                settings.cache_dir,
                fingerprint=fingerprint,
                training=training,
                testing=testing,
                training_shape=training_shape,
                testing_shape=testing_shape,
                fitted=fitted,
            )

    logger.log(STAGE_LEVEL, "Predicting testing rows")
    predictions = predict(fitted, testing, id_column=settings.id_column)

    logger.log(
        STAGE_LEVEL,
        "Pipeline complete",
        selected_mtry=fitted.report.selected_mtry,
        cv_accuracy=round(fitted.report.selected.accuracy, 4),
        predictions=len(predictions),
    )
    return PipelineResult(
        training_shape=training_shape,
        testing_shape=testing_shape,
        filtered_training_shape=training.shape,
        filtered_testing_shape=testing.shape,
        report=fitted.report,
        predictions=predictions,
    )


def _fingerprint(settings: PipelineSettings) -> str:
    """Fingerprint the inputs, reporting unreadable files as load errors."""
    try:
        return compute_fingerprint(settings)
    except OSError as exc:
        raise DataLoadError(f"Could not read input tables: {exc}", path=exc.filename) from exc


def _train(settings: PipelineSettings, training: pl.DataFrame) -> FittedForest:
    """Train on the filtered table, wrapping estimator failures in `TrainingError`."""
    try:
        return train_forest(
            training,
            label_column=settings.label_column,
            seed=settings.seed,
            feature_columns=feature_columns(training, exclude=[settings.label_column, settings.id_column]),
            n_trees=settings.n_trees,
            n_folds=settings.n_folds,
            mtry_grid=settings.mtry_grid,
            grid_length=settings.grid_length,
            oob_checkpoints=settings.oob_checkpoints,
            importance_repeats=settings.importance_repeats,
            n_jobs=settings.n_jobs,
        )
    except ValueError as exc:
        raise TrainingError(f"Forest training failed: {exc}") from exc
