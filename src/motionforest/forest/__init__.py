"""Random-forest sub-package: result models, preprocessing, and fitting."""

from __future__ import annotations

from motionforest.forest.fitting import (
    DEFAULT_OOB_CHECKPOINTS,
    FittedForest,
    cross_validate,
    fit_final_forest,
    oob_confusion_matrix,
    permutation_importance_cv,
    predict,
    select_mtry,
    train_forest,
)
from motionforest.forest.models import (
    ConfusionMatrix,
    FeatureImportance,
    OOBCheckpoint,
    PipelineResult,
    ResamplingResult,
    RowPrediction,
    TrainingReport,
)
from motionforest.forest.preprocessing import (
    FeatureEncoding,
    assign_folds,
    default_mtry_grid,
    encode_features,
    encode_target,
)

__all__ = [
    "DEFAULT_OOB_CHECKPOINTS",
    "ConfusionMatrix",
    "FeatureEncoding",
    "FeatureImportance",
    "FittedForest",
    "OOBCheckpoint",
    "PipelineResult",
    "ResamplingResult",
    "RowPrediction",
    "TrainingReport",
    "assign_folds",
    "cross_validate",
    "default_mtry_grid",
    "encode_features",
    "encode_target",
    "fit_final_forest",
    "oob_confusion_matrix",
    "permutation_importance_cv",
    "predict",
    "select_mtry",
    "train_forest",
]
