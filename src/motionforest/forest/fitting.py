"""Random-forest fitting: cross-validated mtry selection, final fit, OOB curve, importance, and prediction."""

from __future__ import annotations

import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

import numpy as np
import polars as pl
from loguru import logger
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import accuracy_score, cohen_kappa_score, confusion_matrix

from motionforest.exceptions import TrainingError
from motionforest.forest.models import (
    ConfusionMatrix,
    FeatureImportance,
    OOBCheckpoint,
    ResamplingResult,
    RowPrediction,
    TrainingReport,
)
from motionforest.forest.preprocessing import (
    FeatureEncoding,
    assign_folds,
    default_mtry_grid,
    derive_seed,
    encode_features,
    encode_target,
    validate_mtry_grid,
    validate_target,
)

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

# Stream keys passed to `derive_seed`; key 0 is the fold assignment stream.
_CV_STREAM: Final[int] = 1
_FINAL_STREAM: Final[int] = 2
_IMPORTANCE_STREAM: Final[int] = 3

DEFAULT_OOB_CHECKPOINTS: Final[tuple[int, ...]] = (1, 5, 10, 25, 50, 75, 100)

_NO_OOB_WARNING: Final[str] = "Some inputs do not have OOB scores"


@dataclass(frozen=True)
class FittedForest:
    """A trained forest together with everything needed to apply it.

    Attributes:
        forest (RandomForestClassifier): The final forest, fit on all training rows.
        encoding (FeatureEncoding): Encoding from source columns to predictors.
        classes (list[str]): Class labels; `classes[code]` is the label of code `code`.
        report (TrainingReport): Cross-validation, OOB, and importance results.
    """

    forest: RandomForestClassifier
    encoding: FeatureEncoding
    classes: list[str]
    report: TrainingReport


# ---------------------------------------------------------------------------
# Public interface -- Forest construction
# ---------------------------------------------------------------------------


def build_forest(
    *,
    mtry: int,
    n_trees: int,
    random_state: int,
    n_jobs: int | None = None,
    oob_score: bool = False,
    warm_start: bool = False,
) -> RandomForestClassifier:
    """Create an unfitted forest of fully grown, bootstrapped classification trees.

    Args:
        mtry (int): Features considered at each split.
        n_trees (int): Number of trees.
        random_state (int): Seed for bootstrap samples and split candidates.
        n_jobs (int | None): Parallel workers for tree building.
        oob_score (bool): Whether to compute out-of-bag predictions on fit.
        warm_start (bool): Whether refitting adds trees instead of starting over.

    Returns:
        RandomForestClassifier: The configured estimator.
    """
    return RandomForestClassifier(
        n_estimators=n_trees,
        max_features=mtry,
        bootstrap=True,
        oob_score=oob_score,
        warm_start=warm_start,
        random_state=random_state,
        n_jobs=n_jobs,
    )


# ---------------------------------------------------------------------------
# Public interface -- Cross-validation
# ---------------------------------------------------------------------------


def cross_validate(
    feature_matrix: np.ndarray,
    target_codes: np.ndarray,
    *,
    classes: list[str],
    mtry_grid: Sequence[int],
    n_trees: int,
    folds: np.ndarray,
    seed: int,
    n_jobs: int | None = None,
) -> list[ResamplingResult]:
    """Estimate held-out performance of each `mtry` candidate by k-fold cross-validation.

    For every candidate and fold, a forest is fit on the rows outside the fold
    and scored on the rows inside it. The per-fold confusion matrices are
    summed into one held-out confusion matrix per candidate.

    Args:
        feature_matrix (np.ndarray): Predictor matrix, shape `(n_rows, n_features)`.
        target_codes (np.ndarray): Integer class code per row.
        classes (list[str]): Class labels indexed by code.
        mtry_grid (Sequence[int]): Candidate `mtry` values.
        n_trees (int): Trees per fold forest.
        folds (np.ndarray): Fold id per row, from `assign_folds`.
        seed (int): Run seed.
        n_jobs (int | None): Parallel workers for tree building.

    Returns:
        list[ResamplingResult]: One result per candidate, in grid order.
    """
    n_folds = int(folds.max()) + 1
    results: list[ResamplingResult] = []
    for mtry in mtry_grid:
        fold_accuracies: list[float] = []
        fold_kappas: list[float] = []
        fold_confusions: list[ConfusionMatrix] = []
        for fold_id in range(n_folds):
            held_out = folds == fold_id
            forest = _fit_fold_forest(
                feature_matrix,
                target_codes,
                held_out=held_out,
                mtry=mtry,
                n_trees=n_trees,
                seed=seed,
                fold_id=fold_id,
                n_jobs=n_jobs,
            )
            true_codes = target_codes[held_out]
            predicted_codes = forest.predict(feature_matrix[held_out])
            fold_accuracies.append(float(accuracy_score(true_codes, predicted_codes)))
            fold_kappas.append(
                float(cohen_kappa_score(true_codes, predicted_codes, labels=list(range(len(classes)))))
            )
            fold_confusions.append(_confusion(true_codes, predicted_codes, classes))
            logger.debug("Fold scored", mtry=mtry, fold=fold_id, accuracy=round(fold_accuracies[-1], 4))

        confusion = fold_confusions[0]
        for fold_confusion in fold_confusions[1:]:
            confusion = confusion + fold_confusion
        result = ResamplingResult(
            mtry=mtry,
            fold_accuracies=fold_accuracies,
            fold_kappas=fold_kappas,
            confusion=confusion,
        )
        logger.info(
            "Candidate cross-validated",
            mtry=mtry,
            accuracy=round(result.accuracy, 4),
            kappa=round(result.kappa, 4),
        )
        results.append(result)
    return results


def select_mtry(results: Sequence[ResamplingResult]) -> int:
    """Return the candidate with the lowest mean CV error; ties go to the smaller `mtry`.

    Args:
        results (Sequence[ResamplingResult]): Cross-validation results.

    Returns:
        int: The selected `mtry`.

    Raises:
        TrainingError: If `results` is empty.
    """
    if not results:
        raise TrainingError("No cross-validation results to select from.", parameter="mtry")
    return min(results, key=lambda result: (result.error, result.mtry)).mtry


# ---------------------------------------------------------------------------
# Public interface -- Final fit and out-of-bag error
# ---------------------------------------------------------------------------


def oob_schedule(n_trees: int, checkpoints: Sequence[int] = DEFAULT_OOB_CHECKPOINTS) -> list[int]:
    """Return the tree counts at which OOB error is recorded, always ending at `n_trees`.

    Examples:
        >>> oob_schedule(100)
        [1, 5, 10, 25, 50, 75, 100]
        >>> oob_schedule(30, [1, 10, 50])
        [1, 10, 30]
    """
    return sorted({checkpoint for checkpoint in checkpoints if 1 <= checkpoint < n_trees} | {n_trees})


def fit_final_forest(
    feature_matrix: np.ndarray,
    target_codes: np.ndarray,
    *,
    classes: list[str],
    mtry: int,
    n_trees: int,
    seed: int,
    checkpoints: Sequence[int] = DEFAULT_OOB_CHECKPOINTS,
    n_jobs: int | None = None,
) -> tuple[RandomForestClassifier, list[OOBCheckpoint]]:
    """Fit the final forest on all rows, recording OOB error as it grows.

    The forest is grown with warm start through each checkpoint, so the
    finished forest is the same as one fit directly with `n_trees` trees.

    Args:
        feature_matrix (np.ndarray): Predictor matrix, shape `(n_rows, n_features)`.
        target_codes (np.ndarray): Integer class code per row.
        classes (list[str]): Class labels indexed by code.
        mtry (int): Features considered at each split.
        n_trees (int): Final number of trees.
        seed (int): Run seed.
        checkpoints (Sequence[int]): Tree counts at which to record OOB error.
        n_jobs (int | None): Parallel workers for tree building.

    Returns:
        tuple[RandomForestClassifier, list[OOBCheckpoint]]: The fitted forest
            and its OOB error at each checkpoint.
    """
    forest = build_forest(
        mtry=mtry,
        n_trees=n_trees,
        random_state=derive_seed(seed, _FINAL_STREAM),
        n_jobs=n_jobs,
        oob_score=True,
        warm_start=True,
    )
    curve: list[OOBCheckpoint] = []
    for tree_count in oob_schedule(n_trees, checkpoints):
        forest.set_params(n_estimators=tree_count)
        # Small forests leave some rows without an OOB vote; those rows are excluded below.
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", message=_NO_OOB_WARNING, category=UserWarning)
            forest.fit(feature_matrix, target_codes)
        scored, predicted_codes = _oob_votes(forest)
        confusion = _confusion(target_codes[scored], predicted_codes[scored], classes)
        checkpoint = OOBCheckpoint(
            n_trees=tree_count,
            error_rate=1.0 - confusion.accuracy if confusion.total else 1.0,
            class_error_rates=confusion.class_error_rates(),
            rows_scored=int(scored.sum()),
        )
        logger.debug("OOB checkpoint", n_trees=tree_count, error_rate=round(checkpoint.error_rate, 4))
        curve.append(checkpoint)
    return forest, curve


def oob_confusion_matrix(
    forest: RandomForestClassifier,
    target_codes: np.ndarray,
    classes: list[str],
) -> ConfusionMatrix:
    """Return the out-of-bag confusion matrix of a forest fit with `oob_score=True`.

    Rows without any OOB vote are left out.

    Args:
        forest (RandomForestClassifier): Fitted forest with OOB predictions.
        target_codes (np.ndarray): Integer class code per training row.
        classes (list[str]): Class labels indexed by code.

    Returns:
        ConfusionMatrix: Rows = true class, columns = OOB-predicted class.
    """
    scored, predicted_codes = _oob_votes(forest)
    return _confusion(target_codes[scored], predicted_codes[scored], classes)


# ---------------------------------------------------------------------------
# Public interface -- Variable importance
# ---------------------------------------------------------------------------


def permutation_importance_cv(
    feature_matrix: np.ndarray,
    target_codes: np.ndarray,
    *,
    groups: Mapping[str, Sequence[int]],
    mtry: int,
    n_trees: int,
    folds: np.ndarray,
    seed: int,
    n_repeats: int = 1,
    n_jobs: int | None = None,
) -> list[FeatureImportance]:
    """Rank source columns by mean decrease in held-out accuracy when shuffled.

    For each fold, the fold forest for `mtry` is refit with the same seed used
    in `cross_validate`, so it is the model that was scored there. Each source
    column's predictor block is then shuffled across the held-out rows (all
    one-hot columns of a categorical move together) and the accuracy drop is
    recorded.

    Args:
        feature_matrix (np.ndarray): Predictor matrix, shape `(n_rows, n_features)`.
        target_codes (np.ndarray): Integer class code per row.
        groups (Mapping[str, Sequence[int]]): Source column to predictor indices.
        mtry (int): Features considered at each split.
        n_trees (int): Trees per fold forest.
        folds (np.ndarray): Fold id per row, from `assign_folds`.
        seed (int): Run seed.
        n_repeats (int): Shuffles per column per fold.
        n_jobs (int | None): Parallel workers for tree building.

    Returns:
        list[FeatureImportance]: One entry per source column, most important first.
    """
    n_folds = int(folds.max()) + 1
    drops: dict[str, list[float]] = {name: [] for name in groups}
    for fold_id in range(n_folds):
        held_out = folds == fold_id
        forest = _fit_fold_forest(
            feature_matrix,
            target_codes,
            held_out=held_out,
            mtry=mtry,
            n_trees=n_trees,
            seed=seed,
            fold_id=fold_id,
            n_jobs=n_jobs,
        )
        held_out_matrix = feature_matrix[held_out]
        held_out_codes = target_codes[held_out]
        baseline = float(accuracy_score(held_out_codes, forest.predict(held_out_matrix)))

        for group_index, (name, columns) in enumerate(groups.items()):
            if not columns:
                drops[name].extend([0.0] * n_repeats)
                continue
            column_indices = list(columns)
            for repeat in range(n_repeats):
                rng = np.random.default_rng(derive_seed(seed, _IMPORTANCE_STREAM, fold_id, group_index, repeat))
                row_order = rng.permutation(len(held_out_matrix))
                permuted = held_out_matrix.copy()
                permuted[:, column_indices] = held_out_matrix[np.ix_(row_order, column_indices)]
                permuted_accuracy = float(accuracy_score(held_out_codes, forest.predict(permuted)))
                drops[name].append(baseline - permuted_accuracy)
        logger.debug("Fold importance computed", fold=fold_id, baseline_accuracy=round(baseline, 4))

    importance = [
        FeatureImportance(
            feature=name,
            mean_decrease_accuracy=float(np.mean(values)),
            std=float(np.std(values)),
        )
        for name, values in drops.items()
    ]
    importance.sort(key=lambda item: (-item.mean_decrease_accuracy, item.feature))
    return importance


# ---------------------------------------------------------------------------
# Public interface -- Pipeline orchestration
# ---------------------------------------------------------------------------


def train_forest(
    df: pl.DataFrame,
    *,
    label_column: str,
    seed: int,
    feature_columns: list[str] | None = None,
    n_trees: int = 100,
    n_folds: int = 5,
    mtry_grid: Sequence[int] | None = None,
    grid_length: int = 3,
    oob_checkpoints: Sequence[int] = DEFAULT_OOB_CHECKPOINTS,
    importance_repeats: int = 1,
    n_jobs: int | None = None,
) -> FittedForest:
    """Cross-validate an `mtry` grid, refit the best candidate, and evaluate it.

    Args:
        df (pl.DataFrame): The filtered training table.
        label_column (str): Class label column.
        seed (int): Run seed; every random choice in the run derives from it.
        feature_columns (list[str] | None): Source feature columns. When
            `None`, all columns except `label_column` are used.
        n_trees (int): Trees per forest.
        n_folds (int): Cross-validation fold count.
        mtry_grid (Sequence[int] | None): Candidate `mtry` values. `None`
            derives `grid_length` candidates from the encoded feature count.
        grid_length (int): Number of auto-derived candidates.
        oob_checkpoints (Sequence[int]): Tree counts at which OOB error is recorded.
        importance_repeats (int): Shuffles per column per fold.
        n_jobs (int | None): Parallel workers for tree building.

    Returns:
        FittedForest: The final forest, its encoding, and the training report.

    Raises:
        TrainingError: If the label column is missing or degenerate, a
            feature column is unusable, or a hyperparameter is invalid.
    """
    validate_target(df, label_column)
    _validate_positive(n_trees=n_trees, grid_length=grid_length, importance_repeats=importance_repeats)

    feature_columns = feature_columns if feature_columns is not None else [c for c in df.columns if c != label_column]
    if label_column in feature_columns:
        raise TrainingError(f"Label column '{label_column}' cannot also be a feature.", parameter="feature_columns")

    feature_matrix, encoding = encode_features(df, feature_columns)
    target_codes, classes = encode_target(df[label_column])
    n_features = feature_matrix.shape[1]
    grid = (
        validate_mtry_grid(mtry_grid, n_features)
        if mtry_grid is not None
        else default_mtry_grid(n_features, length=grid_length)
    )
    folds = assign_folds(target_codes, n_folds, seed)
    logger.info(
        "Training forest",
        rows=len(target_codes),
        source_features=len(feature_columns),
        encoded_features=n_features,
        mtry_grid=grid,
        n_trees=n_trees,
        n_folds=n_folds,
        seed=seed,
    )

    resampling = cross_validate(
        feature_matrix,
        target_codes,
        classes=classes,
        mtry_grid=grid,
        n_trees=n_trees,
        folds=folds,
        seed=seed,
        n_jobs=n_jobs,
    )
    selected_mtry = select_mtry(resampling)
    logger.info("mtry selected", mtry=selected_mtry)

    forest, oob_curve = fit_final_forest(
        feature_matrix,
        target_codes,
        classes=classes,
        mtry=selected_mtry,
        n_trees=n_trees,
        seed=seed,
        checkpoints=oob_checkpoints,
        n_jobs=n_jobs,
    )
    importance = permutation_importance_cv(
        feature_matrix,
        target_codes,
        groups=encoding.groups,
        mtry=selected_mtry,
        n_trees=n_trees,
        folds=folds,
        seed=seed,
        n_repeats=importance_repeats,
        n_jobs=n_jobs,
    )

    report = TrainingReport(
        label_column=label_column,
        classes=classes,
        feature_columns=feature_columns,
        encoded_feature_count=n_features,
        sample_count=len(target_codes),
        n_trees=n_trees,
        n_folds=n_folds,
        seed=seed,
        resampling=resampling,
        selected_mtry=selected_mtry,
        oob_confusion=oob_confusion_matrix(forest, target_codes, classes),
        oob_curve=oob_curve,
        importance=importance,
    )
    return FittedForest(forest=forest, encoding=encoding, classes=classes, report=report)


def predict(fitted: FittedForest, df: pl.DataFrame, *, id_column: str | None = None) -> list[RowPrediction]:
    """Predict the class and class probabilities of each row.

    Probabilities are the per-class leaf frequencies averaged over all trees;
    the predicted class is the most probable one.

    Args:
        fitted (FittedForest): A trained forest.
        df (pl.DataFrame): Table with the same source feature columns as training.
        id_column (str | None): Column holding row identifiers. When `None`
            or absent, rows are numbered from 1.

    Returns:
        list[RowPrediction]: One prediction per row, in table order.

    Raises:
        SchemaMismatchError: If a source feature column is missing.
    """
    feature_matrix = fitted.encoding.transform(df)
    probabilities = fitted.forest.predict_proba(feature_matrix)
    labels = [fitted.classes[int(code)] for code in fitted.forest.classes_]
    row_ids: list[str | int] = (
        df[id_column].to_list() if id_column is not None and id_column in df.columns else list(range(1, df.height + 1))
    )

    predictions: list[RowPrediction] = []
    for row_id, row in zip(row_ids, probabilities, strict=True):
        predictions.append(
            RowPrediction(
                row_id=row_id,
                predicted_class=labels[int(np.argmax(row))],
                probabilities={label: float(value) for label, value in zip(labels, row, strict=True)},
            )
        )
    logger.info("Rows predicted", rows=len(predictions))
    return predictions


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _fit_fold_forest(
    feature_matrix: np.ndarray,
    target_codes: np.ndarray,
    *,
    held_out: np.ndarray,
    mtry: int,
    n_trees: int,
    seed: int,
    fold_id: int,
    n_jobs: int | None,
) -> RandomForestClassifier:
    """Fit the forest for one (mtry, fold) pair on the rows outside the fold.

    The seed depends only on `mtry` and `fold_id`, so the same pair always
    yields the same forest.
    """
    forest = build_forest(
        mtry=mtry,
        n_trees=n_trees,
        random_state=derive_seed(seed, _CV_STREAM, mtry, fold_id),
        n_jobs=n_jobs,
    )
    training_rows = ~held_out
    forest.fit(feature_matrix[training_rows], target_codes[training_rows])
    return forest


def _oob_votes(forest: RandomForestClassifier) -> tuple[np.ndarray, np.ndarray]:
    """Return `(scored_mask, predicted_codes)` from a forest's OOB decision function.

    Rows never left out of a bootstrap sample have an all-zero decision row
    and are marked unscored.
    """
    decision = forest.oob_decision_function_
    scored = decision.sum(axis=1) > 0
    predicted_codes = forest.classes_[np.argmax(decision, axis=1)]
    return scored, predicted_codes


def _confusion(true_codes: np.ndarray, predicted_codes: np.ndarray, classes: list[str]) -> ConfusionMatrix:
    """Build a `ConfusionMatrix` over all classes from integer codes."""
    counts = confusion_matrix(true_codes, predicted_codes, labels=list(range(len(classes))))
    return ConfusionMatrix(classes=classes, counts=counts.astype(int).tolist())


def _validate_positive(**parameters: int) -> None:
    """Raise `TrainingError` naming the first parameter below 1."""
    for name, value in parameters.items():
        if value < 1:
            raise TrainingError(f"{name} must be at least 1, got {value}.", parameter=name)
