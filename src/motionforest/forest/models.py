"""Pydantic result models for the random-forest trainer and evaluator."""

from __future__ import annotations

import math
from typing import Final

import polars as pl
from pydantic import BaseModel, Field, field_validator, model_validator

_PROBABILITY_SUM_TOLERANCE: Final[float] = 1e-6


class ConfusionMatrix(BaseModel):
    """Square matrix of prediction counts.

    Rows are the true class, columns the predicted class, so the diagonal
    holds correct predictions.

    Attributes:
        classes (list[str]): Class labels, in row/column order.
        counts (list[list[int]]): `counts[i][j]` is the number of rows of true
            class `classes[i]` predicted as `classes[j]`.

    Examples:
        >>> cm = ConfusionMatrix(classes=["A", "B"], counts=[[9, 1], [0, 10]])
        >>> cm.accuracy
        0.95
        >>> cm.class_error_rates()
        {'A': 0.1, 'B': 0.0}
    """

    classes: list[str] = Field(min_length=2, description="Class labels, in row/column order.")
    counts: list[list[int]] = Field(description="Row = true class, column = predicted class.")

    @model_validator(mode="after")
    def _validate_square(self) -> ConfusionMatrix:
        """Validate that counts form a non-negative square matrix matching `classes`.

        Returns:
            ConfusionMatrix: The validated model instance.

        Raises:
            ValueError: If the matrix shape does not match the class count or
                any count is negative.
        """
        n_classes = len(self.classes)
        if len(self.counts) != n_classes or any(len(row) != n_classes for row in self.counts):
            raise ValueError(f"counts must be a {n_classes}x{n_classes} matrix")
        if any(count < 0 for row in self.counts for count in row):
            raise ValueError("counts must be non-negative")
        return self

    @property
    def total(self) -> int:
        """Total number of predictions counted."""
        return sum(sum(row) for row in self.counts)

    @property
    def correct(self) -> int:
        """Number of predictions on the diagonal."""
        return sum(self.counts[i][i] for i in range(len(self.classes)))

    @property
    def accuracy(self) -> float:
        """Fraction of correct predictions; 0.0 for an empty matrix."""
        return self.correct / self.total if self.total else 0.0

    def class_error_rates(self) -> dict[str, float]:
        """Return, per true class, the fraction of its rows predicted wrongly.

        Returns:
            dict[str, float]: Class label to error rate. Classes with no rows
                have an error rate of 0.0.
        """
        rates: dict[str, float] = {}
        for i, label in enumerate(self.classes):
            row_total = sum(self.counts[i])
            rates[label] = (row_total - self.counts[i][i]) / row_total if row_total else 0.0
        return rates

    def __add__(self, other: ConfusionMatrix) -> ConfusionMatrix:
        """Sum two confusion matrices over the same classes.

        Raises:
            ValueError: If the class lists differ.
        """
        if self.classes != other.classes:
            raise ValueError(f"Cannot add confusion matrices over different classes: {self.classes} vs {other.classes}")
        summed = [
            [left + right for left, right in zip(row_a, row_b, strict=True)]
            for row_a, row_b in zip(self.counts, other.counts, strict=True)
        ]
        return ConfusionMatrix(classes=self.classes, counts=summed)

    def to_frame(self) -> pl.DataFrame:
        """Return the matrix as a table with a `class.error` column appended."""
        error_rates = self.class_error_rates()
        columns: dict[str, list[str] | list[int] | list[float]] = {"true": list(self.classes)}
        for j, label in enumerate(self.classes):
            columns[label] = [row[j] for row in self.counts]
        columns["class.error"] = [round(error_rates[label], 4) for label in self.classes]
        return pl.DataFrame(columns)


class ResamplingResult(BaseModel):
    """Cross-validated performance of one `mtry` candidate.

    Attributes:
        mtry (int): Features considered at each split.
        fold_accuracies (list[float]): Held-out accuracy of each fold.
        fold_kappas (list[float]): Held-out Cohen's kappa of each fold.
        confusion (ConfusionMatrix): Held-out confusion summed over all folds.
    """

    mtry: int = Field(ge=1, description="Features considered at each split.")
    fold_accuracies: list[float] = Field(min_length=1, description="Held-out accuracy of each fold.")
    fold_kappas: list[float] = Field(min_length=1, description="Held-out Cohen's kappa of each fold.")
    confusion: ConfusionMatrix = Field(description="Held-out confusion summed over all folds.")

    @property
    def accuracy(self) -> float:
        """Mean held-out accuracy across folds."""
        return sum(self.fold_accuracies) / len(self.fold_accuracies)

    @property
    def kappa(self) -> float:
        """Mean held-out kappa across folds."""
        return sum(self.fold_kappas) / len(self.fold_kappas)

    @property
    def error(self) -> float:
        """Mean held-out error across folds."""
        return 1.0 - self.accuracy

    @property
    def accuracy_sd(self) -> float:
        """Sample standard deviation of the fold accuracies."""
        return _sample_sd(self.fold_accuracies)

    @property
    def kappa_sd(self) -> float:
        """Sample standard deviation of the fold kappas."""
        return _sample_sd(self.fold_kappas)


class OOBCheckpoint(BaseModel):
    """Out-of-bag error of the final forest after `n_trees` trees.

    Attributes:
        n_trees (int): Trees grown so far.
        error_rate (float): OOB error over the rows that have an OOB vote.
        class_error_rates (dict[str, float]): OOB error per true class.
        rows_scored (int): Rows left out of at least one tree's bootstrap sample.
    """

    n_trees: int = Field(ge=1, description="Trees grown so far.")
    error_rate: float = Field(ge=0.0, le=1.0, description="OOB error over rows with an OOB vote.")
    class_error_rates: dict[str, float] = Field(description="OOB error per true class.")
    rows_scored: int = Field(ge=0, description="Rows with at least one OOB vote.")


class FeatureImportance(BaseModel):
    """Permutation importance of one source column.

    Attributes:
        feature (str): Source column name.
        mean_decrease_accuracy (float): Mean drop in held-out accuracy when the
            column's values are shuffled. Can be slightly negative for
            uninformative columns.
        std (float): Standard deviation of the drop across folds and repeats.
    """

    feature: str = Field(description="Source column name.")
    mean_decrease_accuracy: float = Field(description="Mean drop in held-out accuracy when shuffled.")
    std: float = Field(ge=0.0, description="Standard deviation of the drop.")


class RowPrediction(BaseModel):
    """Predicted class and class probabilities for one test row.

    Attributes:
        row_id (str | int): Row identifier from the testing table's id column,
            or the 1-based row number when there is none.
        predicted_class (str): Class with the highest probability.
        probabilities (dict[str, float]): Probability of each class.

    Examples:
        >>> p = RowPrediction(row_id=1, predicted_class="B", probabilities={"A": 0.1, "B": 0.9})
        >>> p.probabilities["B"]
        0.9
    """

    row_id: str | int = Field(description="Row identifier.")
    predicted_class: str = Field(description="Class with the highest probability.")
    probabilities: dict[str, float] = Field(min_length=2, description="Probability of each class.")

    @field_validator("probabilities", mode="after")
    @classmethod
    def _validate_distribution(cls, value: dict[str, float]) -> dict[str, float]:
        """Validate that probabilities are non-negative and sum to 1.0.

        Raises:
            ValueError: If any probability is negative or the sum is off by
                more than the tolerance.
        """
        if any(probability < 0.0 for probability in value.values()):
            raise ValueError(f"probabilities must be non-negative, got {value}")
        total = sum(value.values())
        if not math.isclose(total, 1.0, abs_tol=_PROBABILITY_SUM_TOLERANCE):
            raise ValueError(f"probabilities must sum to 1.0, got {total:.8f}")
        return value

    @model_validator(mode="after")
    def _validate_predicted_class_is_most_probable(self) -> RowPrediction:
        """Validate that the predicted class carries the highest probability.

        Raises:
            ValueError: If the predicted class is unknown or not the maximum.
        """
        if self.predicted_class not in self.probabilities:
            raise ValueError(f"predicted_class '{self.predicted_class}' is not one of {sorted(self.probabilities)}")
        if self.probabilities[self.predicted_class] < max(self.probabilities.values()):
            raise ValueError(f"predicted_class '{self.predicted_class}' does not have the highest probability")
        return self


class TrainingReport(BaseModel):
    """Everything reported about one training run.

    Attributes:
        label_column (str): Class label column.
        classes (list[str]): Class labels in sorted order.
        feature_columns (list[str]): Source feature columns, in table order.
        encoded_feature_count (int): Predictors after one-hot encoding.
        sample_count (int): Training rows.
        n_trees (int): Trees in the final forest and in each CV fit.
        n_folds (int): Cross-validation fold count.
        seed (int): Seed the run was derived from.
        resampling (list[ResamplingResult]): CV results, one per `mtry` candidate.
        selected_mtry (int): Candidate with the lowest mean CV error.
        oob_confusion (ConfusionMatrix): OOB confusion of the final forest.
        oob_curve (list[OOBCheckpoint]): OOB error by tree-count checkpoint.
        importance (list[FeatureImportance]): Permutation importance, most
            important first.
    """

    label_column: str = Field(description="Class label column.")
    classes: list[str] = Field(min_length=2, description="Class labels in sorted order.")
    feature_columns: list[str] = Field(min_length=1, description="Source feature columns.")
    encoded_feature_count: int = Field(ge=1, description="Predictors after one-hot encoding.")
    sample_count: int = Field(ge=1, description="Training rows.")
    n_trees: int = Field(ge=1, description="Trees per forest.")
    n_folds: int = Field(ge=2, description="Cross-validation fold count.")
    seed: int = Field(description="Seed the run was derived from.")
    resampling: list[ResamplingResult] = Field(min_length=1, description="CV results per mtry candidate.")
    selected_mtry: int = Field(ge=1, description="Candidate with the lowest mean CV error.")
    oob_confusion: ConfusionMatrix = Field(description="OOB confusion of the final forest.")
    oob_curve: list[OOBCheckpoint] = Field(min_length=1, description="OOB error by tree count.")
    importance: list[FeatureImportance] = Field(description="Permutation importance, most important first.")

    @property
    def resampling_method(self) -> str:
        """Human-readable resampling description."""
        return f"Cross-Validated ({self.n_folds} fold)"

    @property
    def selected(self) -> ResamplingResult:
        """Resampling result of the selected `mtry`."""
        return next(result for result in self.resampling if result.mtry == self.selected_mtry)

    @property
    def cv_confusion(self) -> ConfusionMatrix:
        """Held-out confusion summed over folds for the selected `mtry`."""
        return self.selected.confusion

    @model_validator(mode="after")
    def _validate_selected_mtry_was_evaluated(self) -> TrainingReport:
        """Validate that `selected_mtry` is one of the resampled candidates.

        Raises:
            ValueError: If no resampling result has `mtry == selected_mtry`.
        """
        evaluated = [result.mtry for result in self.resampling]
        if self.selected_mtry not in evaluated:
            raise ValueError(f"selected_mtry {self.selected_mtry} was not evaluated; candidates: {evaluated}")
        return self

    @model_validator(mode="after")
    def _validate_oob_curve_ends_at_n_trees(self) -> TrainingReport:
        """Validate that the OOB curve is ascending and ends at the forest size.

        Raises:
            ValueError: If checkpoints are not strictly increasing or the last
                one is not `n_trees`.
        """
        tree_counts = [checkpoint.n_trees for checkpoint in self.oob_curve]
        if any(later <= earlier for earlier, later in zip(tree_counts, tree_counts[1:], strict=False)):
            raise ValueError(f"oob_curve tree counts must be strictly increasing, got {tree_counts}")
        if tree_counts[-1] != self.n_trees:
            raise ValueError(f"oob_curve must end at n_trees={self.n_trees}, got {tree_counts[-1]}")
        return self


class PipelineResult(BaseModel):
    """Outcome of a full load, filter, train, and predict run.

    Attributes:
        training_shape (tuple[int, int]): Raw training table shape.
        testing_shape (tuple[int, int]): Raw testing table shape.
        filtered_training_shape (tuple[int, int]): Training shape after filtering.
        filtered_testing_shape (tuple[int, int]): Testing shape after filtering.
        report (TrainingReport): Training and evaluation results.
        predictions (list[RowPrediction]): One prediction per testing row.
    """

    training_shape: tuple[int, int]
    testing_shape: tuple[int, int]
    filtered_training_shape: tuple[int, int]
    filtered_testing_shape: tuple[int, int]
    report: TrainingReport
    predictions: list[RowPrediction]


def _sample_sd(values: list[float]) -> float:
    """Return the sample standard deviation, or 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((value - mean) ** 2 for value in values) / (len(values) - 1))
