"""Tests for the forest result models and their validators."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError
from pytest_check import check

from motionforest.forest.models import (
    ConfusionMatrix,
    FeatureImportance,
    OOBCheckpoint,
    ResamplingResult,
    RowPrediction,
    TrainingReport,
)

CLASSES = ["A", "B", "C"]


def _confusion(counts: list[list[int]] | None = None) -> ConfusionMatrix:
    return ConfusionMatrix(classes=CLASSES, counts=counts or [[8, 1, 1], [0, 10, 0], [2, 0, 8]])


def _report_kwargs(**overrides: Any) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "label_column": "classe",
        "classes": CLASSES,
        "feature_columns": ["user_name", "roll_belt"],
        "encoded_feature_count": 6,
        "sample_count": 30,
        "n_trees": 10,
        "n_folds": 3,
        "seed": 1000,
        "resampling": [
            ResamplingResult(
                mtry=2,
                fold_accuracies=[0.8, 0.9, 0.85],
                fold_kappas=[0.7, 0.85, 0.78],
                confusion=_confusion(),
            ),
            ResamplingResult(
                mtry=6,
                fold_accuracies=[0.9, 0.9, 0.9],
                fold_kappas=[0.85, 0.85, 0.85],
                confusion=_confusion(),
            ),
        ],
        "selected_mtry": 6,
        "oob_confusion": _confusion(),
        "oob_curve": [
            OOBCheckpoint(n_trees=1, error_rate=0.3, class_error_rates=dict.fromkeys(CLASSES, 0.3), rows_scored=11),
            OOBCheckpoint(n_trees=10, error_rate=0.1, class_error_rates=dict.fromkeys(CLASSES, 0.1), rows_scored=30),
        ],
        "importance": [FeatureImportance(feature="roll_belt", mean_decrease_accuracy=0.2, std=0.05)],
    }
    kwargs.update(overrides)
    return kwargs


class TestConfusionMatrix:
    """Tests for ConfusionMatrix derived metrics and validation."""

    def test_accuracy_and_class_errors(self) -> None:
        """Accuracy is the diagonal share; class error is the off-diagonal share of each row."""
        # Arrange
        matrix = _confusion()

        # Act
        error_rates = matrix.class_error_rates()

        # Assert
        with check:
            assert matrix.total == 30
        with check:
            assert matrix.correct == 26
        with check:
            assert matrix.accuracy == pytest.approx(26 / 30)
        with check:
            assert error_rates == pytest.approx({"A": 0.2, "B": 0.0, "C": 0.2})

    def test_empty_class_row_has_zero_error(self) -> None:
        """A class with no rows should report 0.0 rather than dividing by zero."""
        # Arrange
        matrix = ConfusionMatrix(classes=["A", "B"], counts=[[5, 0], [0, 0]])

        # Assert
        assert matrix.class_error_rates() == {"A": 0.0, "B": 0.0}

    def test_addition_sums_counts(self) -> None:
        """Adding fold matrices should sum cell by cell."""
        # Act
        summed = _confusion() + _confusion([[1, 0, 0], [0, 1, 0], [0, 0, 1]])

        # Assert
        assert summed.counts == [[9, 1, 1], [0, 11, 0], [2, 0, 9]]

    def test_addition_rejects_different_classes(self) -> None:
        """Matrices over different classes cannot be summed."""
        other = ConfusionMatrix(classes=["A", "B"], counts=[[1, 0], [0, 1]])
        with pytest.raises(ValueError, match="different classes"):
            _ = _confusion() + other

    @pytest.mark.parametrize(
        "counts",
        [
            [[1, 0], [0, 1]],
            [[1, 0, 0], [0, 1, 0], [0, 0]],
            [[1, 0, 0], [0, -1, 0], [0, 0, 1]],
        ],
        ids=["wrong-size", "ragged", "negative"],
    )
    def test_invalid_counts_rejected(self, counts: list[list[int]]) -> None:
        """Non-square, ragged, or negative matrices are rejected.

        Args:
            counts (list[list[int]]): Invalid counts.
        """
        with pytest.raises(ValidationError):
            ConfusionMatrix(classes=CLASSES, counts=counts)

    def test_to_frame_appends_class_error(self) -> None:
        """The table view should have a `true` column, one column per class, and `class.error`."""
        # Act
        frame = _confusion().to_frame()

        # Assert
        with check:
            assert frame.columns == ["true", "A", "B", "C", "class.error"]
        with check:
            assert frame["A"].to_list() == [8, 0, 2]
        with check:
            assert frame["class.error"].to_list() == [0.2, 0.0, 0.2]


class TestResamplingResult:
    """Tests for ResamplingResult summary statistics."""

    def test_means_and_sample_sd(self) -> None:
        """Accuracy, kappa, and error are fold means; SDs use the n-1 denominator."""
        # Arrange
        result = ResamplingResult(
            mtry=29,
            fold_accuracies=[0.9, 1.0],
            fold_kappas=[0.8, 1.0],
            confusion=_confusion(),
        )

        # Assert
        with check:
            assert result.accuracy == pytest.approx(0.95)
        with check:
            assert result.error == pytest.approx(0.05)
        with check:
            assert result.kappa == pytest.approx(0.9)
        with check:
            assert result.accuracy_sd == pytest.approx(0.0707107, rel=1e-5)
        with check:
            assert result.kappa_sd == pytest.approx(0.1414214, rel=1e-5)

    def test_single_fold_sd_is_zero(self) -> None:
        """With one fold there is no spread to report."""
        result = ResamplingResult(mtry=2, fold_accuracies=[0.9], fold_kappas=[0.8], confusion=_confusion())
        assert result.accuracy_sd == 0.0


class TestRowPrediction:
    """Tests for RowPrediction distribution validation."""

    def test_valid_prediction(self) -> None:
        """A normalised distribution with the predicted class at the maximum is accepted."""
        # Act
        prediction = RowPrediction(row_id=1, predicted_class="B", probabilities={"A": 0.1, "B": 0.8, "C": 0.1})

        # Assert
        with check:
            assert prediction.predicted_class == "B"
        with check:
            assert sum(prediction.probabilities.values()) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        ("predicted_class", "probabilities"),
        [
            ("A", {"A": 0.5, "B": 0.4, "C": 0.0}),
            ("A", {"A": 1.2, "B": -0.2, "C": 0.0}),
            ("B", {"A": 0.7, "B": 0.2, "C": 0.1}),
            ("E", {"A": 0.7, "B": 0.2, "C": 0.1}),
        ],
        ids=["does-not-sum-to-one", "negative", "not-most-probable", "unknown-class"],
    )
    def test_invalid_prediction(self, predicted_class: str, probabilities: dict[str, float]) -> None:
        """Malformed distributions or inconsistent predicted classes are rejected.

        Args:
            predicted_class (str): Predicted class label.
            probabilities (dict[str, float]): Class probabilities.
        """
        with pytest.raises(ValidationError):
            RowPrediction(row_id=1, predicted_class=predicted_class, probabilities=probabilities)


class TestTrainingReport:
    """Tests for TrainingReport validators and derived properties."""

    def test_selected_result_and_method(self) -> None:
        """The selected result and resampling description derive from the fields."""
        # Act
        report = TrainingReport(**_report_kwargs())

        # Assert
        with check:
            assert report.selected.mtry == 6
        with check:
            assert report.resampling_method == "Cross-Validated (3 fold)"
        with check:
            assert report.cv_confusion == report.selected.confusion

    def test_selected_mtry_must_be_evaluated(self) -> None:
        """A selected mtry that was never cross-validated is rejected."""
        with pytest.raises(ValidationError, match="was not evaluated"):
            TrainingReport(**_report_kwargs(selected_mtry=4))

    def test_oob_curve_must_end_at_n_trees(self) -> None:
        """The OOB curve's last checkpoint must be the forest size."""
        with pytest.raises(ValidationError, match="must end at n_trees"):
            TrainingReport(**_report_kwargs(n_trees=20))

    def test_oob_curve_must_increase(self) -> None:
        """Checkpoints must be strictly increasing."""
        # Arrange
        checkpoint = OOBCheckpoint(
            n_trees=10,
            error_rate=0.1,
            class_error_rates=dict.fromkeys(CLASSES, 0.1),
            rows_scored=30,
        )

        # Act & Assert
        with pytest.raises(ValidationError, match="strictly increasing"):
            TrainingReport(**_report_kwargs(oob_curve=[checkpoint, checkpoint]))
