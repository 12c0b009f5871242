"""Custom exceptions for the motionforest pipeline.

Every error is fatal to a run. Each exception names the pipeline stage that
failed so the caller can report where the run aborted:

- MotionForestError: Base class for all pipeline errors. Catch this to handle
  any failure from loading, filtering, or training.
- DataLoadError: Raised when an input file is missing or malformed (stage "load").
- SchemaMismatchError: Raised when the filtered training and testing feature
  schemas diverge (stage "filter").
- TrainingError: Raised on an invalid label column, a degenerate class count,
  or an invalid hyperparameter (stage "train").
"""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar, Literal

type PipelineStage = Literal["load", "filter", "train", "predict"]


class MotionForestError(Exception):
    """Base exception for all motionforest pipeline errors.

    Attributes:
        stage (PipelineStage): The pipeline stage that failed.

    Examples:
        >>> err = TrainingError("n_folds must be at least 2", parameter="n_folds")
        >>> isinstance(err, MotionForestError)
        True
        >>> err.stage
        'train'
    """

    default_stage: ClassVar[PipelineStage] = "load"
    stage: PipelineStage

    def __init__(self, message: str, *, stage: PipelineStage | None = None) -> None:
        """Initialize MotionForestError.

        Args:
            message (str): Description of the failure.
            stage (PipelineStage | None): The failing stage. Defaults to the
                subclass's `default_stage`.
        """
        super().__init__(message)
        self.stage = stage or self.default_stage

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including message and stage.
        """
        return f"{self.__class__.__name__}(message={str(self)!r}, stage={self.stage!r})"


class DataLoadError(MotionForestError):
    """Raised when an input table cannot be read.

    Attributes:
        path (Path | None): The file that failed to load.

    Examples:
        >>> err = DataLoadError("File not found", path=Path("pml-training.csv"))
        >>> err.path.name
        'pml-training.csv'
    """

    default_stage: ClassVar[PipelineStage] = "load"
    path: Path | None

    def __init__(self, message: str, *, path: Path | str | None = None) -> None:
        """Initialize DataLoadError.

        Args:
            message (str): Description of the load failure.
            path (Path | str | None): The file that failed to load.
        """
        super().__init__(message)
        self.path = Path(path) if path is not None else None

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including message and path.
        """
        return f"{self.__class__.__name__}(message={str(self)!r}, path={self.path!r})"


class SchemaMismatchError(MotionForestError):
    """Raised when filtered training and testing feature columns do not match.

    Attributes:
        training_columns (list[str]): Feature columns of the training table, in order.
        testing_columns (list[str]): Feature columns of the testing table, in order.
        missing_in_training (list[str]): Columns present only in the testing table.
        missing_in_testing (list[str]): Columns present only in the training table.

    Examples:
        >>> err = SchemaMismatchError(
        ...     "Feature schemas differ",
        ...     training_columns=["user_name", "roll_belt"],
        ...     testing_columns=["user_name", "yaw_belt"],
        ... )
        >>> err.missing_in_testing
        ['roll_belt']
        >>> print(err.format_details())
        Column "roll_belt" is missing from the testing table.
        Column "yaw_belt" is missing from the training table.
    """

    default_stage: ClassVar[PipelineStage] = "filter"
    training_columns: list[str]
    testing_columns: list[str]
    missing_in_training: list[str]
    missing_in_testing: list[str]

    def __init__(
        self,
        message: str,
        *,
        training_columns: list[str] | None = None,
        testing_columns: list[str] | None = None,
        stage: PipelineStage | None = None,
    ) -> None:
        """Initialize SchemaMismatchError.

        Args:
            message (str): Description of the mismatch.
            training_columns (list[str] | None): Feature columns of the training table.
            testing_columns (list[str] | None): Feature columns of the testing table.
            stage (PipelineStage | None): The failing stage. Defaults to "filter".
        """
        super().__init__(message, stage=stage)
        self.training_columns = training_columns or []
        self.testing_columns = testing_columns or []
        testing_set = set(self.testing_columns)
        training_set = set(self.training_columns)
        self.missing_in_testing = [col for col in self.training_columns if col not in testing_set]
        self.missing_in_training = [col for col in self.testing_columns if col not in training_set]

    def first_order_divergence(self) -> tuple[int, str, str] | None:
        """Locate the first position where the two column orders disagree.

        Returns:
            tuple[int, str, str] | None: `(position, training_column, testing_column)`
                for the first differing position among the shared prefix, or
                `None` when one list is a prefix of the other.
        """
        paired = zip(self.training_columns, self.testing_columns, strict=False)
        for position, (train_col, test_col) in enumerate(paired):
            if train_col != test_col:
                return position, train_col, test_col
        return None

    def format_details(self) -> str:
        """Format one line per missing column, or the first order divergence.

        Returns:
            str: Multi-line description of the mismatch.
        """
        lines = [f'Column "{col}" is missing from the testing table.' for col in self.missing_in_testing]
        lines.extend(f'Column "{col}" is missing from the training table.' for col in self.missing_in_training)
        if not lines and (divergence := self.first_order_divergence()) is not None:
            position, train_col, test_col = divergence
            lines.append(
                f'Column order differs at position {position}: "{train_col}" (training) vs "{test_col}" (testing).'
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including the missing columns.
        """
        return (
            f"{self.__class__.__name__}("
            f"message={str(self)!r}, stage={self.stage!r}, "
            f"missing_in_training={self.missing_in_training!r}, "
            f"missing_in_testing={self.missing_in_testing!r})"
        )


class TrainingError(MotionForestError):
    """Raised when the forest cannot be trained with the given data or parameters.

    Attributes:
        parameter (str | None): The offending input, e.g. `"label_column"` or `"mtry"`.

    Examples:
        >>> err = TrainingError("mtry 80 exceeds 57 available features", parameter="mtry")
        >>> err.parameter
        'mtry'
    """

    default_stage: ClassVar[PipelineStage] = "train"
    parameter: str | None

    def __init__(self, message: str, *, parameter: str | None = None) -> None:
        """Initialize TrainingError.

        Args:
            message (str): Description of the training failure.
            parameter (str | None): The offending input name.
        """
        super().__init__(message)
        self.parameter = parameter

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including message and parameter.
        """
        return f"{self.__class__.__name__}(message={str(self)!r}, parameter={self.parameter!r})"
