"""Preprocessing: target validation, fold assignment, mtry grid, seed derivation, and feature encoding."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Final, Literal

import numpy as np
import polars as pl
from sklearn.model_selection import StratifiedKFold
from sklearn.preprocessing import LabelEncoder, OneHotEncoder

from motionforest.exceptions import SchemaMismatchError, TrainingError

type ColumnType = Literal["numeric", "boolean", "categorical", "excluded"]

# ---------------------------------------------------------------------------
# Column type classification
# ---------------------------------------------------------------------------

_DTYPE_TO_COLUMN_TYPE: dict[type[pl.DataType] | pl.DataType, ColumnType] = {
    pl.Int8: "numeric",
    pl.Int16: "numeric",
    pl.Int32: "numeric",
    pl.Int64: "numeric",
    pl.UInt8: "numeric",
    pl.UInt16: "numeric",
    pl.UInt32: "numeric",
    pl.UInt64: "numeric",
    pl.Float32: "numeric",
    pl.Float64: "numeric",
    pl.Boolean: "boolean",
    pl.String: "categorical",
    pl.Categorical: "categorical",
}


def classify_column(dtype: pl.DataType) -> ColumnType:
    """Classify a Polars column dtype into a broad feature category.

    Args:
        dtype (pl.DataType): The Polars data type of the column to classify.

    Returns:
        ColumnType: One of `"numeric"`, `"boolean"`, `"categorical"`, or `"excluded"`.
    """
    result = _DTYPE_TO_COLUMN_TYPE.get(dtype)
    if result is not None:
        return result
    if isinstance(dtype, pl.Enum):
        return "categorical"
    return "excluded"


# ---------------------------------------------------------------------------
# Target validation and encoding
# ---------------------------------------------------------------------------


def validate_target(df: pl.DataFrame, label_column: str) -> None:
    """Raise `TrainingError` if the label column is missing or degenerate.

    Args:
        df (pl.DataFrame): The training table.
        label_column (str): The label column name.

    Raises:
        TrainingError: If the column is absent, contains nulls, or has fewer
            than two distinct classes.
    """
    if label_column not in df.columns:
        raise TrainingError(f"Label column '{label_column}' not found in training table.", parameter="label_column")
    series = df[label_column]
    if series.null_count() > 0:
        raise TrainingError(
            f"Label column '{label_column}' contains {series.null_count()} null values.",
            parameter="label_column",
        )
    n_classes = series.n_unique()
    if n_classes < 2:
        raise TrainingError(
            f"Label column '{label_column}' must have at least 2 distinct classes, got {n_classes}.",
            parameter="label_column",
        )


def encode_target(series: pl.Series) -> tuple[np.ndarray, list[str]]:
    """Encode class labels into integer codes.

    Args:
        series (pl.Series): The label column, already validated.

    Returns:
        tuple[np.ndarray, list[str]]: `(codes, classes)` where `classes[code]`
            is the label string for each code, sorted.
    """
    label_encoder = LabelEncoder()
    codes = label_encoder.fit_transform(series.cast(pl.String).to_numpy(allow_copy=True))
    return codes.astype(np.int64), [str(label) for label in label_encoder.classes_]


# ---------------------------------------------------------------------------
# Seeds, folds, and the mtry grid
# ---------------------------------------------------------------------------


def derive_seed(seed: int, *keys: int) -> int:
    """Derive an independent 32-bit seed from the run seed and a key path.

    Each fit, fold assignment, or permutation gets its own stream so that
    parallel work shares no random state and results do not depend on the
    order work is scheduled in.

    Args:
        seed (int): Non-negative run seed.
        *keys (int): Non-negative integers identifying the consumer.

    Returns:
        int: Seed suitable for `random_state`.

    Raises:
        TrainingError: If `seed` or any key is negative.

    Examples:
        >>> derive_seed(1000, 1, 2) == derive_seed(1000, 1, 2)
        True
        >>> derive_seed(1000, 1, 2) == derive_seed(1000, 2, 1)
        False
    """
    if seed < 0 or any(key < 0 for key in keys):
        raise TrainingError(
            f"seed and stream keys must be non-negative, got seed={seed}, keys={keys}",
            parameter="seed",
        )
    return int(np.random.SeedSequence(seed, spawn_key=keys).generate_state(1)[0])


_FOLD_STREAM: Final[int] = 0


def assign_folds(target_codes: np.ndarray, n_folds: int, seed: int) -> np.ndarray:
    """Assign each row to one of `n_folds` stratified, roughly equal folds.

    Args:
        target_codes (np.ndarray): Integer class code per row.
        n_folds (int): Number of folds.
        seed (int): Run seed.

    Returns:
        np.ndarray: Fold id (0 to `n_folds - 1`) per row.

    Raises:
        TrainingError: If `n_folds < 2` or any class has fewer rows than folds.
    """
    if n_folds < 2:
        raise TrainingError(f"n_folds must be at least 2, got {n_folds}.", parameter="n_folds")
    smallest_class = int(np.bincount(target_codes).min()) if len(target_codes) else 0
    if smallest_class < n_folds:
        raise TrainingError(
            f"n_folds={n_folds} exceeds the row count of the smallest class ({smallest_class}).",
            parameter="n_folds",
        )

    splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=derive_seed(seed, _FOLD_STREAM))
    folds = np.empty(len(target_codes), dtype=np.int64)
    for fold_id, (_, held_out) in enumerate(splitter.split(np.zeros(len(target_codes)), target_codes)):
        folds[held_out] = fold_id
    return folds


_LOG_SPACED_GRID_THRESHOLD: Final[int] = 500


def default_mtry_grid(n_features: int, length: int = 3) -> list[int]:
    """Derive evenly spaced `mtry` candidates for `n_features` predictors.

    Small feature counts use every value from 1 to `n_features`. Otherwise
    candidates run linearly from 2 to `n_features`, or on a log2 scale from 2
    once there are 500 or more predictors.

    Args:
        n_features (int): Encoded predictor count.
        length (int): Number of candidates.

    Returns:
        list[int]: Distinct candidates in ascending order.

    Examples:
        >>> default_mtry_grid(57)
        [2, 29, 57]
        >>> default_mtry_grid(3)
        [1, 2, 3]
    """
    if n_features < 1 or length < 1:
        raise TrainingError(
            f"n_features and length must be positive, got n_features={n_features}, length={length}.",
            parameter="mtry",
        )
    if n_features <= length:
        return list(range(1, n_features + 1))
    if n_features < _LOG_SPACED_GRID_THRESHOLD:
        raw = np.linspace(2, n_features, num=length)
    else:
        raw = 2 ** np.linspace(1, np.log2(n_features), num=length)
    return sorted({int(value) for value in np.floor(raw + 1e-9)})


def validate_mtry_grid(mtry_grid: Sequence[int], n_features: int) -> list[int]:
    """Validate explicit `mtry` candidates against the encoded predictor count.

    Args:
        mtry_grid (Sequence[int]): Candidate values.
        n_features (int): Encoded predictor count.

    Returns:
        list[int]: The distinct candidates in ascending order.

    Raises:
        TrainingError: If the grid is empty, or any candidate is below 1 or
            above `n_features`.
    """
    if not mtry_grid:
        raise TrainingError("mtry grid must not be empty.", parameter="mtry")
    invalid = sorted({mtry for mtry in mtry_grid if not 1 <= mtry <= n_features})
    if invalid:
        raise TrainingError(
            f"mtry values {invalid} are outside the valid range 1..{n_features} (available features).",
            parameter="mtry",
        )
    return sorted(set(mtry_grid))


# ---------------------------------------------------------------------------
# Feature encoding
# ---------------------------------------------------------------------------


@dataclass
class FeatureEncoder:
    """Metadata describing how one source column becomes predictor columns.

    Attributes:
        column_name (str): The source column name.
        column_type (ColumnType): The broad type category of the column.
        one_hot (OneHotEncoder | None): Fitted encoder for categorical
            columns, dropping the first level. `None` for numeric columns.
    """

    column_name: str
    column_type: ColumnType
    one_hot: OneHotEncoder | None = field(default=None)

    @property
    def output_names(self) -> list[str]:
        """Names of the predictor columns this source column produces."""
        if self.one_hot is None:
            return [self.column_name]
        return [str(name) for name in self.one_hot.get_feature_names_out([self.column_name])]

    def transform(self, series: pl.Series) -> np.ndarray:
        """Encode one column into a 2-D float64 block.

        Args:
            series (pl.Series): The column to encode.

        Returns:
            np.ndarray: Array of shape `(n_rows, len(output_names))`. Unseen
                categories encode as all zeros, like the dropped first level.
        """
        if self.one_hot is None:
            return _numeric_array(series).reshape(-1, 1)
        raw_column = series.cast(pl.String).fill_null("").to_numpy(allow_copy=True).reshape(-1, 1)
        return np.asarray(self.one_hot.transform(raw_column), dtype=np.float64)


@dataclass
class FeatureEncoding:
    """Fitted encoding from source feature columns to a predictor matrix.

    Attributes:
        encoders (list[FeatureEncoder]): One encoder per source column, in order.
    """

    encoders: list[FeatureEncoder]

    @property
    def feature_columns(self) -> list[str]:
        """Source feature columns, in order."""
        return [encoder.column_name for encoder in self.encoders]

    @property
    def encoded_names(self) -> list[str]:
        """Predictor column names, in matrix order."""
        return [name for encoder in self.encoders for name in encoder.output_names]

    @property
    def groups(self) -> dict[str, list[int]]:
        """Map each source column to its predictor column indices."""
        groups: dict[str, list[int]] = {}
        offset = 0
        for encoder in self.encoders:
            width = len(encoder.output_names)
            groups[encoder.column_name] = list(range(offset, offset + width))
            offset += width
        return groups

    def transform(self, df: pl.DataFrame) -> np.ndarray:
        """Encode a table with the fitted encoders.

        Args:
            df (pl.DataFrame): Table containing every source feature column.

        Returns:
            np.ndarray: Predictor matrix of shape `(n_rows, len(encoded_names))`.

        Raises:
            SchemaMismatchError: If any source feature column is missing.
        """
        missing = [name for name in self.feature_columns if name not in df.columns]
        if missing:
            raise SchemaMismatchError(
                f"Table is missing feature columns required by the fitted forest: {missing}",
                training_columns=self.feature_columns,
                testing_columns=[name for name in df.columns if name in set(self.feature_columns)],
                stage="predict",
            )
        blocks = [encoder.transform(df[encoder.column_name]) for encoder in self.encoders]
        if not blocks:
            return np.empty((df.height, 0), dtype=np.float64)
        return np.hstack(blocks)


def encode_features(df: pl.DataFrame, feature_columns: list[str]) -> tuple[np.ndarray, FeatureEncoding]:
    """Fit an encoding on the training features and return the predictor matrix.

    Numeric and boolean columns become one float64 column each. Categorical
    columns are one-hot encoded with the first (sorted) level dropped, so a
    column with `k` levels contributes `k - 1` predictors.

    Args:
        df (pl.DataFrame): The training table.
        feature_columns (list[str]): Source feature columns, in order.

    Returns:
        tuple[np.ndarray, FeatureEncoding]: `(feature_matrix, encoding)`.

    Raises:
        TrainingError: If no feature columns are given, a column is missing,
            has an unsupported dtype, or contains nulls.
    """
    if not feature_columns:
        raise TrainingError("No feature columns to train on.", parameter="feature_columns")
    missing = [name for name in feature_columns if name not in df.columns]
    if missing:
        raise TrainingError(f"Feature columns not found in training table: {missing}", parameter="feature_columns")

    encoders: list[FeatureEncoder] = []
    for column_name in feature_columns:
        series = df[column_name]
        column_type = classify_column(series.dtype)
        if column_type == "excluded":
            raise TrainingError(
                f"Feature column '{column_name}' has unsupported dtype {series.dtype}.",
                parameter="feature_columns",
            )
        if series.null_count() > 0:
            raise TrainingError(
                f"Feature column '{column_name}' contains {series.null_count()} null values.",
                parameter="feature_columns",
            )
        encoders.append(_fit_encoder(series, column_type))

    encoding = FeatureEncoding(encoders=encoders)
    return encoding.transform(df), encoding


def _fit_encoder(series: pl.Series, column_type: ColumnType) -> FeatureEncoder:
    """Fit the encoder for one validated source column."""
    if column_type != "categorical":
        return FeatureEncoder(column_name=series.name, column_type=column_type)
    one_hot = OneHotEncoder(drop="first", handle_unknown="ignore", sparse_output=False, dtype=np.float64)
    one_hot.fit(series.cast(pl.String).to_numpy(allow_copy=True).reshape(-1, 1))
    return FeatureEncoder(column_name=series.name, column_type=column_type, one_hot=one_hot)


def _numeric_array(series: pl.Series) -> np.ndarray:
    """Convert a numeric or boolean column to float64, nulls becoming NaN."""
    if series.dtype == pl.Boolean:
        series = series.cast(pl.Int8)
    return series.cast(pl.Float64).to_numpy(allow_copy=True).astype(np.float64)
