"""Column filtering: drop metadata and summary-statistic columns from both tables.

The raw sensor exports interleave the per-sample readings with per-window
summary statistics (mostly null) and bookkeeping columns. A single rule set is
applied to the training and testing tables, after which their feature columns
must agree by name and order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Final, Literal

import polars as pl
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from motionforest.exceptions import SchemaMismatchError

__all__ = [
    "DEFAULT_RULES",
    "ColumnRule",
    "align_feature_schemas",
    "feature_columns",
    "filter_columns",
    "matching_columns",
]

type RuleKind = Literal["prefix", "substring", "exact"]


class ColumnRule(BaseModel):
    """A case-sensitive column-name matching rule.

    Attributes:
        kind (RuleKind): `"prefix"` matches names starting with `token`,
            `"substring"` matches names containing it, `"exact"` matches the
            name itself.
        token (str): The string to match against.

    Examples:
        >>> ColumnRule(kind="prefix", token="avg").matches("avg_roll_belt")
        True
        >>> ColumnRule(kind="substring", token="timestamp").matches("raw_timestamp_part_1")
        True
        >>> ColumnRule(kind="exact", token="X").matches("X_axis")
        False
    """

    model_config = ConfigDict(frozen=True)

    kind: RuleKind = Field(description="How the token is matched against a column name.")
    token: str = Field(min_length=1, description="The string to match against.")

    def matches(self, name: str) -> bool:
        """Return whether `name` matches this rule."""
        match self.kind:
            case "prefix":
                return name.startswith(self.token)
            case "substring":
                return self.token in name
            case "exact":
                return name == self.token

    def __str__(self) -> str:
        """Return the rule as `"<kind>:<token>"`."""
        return f"{self.kind}:{self.token}"


_SUMMARY_PREFIXES: Final[tuple[str, ...]] = (
    "var",
    "stddev",
    "avg",
    "max",
    "min",
    "amplitude",
    "kurtosis",
    "skewness",
)
_METADATA_COLUMNS: Final[tuple[str, ...]] = ("X", "new_window", "num_window")

DEFAULT_RULES: Final[tuple[ColumnRule, ...]] = (
    *(ColumnRule(kind="prefix", token=prefix) for prefix in _SUMMARY_PREFIXES),
    ColumnRule(kind="substring", token="timestamp"),
    *(ColumnRule(kind="exact", token=name) for name in _METADATA_COLUMNS),
)


def matching_columns(columns: Iterable[str], rules: Sequence[ColumnRule] = DEFAULT_RULES) -> list[str]:
    """Return the columns that match at least one rule, in input order.

    Args:
        columns (Iterable[str]): Column names to test.
        rules (Sequence[ColumnRule]): Rules to match against.

    Returns:
        list[str]: Matching column names.
    """
    return [name for name in columns if any(rule.matches(name) for rule in rules)]


def filter_columns(df: pl.DataFrame, rules: Sequence[ColumnRule] = DEFAULT_RULES) -> pl.DataFrame:
    """Return a new table keeping only the columns that match no rule.

    Column order is preserved. Filtering an already-filtered table with the
    same rules returns an identical table.

    Args:
        df (pl.DataFrame): The table to filter.
        rules (Sequence[ColumnRule]): Rules naming the columns to drop.

    Returns:
        pl.DataFrame: The filtered table.

    Examples:
        >>> df = pl.DataFrame({"X": [1], "user_name": ["adelmo"], "avg_roll_belt": [None], "roll_belt": [1.4]})
        >>> filter_columns(df).columns
        ['user_name', 'roll_belt']
    """
    dropped = set(matching_columns(df.columns, rules))
    return df.select([name for name in df.columns if name not in dropped])


def feature_columns(df: pl.DataFrame, exclude: Iterable[str]) -> list[str]:
    """Return the table's columns minus `exclude`, in table order."""
    excluded = set(exclude)
    return [name for name in df.columns if name not in excluded]


def align_feature_schemas(
    training: pl.DataFrame,
    testing: pl.DataFrame,
    *,
    label_column: str,
    id_column: str,
    rules: Sequence[ColumnRule] = DEFAULT_RULES,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Filter both tables with the same rules and check their feature schemas agree.

    The rules are evaluated against each table's own column names. If the two
    tables would drop different columns, a warning lists the difference; the
    schema check below then decides whether the run can continue.

    Args:
        training (pl.DataFrame): The labeled training table.
        testing (pl.DataFrame): The unlabeled testing table.
        label_column (str): Label column, excluded from the training features.
        id_column (str): Row-id column, excluded from the testing features.
        rules (Sequence[ColumnRule]): Rules naming the columns to drop.

    Returns:
        tuple[pl.DataFrame, pl.DataFrame]: Filtered `(training, testing)`.

    Raises:
        SchemaMismatchError: If the filtered feature columns differ by name or order.
    """
    dropped_training = matching_columns(training.columns, rules)
    dropped_testing = matching_columns(testing.columns, rules)
    if set(dropped_training) != set(dropped_testing):
        logger.warning(
            "Filter rules drop different columns from the training and testing tables",
            only_training=sorted(set(dropped_training) - set(dropped_testing)),
            only_testing=sorted(set(dropped_testing) - set(dropped_training)),
        )

    filtered_training = filter_columns(training, rules)
    filtered_testing = filter_columns(testing, rules)

    training_features = feature_columns(filtered_training, exclude=[label_column, id_column])
    testing_features = feature_columns(filtered_testing, exclude=[label_column, id_column])
    if training_features != testing_features:
        error = SchemaMismatchError(
            "Filtered training and testing feature columns do not match",
            training_columns=training_features,
            testing_columns=testing_features,
        )
        logger.error("Feature schema mismatch", details=error.format_details())
        raise error

    logger.info(
        "Columns filtered",
        training_columns=f"{training.width} -> {filtered_training.width}",
        testing_columns=f"{testing.width} -> {filtered_testing.width}",
        dropped=len(dropped_training),
    )
    return filtered_training, filtered_testing
