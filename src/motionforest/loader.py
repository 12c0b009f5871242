"""Read the training and testing tables from delimited text files."""

from __future__ import annotations

import csv
from collections.abc import Sequence
from pathlib import Path
from typing import Final

import polars as pl
from loguru import logger

from motionforest.exceptions import DataLoadError

__all__ = ["DEFAULT_NULL_VALUES", "load_table", "load_tables"]

# Missing-value spellings found in the raw sensor exports.
DEFAULT_NULL_VALUES: Final[tuple[str, ...]] = ("NA", "#DIV/0!", "")
DEFAULT_BLANK_HEADER_NAME: Final[str] = "X"


def load_table(
    path: Path | str,
    *,
    null_values: Sequence[str] = DEFAULT_NULL_VALUES,
    blank_header_name: str = DEFAULT_BLANK_HEADER_NAME,
    separator: str = ",",
) -> pl.DataFrame:
    """Load one delimited text table, preserving column names and row order.

    The file is first scanned row by row so that the header and every row's
    field count can be validated and a blank leading header cell (the unnamed
    row index that data-frame exporters write) can be named. The schema is
    inferred from the whole file so that sparse summary-statistic columns do
    not trip dtype inference.

    Args:
        path (Path | str): File to read.
        null_values (Sequence[str]): Cell values read as null.
        blank_header_name (str): Name given to a blank header cell.
        separator (str): Field delimiter.

    Returns:
        pl.DataFrame: The table, numeric columns parsed as numbers and text
            columns kept as strings.

    Raises:
        DataLoadError: If the file is missing, empty, has a blank/duplicate
            header, or has rows whose field count disagrees with the header.

    Examples:
        >>> df = load_table("pml-testing.csv")  # doctest: +SKIP
        >>> df.shape  # doctest: +SKIP
        (20, 160)
    """
    path = Path(path)
    column_names = _read_checked_header(path, blank_header_name=blank_header_name, separator=separator)

    try:
        df = pl.read_csv(
            path,
            separator=separator,
            has_header=True,
            new_columns=column_names,
            null_values=list(null_values),
            infer_schema_length=None,
        )
    except (pl.exceptions.PolarsError, OSError, UnicodeDecodeError) as exc:
        raise DataLoadError(f"Could not parse '{path}': {exc}", path=path) from exc

    logger.debug("Table loaded", path=str(path), rows=df.height, columns=df.width)
    return df


def load_tables(
    training_path: Path | str,
    testing_path: Path | str,
    *,
    null_values: Sequence[str] = DEFAULT_NULL_VALUES,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Load the training and testing tables.

    Args:
        training_path (Path | str): Labeled training table.
        testing_path (Path | str): Unlabeled testing table.
        null_values (Sequence[str]): Cell values read as null in both tables.

    Returns:
        tuple[pl.DataFrame, pl.DataFrame]: `(training, testing)`.
    """
    training = load_table(training_path, null_values=null_values)
    testing = load_table(testing_path, null_values=null_values)
    logger.info("Tables loaded", training_shape=training.shape, testing_shape=testing.shape)
    return training, testing


def _read_checked_header(path: Path, *, blank_header_name: str, separator: str) -> list[str]:
    """Read and validate the header row, then check every row's field count against it.

    Blank lines are skipped, as the CSV parser skips them.

    Args:
        path (Path): File to read.
        blank_header_name (str): Name given to a blank header cell.
        separator (str): Field delimiter.

    Returns:
        list[str]: Column names in file order.

    Raises:
        DataLoadError: If the file is missing or empty, the header has more
            than one blank cell or duplicate names, or a row has more or fewer
            fields than the header. Row errors name the 1-based line number.
    """
    if not path.is_file():
        raise DataLoadError(f"Input file not found: '{path}'", path=path)

    try:
        with path.open(newline="", encoding="utf-8") as handle:
            reader = csv.reader(handle, delimiter=separator)
            header = next(reader, None)
            if not header:
                raise DataLoadError(f"'{path}' is empty or has no header row", path=path)
            for row in reader:
                if row and len(row) != len(header):
                    raise DataLoadError(
                        f"'{path}' line {reader.line_num} has {len(row)} fields but the header has {len(header)}",
                        path=path,
                    )
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise DataLoadError(f"Could not read '{path}': {exc}", path=path) from exc

    names = [name.strip() for name in header]
    blank_positions = [position for position, name in enumerate(names) if not name]
    if len(blank_positions) > 1:
        raise DataLoadError(f"'{path}' has {len(blank_positions)} blank header cells at {blank_positions}", path=path)
    if blank_positions:
        names[blank_positions[0]] = blank_header_name

    seen: set[str] = set()
    duplicates: list[str] = []
    for name in names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise DataLoadError(f"'{path}' has duplicate column names: {duplicates}", path=path)

    return names
