"""Shared fixtures: a small synthetic replica of the weight-lifting sensor export.

The replica has the same 160-column layout as the real tables: a blank-header
row index, user and timestamp bookkeeping, four sensors with 13 raw signals
and 25 mostly-null window summaries each, and the label (training) or problem
id (testing) as the last column. Raw signals are shifted per class so a
small forest separates the classes.
"""

from __future__ import annotations

import csv
from collections.abc import Generator
from pathlib import Path

import numpy as np
import polars as pl
import pytest
from loguru import logger

from motionforest.column_filter import align_feature_schemas
from motionforest.forest.fitting import FittedForest, train_forest
from motionforest.loader import load_tables
from motionforest.logging import PACKAGE_NAME
from motionforest.settings import PipelineSettings

SENSORS: tuple[str, ...] = ("belt", "arm", "dumbbell", "forearm")
CLASSES: tuple[str, ...] = ("A", "B", "C", "D", "E")
USERS: tuple[str, ...] = ("adelmo", "carlitos", "charles", "eurico", "jeremy", "pedro")
ANGLES: tuple[str, ...] = ("roll", "pitch", "yaw")

TRAINING_ROWS_PER_CLASS = 24
TESTING_ROWS = 20


def sensor_columns(sensor: str) -> tuple[list[str], list[str]]:
    """Return `(raw_columns, summary_columns)` for one sensor, in export order.

    Args:
        sensor (str): Sensor location, e.g. "belt".

    Returns:
        tuple[list[str], list[str]]: 13 raw signal names and 25 summary names.
    """
    raw_head = [f"{angle}_{sensor}" for angle in ANGLES] + [f"total_accel_{sensor}"]
    summary = [
        f"{stat}_{angle}_{sensor}" for stat in ("kurtosis", "skewness", "max", "min", "amplitude") for angle in ANGLES
    ]
    summary.append(f"var_total_accel_{sensor}")
    summary += [f"{stat}_{angle}_{sensor}" for angle in ANGLES for stat in ("avg", "stddev", "var")]
    raw_tail = [f"{kind}_{sensor}_{axis}" for kind in ("gyros", "accel", "magnet") for axis in "xyz"]
    return raw_head + raw_tail, summary


RAW_SIGNALS: list[str] = [name for sensor in SENSORS for name in sensor_columns(sensor)[0]]
SUMMARY_COLUMNS: list[str] = [name for sensor in SENSORS for name in sensor_columns(sensor)[1]]
METADATA_COLUMNS: list[str] = [
    "user_name",
    "raw_timestamp_part_1",
    "raw_timestamp_part_2",
    "cvtd_timestamp",
    "new_window",
    "num_window",
]


def export_header(last_column: str) -> list[str]:
    """Return the 160-name header of an export, the first cell blank."""
    columns = ["", *METADATA_COLUMNS]
    for sensor in SENSORS:
        raw, summary = sensor_columns(sensor)
        columns += raw[:4] + summary + raw[4:]
    columns.append(last_column)
    return columns


def make_export_rows(labels: list[str], *, seed: int, with_summaries: bool, last_values: list[str]) -> list[list[str]]:
    """Build string rows matching `export_header`.

    Args:
        labels (list[str]): Class of each row; drives the raw signal values.
        seed (int): Seed for the noise.
        with_summaries (bool): Whether window-boundary rows carry summary values.
        last_values (list[str]): Values of the last column (label or problem id).

    Returns:
        list[list[str]]: One list of cell strings per row.
    """
    rng = np.random.default_rng(seed)
    header = export_header("last")
    rows: list[list[str]] = []
    for index, (label, last_value) in enumerate(zip(labels, last_values, strict=True)):
        class_index = CLASSES.index(label)
        user_index = index % len(USERS)
        new_window = "yes" if with_summaries and index % 8 == 7 else "no"
        cells = {
            "": str(index + 1),
            "user_name": USERS[user_index],
            "raw_timestamp_part_1": str(1322489729 + index),
            "raw_timestamp_part_2": str(34000 + 17 * index),
            "cvtd_timestamp": f"28/11/2011 14:{index % 60:02d}",
            "new_window": new_window,
            "num_window": str(10 + index // 8),
        }
        for position, name in enumerate(RAW_SIGNALS):
            value = class_index * (position % 5 + 1) * 1.5 + user_index * 0.2 + rng.normal(0.0, 0.4)
            cells[name] = f"{value:.4f}"
        for position, name in enumerate(SUMMARY_COLUMNS):
            if new_window != "yes":
                cells[name] = "NA"
            elif name.startswith("kurtosis") and position % 3 == 2:
                cells[name] = "#DIV/0!"
            else:
                cells[name] = f"{rng.normal():.5f}"
        cells["last"] = last_value
        rows.append([cells[name] for name in header])
    return rows


def write_export(path: Path, header: list[str], rows: list[list[str]]) -> Path:
    """Write an export as comma-separated text, quoting only where needed."""
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def training_labels() -> list[str]:
    """Return the training labels: each class repeated, interleaved."""
    return [CLASSES[index % len(CLASSES)] for index in range(TRAINING_ROWS_PER_CLASS * len(CLASSES))]


def testing_labels() -> list[str]:
    """Return the hidden classes of the 20 testing rows."""
    return [CLASSES[index % len(CLASSES)] for index in range(TESTING_ROWS)]


@pytest.fixture(scope="session")
def export_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Directory holding the synthetic training and testing exports.

    Returns:
        Path: Directory containing `pml-training.csv` and `pml-testing.csv`.
    """
    directory = tmp_path_factory.mktemp("exports")
    labels = training_labels()
    write_export(
        directory / "pml-training.csv",
        export_header("classe"),
        make_export_rows(labels, seed=11, with_summaries=True, last_values=labels),
    )
    write_export(
        directory / "pml-testing.csv",
        export_header("problem_id"),
        make_export_rows(
            testing_labels(),
            seed=23,
            with_summaries=False,
            last_values=[str(problem_id) for problem_id in range(1, TESTING_ROWS + 1)],
        ),
    )
    return directory


@pytest.fixture(scope="session")
def training_csv(export_dir: Path) -> Path:
    """Path of the synthetic training export."""
    return export_dir / "pml-training.csv"


@pytest.fixture(scope="session")
def testing_csv(export_dir: Path) -> Path:
    """Path of the synthetic testing export."""
    return export_dir / "pml-testing.csv"


@pytest.fixture(scope="session")
def filtered_tables(training_csv: Path, testing_csv: Path) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Training and testing tables after loading and column filtering.

    Returns:
        tuple[pl.DataFrame, pl.DataFrame]: Filtered `(training, testing)`.
    """
    training, testing = load_tables(training_csv, testing_csv)
    return align_feature_schemas(training, testing, label_column="classe", id_column="problem_id")


@pytest.fixture(scope="session")
def fitted_forest(filtered_tables: tuple[pl.DataFrame, pl.DataFrame]) -> FittedForest:
    """A small forest trained once on the filtered synthetic training table.

    Returns:
        FittedForest: Forest trained with 12 trees, 3 folds, and seed 1000.
    """
    training, _ = filtered_tables
    return train_forest(
        training,
        label_column="classe",
        seed=1000,
        n_trees=12,
        n_folds=3,
        oob_checkpoints=[1, 5, 10],
        n_jobs=1,
    )


@pytest.fixture
def pipeline_settings(training_csv: Path, testing_csv: Path) -> PipelineSettings:
    """Settings for a fast end-to-end run over the synthetic exports.

    Returns:
        PipelineSettings: Settings that ignore the environment and any `.env` file.
    """
    return PipelineSettings(
        _env_file=None,
        training_path=training_csv,
        testing_path=testing_csv,
        n_trees=12,
        n_folds=3,
        oob_checkpoints=[1, 5, 10],
        n_jobs=1,
    )


@pytest.fixture
def enabled_package_logger() -> Generator[None]:
    """Enable motionforest records for the duration of a test.

    Yields:
        None: Nothing; used only for setup/teardown side effects.
    """
    logger.enable(PACKAGE_NAME)
    yield
    logger.disable(PACKAGE_NAME)
