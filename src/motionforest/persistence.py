"""On-disk artifact cache for filtered tables and the fitted forest.

A cache directory holds:

- ``manifest.json``: cache version, input fingerprint, and table metadata
- ``training.parquet`` / ``testing.parquet``: the filtered tables
- ``forest.joblib``: the pickled `FittedForest`

The fingerprint covers the input file contents and every setting that
changes the fitted forest. Restoring validates the fingerprint and checks
each table against the manifest; any mismatch means the cache is stale, in
which case it is ignored and the caller rebuilds it.
"""

from __future__ import annotations

import hashlib
import json
import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import joblib
import polars as pl
from loguru import logger
from pydantic import BaseModel, Field

from motionforest.forest.fitting import FittedForest
from motionforest.settings import PipelineSettings

__all__ = [
    "CACHE_VERSION",
    "CacheManifest",
    "CachedRun",
    "compute_fingerprint",
    "restore_cached_run",
    "save_cached_run",
]

CACHE_VERSION: Final[int] = 1

_MANIFEST_FILE: Final[str] = "manifest.json"
_TRAINING_FILE: Final[str] = "training.parquet"
_TESTING_FILE: Final[str] = "testing.parquet"
_FOREST_FILE: Final[str] = "forest.joblib"
_HASH_CHUNK_SIZE: Final[int] = 1 << 20


class TableMetadata(BaseModel):
    """Shape and column names of a cached table, plus the raw table's shape."""

    raw_shape: tuple[int, int] = Field(description="Shape before column filtering.")
    num_rows: int = Field(ge=0)
    column_names: list[str]


class CacheManifest(BaseModel):
    """Describes the contents of a cache directory.

    Attributes:
        version (int): Cache layout version.
        fingerprint (str): Hex digest of the inputs and training settings.
        training (TableMetadata): Metadata of the cached training table.
        testing (TableMetadata): Metadata of the cached testing table.
    """

    version: int = CACHE_VERSION
    fingerprint: str = Field(min_length=1)
    training: TableMetadata
    testing: TableMetadata


@dataclass(frozen=True)
class CachedRun:
    """Artifacts restored from a valid cache."""

    training: pl.DataFrame
    testing: pl.DataFrame
    training_shape: tuple[int, int]
    testing_shape: tuple[int, int]
    fitted: FittedForest


def compute_fingerprint(settings: PipelineSettings) -> str:
    """Return a SHA-256 hex digest of both input files and the training settings.

    Args:
        settings (PipelineSettings): Run settings.

    Returns:
        str: The fingerprint.

    Raises:
        OSError: If an input file cannot be read.
    """
    digest = hashlib.sha256()
    digest.update(json.dumps(settings.training_fingerprint(), sort_keys=True).encode())
    for path in (settings.training_path, settings.testing_path):
        with path.open("rb") as handle:
            while chunk := handle.read(_HASH_CHUNK_SIZE):
                digest.update(chunk)
    return digest.hexdigest()


def save_cached_run(
    cache_dir: Path,
    *,
    fingerprint: str,
    training: pl.DataFrame,
    testing: pl.DataFrame,
    training_shape: tuple[int, int],
    testing_shape: tuple[int, int],
    fitted: FittedForest,
) -> CacheManifest:
    """Write the filtered tables, fitted forest, and manifest to `cache_dir`.

    The manifest is written last, so an interrupted save never looks valid.

    Args:
        cache_dir (Path): Cache directory; created if missing.
        fingerprint (str): Fingerprint from `compute_fingerprint`.
        training (pl.DataFrame): Filtered training table.
        testing (pl.DataFrame): Filtered testing table.
        training_shape (tuple[int, int]): Raw training table shape.
        testing_shape (tuple[int, int]): Raw testing table shape.
        fitted (FittedForest): The trained forest.

    Returns:
        CacheManifest: The manifest written.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    (cache_dir / _MANIFEST_FILE).unlink(missing_ok=True)

    training.write_parquet(cache_dir / _TRAINING_FILE)
    testing.write_parquet(cache_dir / _TESTING_FILE)
    joblib.dump(fitted, cache_dir / _FOREST_FILE)

    manifest = CacheManifest(
        fingerprint=fingerprint,
        training=TableMetadata(raw_shape=training_shape, num_rows=training.height, column_names=training.columns),
        testing=TableMetadata(raw_shape=testing_shape, num_rows=testing.height, column_names=testing.columns),
    )
    (cache_dir / _MANIFEST_FILE).write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
    logger.info("Cache written", cache_dir=str(cache_dir))
    return manifest


def restore_cached_run(cache_dir: Path, *, fingerprint: str) -> CachedRun | None:
    """Restore a run from `cache_dir` if it is complete and matches `fingerprint`.

    Args:
        cache_dir (Path): Cache directory.
        fingerprint (str): Fingerprint of the current inputs and settings.

    Returns:
        CachedRun | None: The restored artifacts, or `None` when the cache is
            missing, unreadable, or stale.
    """
    manifest_path = cache_dir / _MANIFEST_FILE
    if not manifest_path.is_file():
        logger.debug("No cache manifest", cache_dir=str(cache_dir))
        return None

    try:
        manifest = CacheManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        if manifest.version != CACHE_VERSION or manifest.fingerprint != fingerprint:
            logger.info("Cache is stale; rebuilding", cache_dir=str(cache_dir))
            return None
        training = pl.read_parquet(cache_dir / _TRAINING_FILE)
        testing = pl.read_parquet(cache_dir / _TESTING_FILE)
        _validate_table_matches_metadata("training", training, manifest.training)
        _validate_table_matches_metadata("testing", testing, manifest.testing)
        fitted = joblib.load(cache_dir / _FOREST_FILE)
        if not isinstance(fitted, FittedForest):
            raise ValueError(f"Cached forest has unexpected type {type(fitted).__name__}")
        missing = [name for name in fitted.encoding.feature_columns if name not in training.columns]
        if missing:
            raise ValueError(f"Cached forest uses columns missing from the cached table: {missing}")
    except (OSError, ValueError, EOFError, pickle.UnpicklingError, pl.exceptions.PolarsError) as exc:
        logger.warning("Ignoring unusable cache", cache_dir=str(cache_dir), reason=str(exc))
        return None

    logger.info("Cache restored", cache_dir=str(cache_dir))
    return CachedRun(
        training=training,
        testing=testing,
        training_shape=manifest.training.raw_shape,
        testing_shape=manifest.testing.raw_shape,
        fitted=fitted,
    )


def _validate_table_matches_metadata(name: str, df: pl.DataFrame, metadata: TableMetadata) -> None:
    """Validate that a cached table matches its manifest entry.

    Raises:
        ValueError: If the row count or column names differ.
    """
    if df.height != metadata.num_rows:
        raise ValueError(f"Cached {name} table has {df.height} rows, manifest says {metadata.num_rows}")
    if df.columns != metadata.column_names:
        raise ValueError(f"Cached {name} table columns differ from the manifest")
