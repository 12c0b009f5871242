"""Run configuration for the motionforest pipeline."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from motionforest.forest.fitting import DEFAULT_OOB_CHECKPOINTS
from motionforest.logging import LogFormat, LogLevel


class PipelineSettings(BaseSettings):
    """Settings for one training-and-prediction run.

    Values come from (highest priority first) init arguments, command-line
    overrides when enabled, `MOTIONFOREST_*` environment variables, a `.env`
    file, and the defaults below.

    Attributes:
        training_path (Path): Labeled training table.
        testing_path (Path): Unlabeled 20-row holdout table.
        label_column (str): Class label column, present only in training.
        id_column (str): Row-id column, present only in testing.
        seed (int): Seed for fold assignment, tree building, and permutations.
        n_trees (int): Trees per forest, in both CV fits and the final fit.
        n_folds (int): Cross-validation fold count.
        mtry_grid (list[int] | None): Candidate `mtry` values. `None` derives
            `grid_length` evenly spaced values from the encoded feature count.
        grid_length (int): Number of auto-derived `mtry` candidates.
        oob_checkpoints (list[int]): Tree counts at which OOB error is recorded.
        importance_repeats (int): Permutations per feature per fold.
        top_n (int): Rows shown in the variable-importance table.
        n_jobs (int): Parallel workers for tree building (-1 uses all cores).
        cache_dir (Path | None): Directory for cached tables and the fitted
            forest. `None` disables caching.
        log_level (LogLevel): Minimum level for the stderr log handler.
        log_format (LogFormat): stderr line format, "short" or "full".
    """

    model_config = SettingsConfigDict(
        env_prefix="MOTIONFOREST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    training_path: Path = Field(default=Path("pml-training.csv"), description="Labeled training table.")
    testing_path: Path = Field(default=Path("pml-testing.csv"), description="Unlabeled holdout table.")
    label_column: str = Field(default="classe", min_length=1, description="Class label column.")
    id_column: str = Field(default="problem_id", min_length=1, description="Row-id column of the testing table.")
    seed: int = Field(default=1000, ge=0, description="Seed for all randomness in the run.")
    n_trees: PositiveInt = Field(default=100, description="Trees per forest.")
    n_folds: int = Field(default=5, ge=2, description="Cross-validation fold count.")
    mtry_grid: list[PositiveInt] | None = Field(default=None, description="Candidate mtry values; None derives them.")
    grid_length: PositiveInt = Field(default=3, description="Number of auto-derived mtry candidates.")
    oob_checkpoints: list[PositiveInt] = Field(
        default_factory=lambda: list(DEFAULT_OOB_CHECKPOINTS),
        description="Tree counts at which OOB error is recorded.",
    )
    importance_repeats: PositiveInt = Field(default=1, description="Permutations per feature per fold.")
    top_n: PositiveInt = Field(default=10, description="Rows in the variable-importance table.")
    n_jobs: int = Field(default=-1, description="Parallel workers for tree building.")
    cache_dir: Path | None = Field(default=None, description="Artifact cache directory; None disables caching.")
    log_level: LogLevel = Field(default="STAGE", description="Minimum stderr log level.")
    log_format: LogFormat = Field(default="short", description="stderr line format.")

    @field_validator("mtry_grid", mode="after")
    @classmethod
    def _deduplicate_mtry_grid(cls, value: list[int] | None) -> list[int] | None:
        """Sort the candidate grid and drop duplicates.

        Raises:
            ValueError: If an explicit grid is empty.
        """
        if value is None:
            return None
        if not value:
            raise ValueError("mtry_grid must not be empty; pass None to derive it")
        return sorted(set(value))

    @field_validator("oob_checkpoints", mode="after")
    @classmethod
    def _sort_checkpoints(cls, value: list[int]) -> list[int]:
        """Sort checkpoints ascending and drop duplicates."""
        return sorted(set(value))

    @field_validator("n_jobs", mode="after")
    @classmethod
    def _validate_n_jobs(cls, value: int) -> int:
        """Reject `n_jobs=0`, which joblib does not accept.

        Raises:
            ValueError: If `value` is zero.
        """
        if value == 0:
            raise ValueError("n_jobs must be a positive worker count or negative (-1 for all cores), not 0")
        return value

    def training_fingerprint(self) -> dict[str, object]:
        """Return the settings that determine the fitted forest, for cache keys."""
        return self.model_dump(
            mode="json",
            include={
                "label_column",
                "id_column",
                "seed",
                "n_trees",
                "n_folds",
                "mtry_grid",
                "grid_length",
                "oob_checkpoints",
                "importance_repeats",
            },
        )
