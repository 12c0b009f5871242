"""Logging for a motionforest run.

The package logger is disabled on import (see ``motionforest/__init__.py``).
``enable_logging`` turns it on for one run and returns a `RunLog`, which owns
the stderr handler, remembers which pipeline stages were entered, and reports
a failed run with the stage it failed in.

Stage boundaries are logged at the custom STAGE level (25, between INFO and
WARNING), so the default stderr level shows one line per stage.
"""

from __future__ import annotations

import contextlib
import sys
import warnings
from typing import TYPE_CHECKING, Final, Literal

from loguru import logger

if TYPE_CHECKING:
    from types import TracebackType

    from loguru import Message, Record

    from motionforest.exceptions import MotionForestError

PACKAGE_NAME: Final[str] = __name__.split(".")[0]

STAGE_LEVEL: Final[str] = "STAGE"
STAGE_LEVEL_NUMBER: Final[int] = 25


def _register_stage_level() -> None:
    """Register the STAGE level with loguru.

    loguru cannot renumber an existing level, so a STAGE level registered
    elsewhere with another number only produces a UserWarning.
    """
    try:
        existing_level = logger.level(STAGE_LEVEL)
    except ValueError:
        logger.level(STAGE_LEVEL, no=STAGE_LEVEL_NUMBER, icon="▶")
    else:
        if existing_level.no != STAGE_LEVEL_NUMBER:
            msg = (
                f"STAGE level already registered with numeric value {existing_level.no},"
                f" expected {STAGE_LEVEL_NUMBER}"
            )
            warnings.warn(msg, stacklevel=2)


_register_stage_level()

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "STAGE", "WARNING", "ERROR", "CRITICAL"]

type LogFormat = Literal["short", "full"]

_FORMATS: Final[dict[LogFormat, str]] = {
    "short": (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "  # noqa: RUF027 - loguru format string
        "<cyan>{function}</cyan> - "
        "<level>{message}</level> {extra}"
    ),
    "full": (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "  # noqa: RUF027 - loguru format string
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level> {extra}"
    ),
}


class RunLog:
    """stderr logging for one pipeline run.

    Two loguru handlers are attached while the run log is open: the stderr
    handler at the requested level, and a STAGE recorder that keeps every
    stage message regardless of that level. The recorded stages let
    `report_failure` say how far the run got even when stderr shows only
    errors.

    Attributes:
        level (LogLevel): Minimum level written to stderr.
        log_format (LogFormat): stderr line format.
        stages (list[str]): STAGE messages logged so far, in order.

    Examples:
        >>> with enable_logging(level="INFO") as run_log:  # doctest: +SKIP
        ...     run_pipeline(settings)
        >>> run_log.stages  # doctest: +SKIP
        ['Loading tables', 'Filtering columns', ...]
    """

    def __init__(self, *, level: LogLevel, log_format: LogFormat) -> None:
        self.level = level
        self.log_format = log_format
        self.stages: list[str] = []
        self._handler_ids: list[int] = []

    @property
    def is_open(self) -> bool:
        """Whether the run log's handlers are attached."""
        return bool(self._handler_ids)

    @property
    def current_stage(self) -> str | None:
        """The most recent STAGE message, or `None` before the first stage."""
        return self.stages[-1] if self.stages else None

    def open(self) -> RunLog:
        """Enable package records and attach the stderr and stage handlers.

        Returns:
            RunLog: This run log.
        """
        if self.is_open:
            return self
        logger.enable(PACKAGE_NAME)
        self._handler_ids = [
            logger.add(sys.stderr, level=self.level, filter=_is_package_record, format=_FORMATS[self.log_format]),
            logger.add(self._record_stage, level=STAGE_LEVEL, filter=_is_stage_record, format="{message}"),
        ]
        return self

    def close(self) -> None:
        """Detach the handlers and disable package records again. Safe to call twice."""
        for handler_id in self._handler_ids:
            with contextlib.suppress(ValueError):
                logger.remove(handler_id)
        self._handler_ids = []
        logger.disable(PACKAGE_NAME)

    def report_failure(self, error: MotionForestError) -> None:
        """Log a failed run at ERROR with the failing stage and the last stage entered.

        Args:
            error (MotionForestError): The error that stopped the run.
        """
        logger.error("Run failed", stage=error.stage, last_stage=self.current_stage, error=str(error))

    def _record_stage(self, message: Message) -> None:
        self.stages.append(message.record["message"])

    def __enter__(self) -> RunLog:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def enable_logging(
    *,
    level: LogLevel = STAGE_LEVEL,
    log_format: LogFormat = "short",
    exclusive: bool = False,
) -> RunLog:
    """Enable motionforest logging on stderr for one run.

    Args:
        level (LogLevel): Minimum level written to stderr. Defaults to "STAGE",
            one line per pipeline stage. "INFO" adds per-candidate
            cross-validation scores and "DEBUG" per-fold detail.
        log_format (LogFormat): "short" (default) shows the function name;
            "full" adds module:function:line.
        exclusive (bool): Remove every other loguru handler first, including
            loguru's default stderr handler. The command-line entry point owns
            the process and passes True; library callers keep their handlers.

    Returns:
        RunLog: The opened run log; close it or use it as a context manager.
    """
    if exclusive:
        logger.remove()
    return RunLog(level=level, log_format=log_format).open()


def _is_package_record(record: Record) -> bool:
    """Pass only records emitted from the motionforest package."""
    name = record["name"]
    return name is not None and name.startswith(PACKAGE_NAME)


def _is_stage_record(record: Record) -> bool:
    """Pass only STAGE records emitted from the motionforest package."""
    return record["level"].name == STAGE_LEVEL and _is_package_record(record)
