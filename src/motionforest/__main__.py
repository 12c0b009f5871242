"""Command-line entry point: ``python -m motionforest`` or ``motionforest``.

Settings are read from ``MOTIONFOREST_*`` environment variables, an optional
``.env`` file, and command-line flags (e.g. ``--n_trees 50 --seed 7``).
"""

from __future__ import annotations

import sys

from motionforest.exceptions import MotionForestError
from motionforest.logging import enable_logging
from motionforest.pipeline import run_pipeline
from motionforest.report import render_report
from motionforest.settings import PipelineSettings


def main(argv: list[str] | None = None) -> int:
    """Run the pipeline and print the markdown report.

    Args:
        argv (list[str] | None): Command-line arguments. Defaults to
            ``sys.argv[1:]``.

    Returns:
        int: Process exit status; 1 when a stage fails.
    """
    settings = PipelineSettings(_cli_parse_args=argv if argv is not None else True)
    with enable_logging(level=settings.log_level, log_format=settings.log_format, exclusive=True) as run_log:
        try:
            result = run_pipeline(settings)
        except MotionForestError as exc:
            run_log.report_failure(exc)
            return 1
    print(render_report(result, top_n=settings.top_n))
    return 0


if __name__ == "__main__":
    sys.exit(main())
