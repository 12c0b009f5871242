"""Markdown rendering of a pipeline run."""

from __future__ import annotations

import polars as pl

from motionforest.forest.models import PipelineResult, TrainingReport

__all__ = ["render_report", "to_markdown_table"]

_FLOAT_PRECISION = 4


def to_markdown_table(df: pl.DataFrame, *, num_rows: int | None = None) -> str:
    """Convert a Polars DataFrame to a markdown table string.

    This function temporarily modifies global ``pl.Config`` state to render
    the table. It is not thread-safe: concurrent calls from different threads
    may observe each other's configuration.

    Args:
        df (pl.DataFrame): The DataFrame to convert.
        num_rows (int | None): Maximum number of rows to display. Defaults to
            all rows.

    Returns:
        str: Markdown-formatted table string.

    Raises:
        ValueError: If `num_rows` is less than 1.

    Examples:
        >>> df = pl.DataFrame({"a": [1, 2], "b": [3, 4]})
        >>> print(to_markdown_table(df))
        | a | b |
        |---|---|
        | 1 | 3 |
        | 2 | 4 |
    """
    if num_rows is not None and num_rows < 1:
        raise ValueError(f"num_rows must be at least 1, got {num_rows}")
    rows = df.height if num_rows is None else min(num_rows, df.height)

    with pl.Config(
        tbl_formatting="MARKDOWN",
        tbl_hide_column_data_types=True,
        tbl_hide_column_names=False,
        tbl_hide_dataframe_shape=True,
        tbl_rows=max(rows, 1),
        tbl_cols=df.width,
        float_precision=_FLOAT_PRECISION,
    ):
        return str(df.head(rows))


def render_report(result: PipelineResult, *, top_n: int = 10) -> str:
    """Render a full pipeline run as a markdown document.

    Sections: data summary, model summary, cross-validation resampling table,
    OOB and cross-validated confusion matrices, OOB error by tree count, top
    variable importance, and test-set predictions.

    Args:
        result (PipelineResult): The run to render.
        top_n (int): Number of variable-importance rows to show.

    Returns:
        str: The markdown report.
    """
    report = result.report
    sections = [
        "# Random forest report",
        _data_section(result),
        _model_section(report),
        "## Resampling results\n\n" + to_markdown_table(_resampling_frame(report)),
        "## OOB confusion matrix (final model)\n\n" + to_markdown_table(report.oob_confusion.to_frame()),
        (
            f"## Cross-validated confusion matrix (mtry = {report.selected_mtry})\n\n"
            + to_markdown_table(report.cv_confusion.to_frame())
        ),
        "## OOB error by number of trees\n\n" + to_markdown_table(_oob_curve_frame(report)),
        f"## Variable importance (top {top_n})\n\n" + to_markdown_table(_importance_frame(report), num_rows=top_n),
        "## Test set predictions\n\n" + to_markdown_table(_predictions_frame(result)),
    ]
    return "\n\n".join(sections) + "\n"


def _data_section(result: PipelineResult) -> str:
    training = f"{_shape(result.training_shape)} -> {_shape(result.filtered_training_shape)}"
    testing = f"{_shape(result.testing_shape)} -> {_shape(result.filtered_testing_shape)}"
    lines = [
        "## Data",
        "",
        f"- Training table: {training} after filtering",
        f"- Testing table: {testing} after filtering",
    ]
    return "\n".join(lines)


def _model_section(report: TrainingReport) -> str:
    oob_error = 1.0 - report.oob_confusion.accuracy
    lines = [
        "## Model",
        "",
        "- Type of random forest: classification",
        f"- Samples: {report.sample_count}",
        f"- Predictors: {len(report.feature_columns)} ({report.encoded_feature_count} after encoding)",
        f"- Classes: {', '.join(report.classes)}",
        f"- Resampling: {report.resampling_method}",
        f"- Number of trees: {report.n_trees}",
        f"- No. of variables tried at each split: {report.selected_mtry}",
        f"- OOB estimate of error rate: {oob_error:.2%}",
        f"- Seed: {report.seed}",
    ]
    return "\n".join(lines)


def _resampling_frame(report: TrainingReport) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "mtry": [result.mtry for result in report.resampling],
            "Accuracy": [result.accuracy for result in report.resampling],
            "Kappa": [result.kappa for result in report.resampling],
            "AccuracySD": [result.accuracy_sd for result in report.resampling],
            "KappaSD": [result.kappa_sd for result in report.resampling],
            "selected": [result.mtry == report.selected_mtry for result in report.resampling],
        }
    )


def _oob_curve_frame(report: TrainingReport) -> pl.DataFrame:
    columns: dict[str, list[int] | list[float]] = {
        "trees": [checkpoint.n_trees for checkpoint in report.oob_curve],
        "OOB": [checkpoint.error_rate for checkpoint in report.oob_curve],
    }
    for label in report.classes:
        columns[label] = [checkpoint.class_error_rates[label] for checkpoint in report.oob_curve]
    return pl.DataFrame(columns)


def _importance_frame(report: TrainingReport) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "feature": [item.feature for item in report.importance],
            "MeanDecreaseAccuracy": [item.mean_decrease_accuracy for item in report.importance],
            "SD": [item.std for item in report.importance],
        },
        schema={"feature": pl.String, "MeanDecreaseAccuracy": pl.Float64, "SD": pl.Float64},
    )


def _predictions_frame(result: PipelineResult) -> pl.DataFrame:
    classes = result.report.classes
    columns: dict[str, list[str] | list[float]] = {
        "row": [str(prediction.row_id) for prediction in result.predictions],
        "prediction": [prediction.predicted_class for prediction in result.predictions],
    }
    for label in classes:
        columns[label] = [prediction.probabilities.get(label, 0.0) for prediction in result.predictions]
    return pl.DataFrame(columns)


def _shape(shape: tuple[int, int]) -> str:
    return f"{shape[0]} x {shape[1]}"
