"""Visualization inference helpers for API responses."""

from __future__ import annotations

from typing import Any

from dbcopilot.models.execution import ExecutionResult

VISUALIZATION_TYPES = frozenset({"none", "table", "bar_chart", "line_chart", "scatter"})


def infer_visualization(
    result: ExecutionResult, requested: str | None = None
) -> tuple[str, dict[str, str]]:
    """Pick a chart type for a result, honouring a supported requested type."""
    deterministic = _infer_visualization_hint(_columnar(result))
    if requested and requested in VISUALIZATION_TYPES:
        final, reason = requested, "requested"
    else:
        final, reason = deterministic, "result_shape"
    return (
        final,
        {
            "requested": requested or "auto",
            "deterministic": deterministic,
            "final": final,
            "resolution_reason": reason,
        },
    )


def _columnar(result: ExecutionResult) -> dict[str, list[Any]]:
    columns = result.columns or (list(result.rows[0].keys()) if result.rows else [])
    return {column: [row.get(column) for row in result.rows] for column in columns}


def _infer_visualization_hint(data: dict[str, list[Any]] | None) -> str:
    if not data:
        return "none"

    column_names = list(data.keys())
    row_count = max((len(values) for values in data.values()), default=0)
    if row_count <= 0:
        return "none"

    if len(column_names) == 1:
        return "table"

    numeric_columns = [
        column for column in column_names if _column_has_numeric_value(data.get(column))
    ]
    date_like_columns = [column for column in column_names if _is_date_like_column(column)]
    categorical_columns = [column for column in column_names if column not in numeric_columns]

    if len(numeric_columns) >= 2 and row_count <= 400:
        return "scatter"
    if numeric_columns and date_like_columns:
        return "line_chart"
    if numeric_columns and categorical_columns and row_count <= 40:
        return "bar_chart"
    return "table"


def _column_has_numeric_value(values: list[Any] | None) -> bool:
    if not values:
        return False
    return any(_to_float(value) is not None for value in values)


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return float(raw.replace(",", ""))
        except ValueError:
            return None
    return None


def _is_date_like_column(column_name: str) -> bool:
    tokens = [token for token in column_name.lower().replace("-", "_").split("_") if token]
    date_markers = {"date", "time", "timestamp", "datetime", "day", "week", "month", "year"}
    return any(token in date_markers for token in tokens)
