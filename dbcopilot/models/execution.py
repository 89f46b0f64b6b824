"""
Query Execution Models

Values exchanged with the Query Execution Gateway.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class QueryClassification(str, Enum):
    """Read-only vs. mutating statement."""

    READ = "read"
    WRITE = "write"


class ExecutionTrigger(str, Enum):
    """Who asked for an execution."""

    AUTO = "auto"
    USER = "user"


class ExecutionResult(BaseModel):
    """Result of one gateway execution."""

    columns: list[str] = Field(default_factory=list, description="Column/field names")
    rows: list[dict[str, Any]] = Field(default_factory=list, description="Result rows in order")
    row_count: int = Field(default=0, ge=0, description="Number of rows returned")
    affected_rows: int | None = Field(None, description="Rows affected by a mutating statement")
    execution_time_ms: float = Field(default=0.0, ge=0.0, description="Engine time in ms")
    truncated: bool = Field(
        default=False, description="Rows were capped by the gateway's row/byte limits"
    )
    error: str | None = Field(None, description="Engine-reported error, if any")

    def summary(self) -> dict[str, Any]:
        """Row-free summary for prompts when results are not shared with the AI."""
        return {
            "columns": self.columns,
            "row_count": self.row_count,
            "affected_rows": self.affected_rows,
            "truncated": self.truncated,
        }
