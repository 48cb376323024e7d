# KPR Bot - Engine Models
# ========================
"""
Common dataclasses for the query engine.

A `QueryPlan` is what the planner produces; a `SanitizedPlan` is what the
privacy sanitizer hands to the executor. The executor only accepts the
latter, so no plan reaches the store without passing the sanitizer.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

SELECT = "SELECT"
REDACTED = "[redacted]"
NO_RESULTS = "Tidak ada hasil."


@dataclass(frozen=True)
class Filter:
    """An equality filter: column = value."""
    column: str
    value: str
    op: str = "="

    def to_dict(self) -> Dict[str, str]:
        return {"column": self.column, "op": self.op, "value": self.value}


@dataclass
class QueryPlan:
    """Structured or raw-SQL description of what to read."""
    table: str = ""
    operation: str = SELECT
    columns: List[str] = field(default_factory=list)
    filters: List[Filter] = field(default_factory=list)
    limit: int = 0
    raw_sql: Optional[str] = None
    raw_args: List[str] = field(default_factory=list)

    @property
    def is_raw(self) -> bool:
        return bool(self.raw_sql and self.raw_sql.strip())

    def with_filter(self, column: str, value: str) -> "QueryPlan":
        """Return a copy filtered on `column = value`; other filters on that column are dropped."""
        column = column.lower()
        kept = [f for f in self.filters if f.column.strip().lower() != column]
        return replace(self, filters=[*kept, Filter(column=column, value=value)])

    def with_columns(self, columns: List[str]) -> "QueryPlan":
        merged = list(self.columns)
        for col in columns:
            if col not in merged:
                merged.append(col)
        return replace(self, columns=merged)

    def as_structured(self) -> "QueryPlan":
        """Drop the raw SQL payload, keeping the advisory structured fields."""
        return replace(self, raw_sql=None, raw_args=[])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "table": self.table,
            "columns": list(self.columns),
            "filters": [f.to_dict() for f in self.filters],
            "limit": self.limit,
            "sql": self.raw_sql,
            "args": list(self.raw_args),
        }


@dataclass(frozen=True)
class SanitizedPlan:
    """A plan that has cleared the privacy sanitizer. Immutable."""
    table: str
    columns: Tuple[str, ...]
    filters: Tuple[Filter, ...]
    limit: int
    sensitive: bool
    relaxed: bool = False
    raw_sql: Optional[str] = None
    raw_args: Tuple[str, ...] = ()

    @property
    def is_raw(self) -> bool:
        return self.raw_sql is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "columns": list(self.columns),
            "filters": [f.to_dict() for f in self.filters],
            "limit": self.limit,
            "sensitive": self.sensitive,
            "raw": self.is_raw,
        }


@dataclass(frozen=True)
class BuiltQuery:
    """Rendered statement plus positional arguments."""
    sql: str
    args: Tuple[Any, ...] = ()
    # Column each positional argument binds to; "" when unknown (raw SQL)
    arg_columns: Tuple[str, ...] = ()
    tables: Tuple[str, ...] = ()


@dataclass
class ExecutionResult:
    """Result of running one sanitized plan."""
    text: str
    row_count: int
    duration_ms: float
    columns: List[str] = field(default_factory=list)
    query: Optional[BuiltQuery] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def is_empty(self) -> bool:
        return self.success and self.row_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "row_count": self.row_count,
            "duration_ms": self.duration_ms,
            "columns": self.columns,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class AnswerResult:
    """Final answer for one question."""
    answer: str
    data_intent: bool
    table: Optional[str] = None
    row_count: int = 0
    refusal: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "data_intent": self.data_intent,
            "table": self.table,
            "row_count": self.row_count,
            "refusal": self.refusal,
        }
