# KPR Bot - Query Executor
# =========================
"""
Query Executor
==============
Runs one sanitized plan against the relational store and projects the
rows into redacted text.

The store is reached only through `RelationalStore.query()`, which returns
a `RowCursor` (column names plus an iterator of value tuples). `DuckDBStore`
is the concrete implementation.

Every attempt that reaches this module is written to the audit trail,
including build refusals and store errors.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from .errors import KPRBotError, QueryExecutionError, StoreUnavailableError
from .models import NO_RESULTS, REDACTED, BuiltQuery, ExecutionResult, SanitizedPlan
from .policy import is_redacted_column
from .query_builder import QueryBuilder
from .schema_catalog import SchemaRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# STORE ABSTRACTION
# =============================================================================

class RowCursor(ABC):
    """Column names plus a one-pass iterator over row tuples."""

    @property
    @abstractmethod
    def columns(self) -> List[str]:
        pass

    @abstractmethod
    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        pass

    def close(self):
        pass


class RelationalStore(ABC):
    """Read-only access to the relational store."""

    @abstractmethod
    def query(self, sql: str, args: Sequence[Any] = (), timeout: Optional[float] = None) -> RowCursor:
        """
        Run a parameterized query.

        Args:
            sql: Statement with `$n` placeholders
            args: Positional arguments
            timeout: Seconds before the query is interrupted

        Returns:
            RowCursor over the result
        """
        pass

    def close(self):
        pass


class ListRowCursor(RowCursor):
    """RowCursor over already-materialized rows."""

    def __init__(self, columns: List[str], rows: List[Tuple[Any, ...]]):
        self._columns = list(columns)
        self._rows = rows

    @property
    def columns(self) -> List[str]:
        return self._columns

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        return iter(self._rows)


class DuckDBRowCursor(RowCursor):
    """RowCursor backed by a DuckDB cursor, fetched in batches."""

    BATCH_SIZE = 100

    def __init__(self, cursor, timer: Optional[threading.Timer] = None):
        self._cursor = cursor
        self._timer = timer
        self._columns = [desc[0] for desc in (cursor.description or [])]

    @property
    def columns(self) -> List[str]:
        return self._columns

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        while True:
            batch = self._cursor.fetchmany(self.BATCH_SIZE)
            if not batch:
                return
            for row in batch:
                yield tuple(row)

    def close(self):
        if self._timer is not None:
            self._timer.cancel()
        self._cursor.close()


class DuckDBStore(RelationalStore):
    """
    DuckDB-backed store.

    Each query runs on its own cursor so concurrent questions do not share
    connection state. A query still running after `timeout` seconds is
    interrupted.

    Example:
        store = DuckDBStore("kpr.duckdb")
        cursor = store.query("SELECT id FROM users WHERE phone = $1", ["62811"])
    """

    def __init__(self, db_path: str = ":memory:", read_only: bool = True, connection=None):
        self.db_path = db_path
        if connection is not None:
            self._conn = connection
            return

        import duckdb
        in_memory = db_path in ("", ":memory:")
        try:
            self._conn = duckdb.connect(db_path or ":memory:", read_only=read_only and not in_memory)
        except duckdb.Error as e:
            raise StoreUnavailableError(db_path, str(e)) from e
        logger.info(f"DuckDB store opened: {db_path or ':memory:'} (read_only={read_only and not in_memory})")

    @property
    def connection(self):
        return self._conn

    def query(self, sql: str, args: Sequence[Any] = (), timeout: Optional[float] = None) -> RowCursor:
        cursor = self._conn.cursor()
        timer = None
        if timeout and timeout > 0:
            timer = threading.Timer(timeout, cursor.interrupt)
            timer.daemon = True
            timer.start()
        try:
            cursor.execute(sql, list(args))
        except Exception:
            if timer is not None:
                timer.cancel()
            cursor.close()
            raise
        return DuckDBRowCursor(cursor, timer)

    def close(self):
        self._conn.close()


# =============================================================================
# EXECUTOR
# =============================================================================

@dataclass
class ExecutorConfig:
    """Configuration for the query executor."""
    # Rows rendered to text, independent of the SQL LIMIT
    structured_render_rows: int = 20
    raw_render_rows: int = 50

    # Seconds before a store query is interrupted (0 = no timeout)
    timeout_seconds: int = 30

    # Show sensitive values instead of the redaction marker
    relaxed: bool = False


def format_value(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


class QueryExecutor:
    """
    Executes sanitized plans.

    Features:
    - Exactly one store query per call
    - Row-level redaction of contact and financial-identifier columns
    - Render cap independent of the SQL limit
    - Audit record for every attempt, success or failure

    Example:
        executor = QueryExecutor(store, registry, audit_logger)
        result = executor.execute(sanitized_plan, phone="62811")
        if result.success:
            print(result.text)
    """

    def __init__(self,
                 store: RelationalStore,
                 registry: SchemaRegistry,
                 audit_logger=None,
                 config: Optional[ExecutorConfig] = None,
                 builder: Optional[QueryBuilder] = None):
        self.store = store
        self.registry = registry
        self.audit_logger = audit_logger
        self.config = config or ExecutorConfig()
        self.builder = builder or QueryBuilder()

    def execute(self,
                plan: SanitizedPlan,
                phone: str = "",
                cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        """
        Build, run and render one sanitized plan.

        Args:
            plan: Output of PrivacySanitizer.sanitize()
            phone: Identity recorded in the audit trail
            cancel_event: When set, the attempt stops before or between rows

        Returns:
            ExecutionResult; store failures are carried in `error`
            as QueryExecutionError

        Raises:
            TypeError: If given an unsanitized plan
            KPRBotError: If the query cannot be built (audited first)
        """
        if not isinstance(plan, SanitizedPlan):
            raise TypeError("QueryExecutor only runs plans returned by PrivacySanitizer")

        start_time = time.time()
        catalog = self.registry.current()

        try:
            query = self.builder.build(plan, catalog)
        except KPRBotError as e:
            logger.warning(f"Query build refused for {plan.table}: {e}")
            self._audit(phone, plan, None, 0, start_time, e)
            raise

        logger.info(f"Executing query on {plan.table} (raw={plan.is_raw}, args={len(query.args)})")
        max_rows = self.config.raw_render_rows if plan.is_raw else self.config.structured_render_rows
        relaxed = self.config.relaxed or plan.relaxed

        cursor = None
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise QueryExecutionError("query cancelled before start", query.sql)
            cursor = self.store.query(query.sql, query.args, timeout=self.config.timeout_seconds)
            text, row_count = self.render(cursor, max_rows, relaxed, cancel_event)
            columns = list(cursor.columns)
        except Exception as e:
            error = e if isinstance(e, QueryExecutionError) else QueryExecutionError(
                f"Database query failed: {e}", query.sql
            )
            if error is not e:
                error.__cause__ = e
            logger.error(f"Query failed on {plan.table}: {e}")
            duration = self._audit(phone, plan, query, 0, start_time, error)
            return ExecutionResult(text="", row_count=0, duration_ms=duration, query=query, error=error)
        finally:
            if cursor is not None:
                cursor.close()

        duration = self._audit(phone, plan, query, row_count, start_time, None)
        logger.info(f"Query ok on {plan.table}: rows={row_count} duration={duration:.1f}ms")
        return ExecutionResult(
            text=text,
            row_count=row_count,
            duration_ms=duration,
            columns=columns,
            query=query,
        )

    def render(self,
               cursor: RowCursor,
               max_rows: int,
               relaxed: bool = False,
               cancel_event: Optional[threading.Event] = None) -> Tuple[str, int]:
        """
        Project rows into `col=value` lines.

        Returns:
            (text, row_count); text is the no-results sentinel for zero rows
        """
        columns = list(cursor.columns)
        redact = [not relaxed and is_redacted_column(c) for c in columns]
        lines: List[str] = []
        count = 0
        for row in cursor:
            if cancel_event is not None and cancel_event.is_set():
                raise QueryExecutionError("query cancelled while reading rows")
            count += 1
            if count > max_rows:
                continue
            lines.append(" ".join(
                f"{col}={REDACTED if redact[i] else format_value(row[i])}"
                for i, col in enumerate(columns)
            ))
        if count == 0:
            return NO_RESULTS, 0
        return "\n".join(lines) + "\n", count

    def _audit(self, phone: str, plan: SanitizedPlan, query: Optional[BuiltQuery],
               row_count: int, start_time: float, error: Optional[Exception]) -> float:
        duration = (time.time() - start_time) * 1000
        if self.audit_logger is not None:
            status = "error" if error else "ok"
            self.audit_logger.log_query(phone, plan, query, row_count, duration, status, error)
        return duration
