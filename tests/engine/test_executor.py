# Tests for the Query Executor
"""
Test suite for running sanitized plans against the store.

These tests verify that:
- Only sanitized plans are accepted
- Exactly one store query runs per call
- Sensitive values are redacted in the rendered text
- The render cap is independent of the row count
- Failures come back as results and are audited
"""

import sys
import threading
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from kprbot.audit import QueryAuditLogger
from kprbot.engine.errors import ForbiddenOperationError, QueryExecutionError
from kprbot.engine.executor import DuckDBStore, ExecutorConfig, ListRowCursor, QueryExecutor
from kprbot.engine.models import NO_RESULTS, REDACTED, Filter, QueryPlan, SanitizedPlan
from kprbot.engine.schema_catalog import SchemaCatalog, SchemaRegistry

REGISTERED_PHONE = "62811000042"


class TestExecute:
    """Test end-to-end execution on the seeded store."""

    def test_structured_profile(self, sanitizer, executor, store):
        plan = sanitizer.sanitize(QueryPlan(table="user_profiles", filters=[Filter(column="user_id", value="42")]))
        result = executor.execute(plan, phone=REGISTERED_PHONE)
        assert result.success
        assert result.row_count == 1
        assert "full_name=Budi Santoso" in result.text
        assert "nik" not in result.text
        assert len(store.statements) == 1

    def test_rendered_line_format(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(
            table="kpr_rates", columns=["rate_name", "rate_type"], filters=[Filter(column="id", value="1")],
        ))
        result = executor.execute(plan)
        assert result.text == "rate_name=Griya Fixed 3 Tahun rate_type=FIXED\n"
        assert result.columns == ["rate_name", "rate_type"]

    def test_enum_filter(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(
            table="kpr_rates", columns=["rate_name"], filters=[Filter(column="rate_type", value="floating")],
        ))
        result = executor.execute(plan)
        assert result.text == "rate_name=Griya Floating\n"

    def test_join_on_phone(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(
            table="kpr_applications",
            columns=["application_number", "status"],
            filters=[Filter(column="phone", value=REGISTERED_PHONE)],
        ))
        result = executor.execute(plan, phone=REGISTERED_PHONE)
        assert result.row_count == 1
        assert "application_number=KPR-2024-0001 status=CREDIT_ANALYSIS" in result.text

    def test_raw_sql_redacted(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(raw_sql="SELECT username, email, phone FROM users WHERE id = 42"))
        result = executor.execute(plan)
        assert result.text == f"username=budi email={REDACTED} phone={REDACTED}\n"

    def test_raw_sql_with_args(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(
            raw_sql="SELECT a.application_number FROM kpr_applications a WHERE a.user_id = $1",
            raw_args=["43"],
        ))
        result = executor.execute(plan)
        assert result.success, result.error
        assert result.text == "application_number=KPR-2024-0002\n"

    def test_no_rows(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(table="users", filters=[Filter(column="id", value="999")]))
        result = executor.execute(plan)
        assert result.success
        assert result.is_empty
        assert result.text == NO_RESULTS

    def test_null_rendered_as_dash(self, sanitizer, executor):
        plan = sanitizer.sanitize(QueryPlan(
            table="kpr_rates", columns=["rate_name", "valid_until"], filters=[Filter(column="id", value="2")],
        ))
        assert executor.execute(plan).text == "rate_name=Griya Floating valid_until=-\n"

    def test_relaxed_shows_values(self, registry, store):
        executor = QueryExecutor(store, registry, None, ExecutorConfig(relaxed=True))
        plan = SanitizedPlan(
            table="users", columns=("email",), filters=(Filter(column="id", value="42"),),
            limit=1, sensitive=True, relaxed=True,
        )
        assert executor.execute(plan).text == "email=budi@example.com\n"

    def test_unsanitized_plan_refused(self, executor, store):
        with pytest.raises(TypeError):
            executor.execute(QueryPlan(table="users"))
        assert store.statements == []


class TestFailures:
    """Test error handling and cancellation."""

    def test_store_error_returned_and_audited(self, duckdb_store, audit_logger):
        registry = SchemaRegistry(catalog=SchemaCatalog.load("CREATE TABLE promo_banners (id INTEGER, title TEXT);"))
        executor = QueryExecutor(duckdb_store, registry, audit_logger)
        plan = SanitizedPlan(table="promo_banners", columns=("title",), filters=(), limit=5, sensitive=False)

        result = executor.execute(plan, phone=REGISTERED_PHONE)

        assert not result.success
        assert isinstance(result.error, QueryExecutionError)
        assert result.row_count == 0
        records = audit_logger.read_records()
        assert len(records) == 1
        assert records[0].status.value == "error"
        assert records[0].query == "SELECT t.title FROM promo_banners t LIMIT 5"

    def test_build_refusal_audited(self, executor, audit_logger):
        plan = SanitizedPlan(table="users", columns=(), filters=(Filter(column="id", value="42"),),
                             limit=5, sensitive=True)
        with pytest.raises(ForbiddenOperationError):
            executor.execute(plan)
        records = audit_logger.read_records()
        assert len(records) == 1
        assert records[0].status.value == "error"

    def test_cancelled_before_start(self, sanitizer, executor, store):
        event = threading.Event()
        event.set()
        plan = sanitizer.sanitize(QueryPlan(table="kpr_rates"))
        result = executor.execute(plan, cancel_event=event)
        assert isinstance(result.error, QueryExecutionError)
        assert store.statements == []

    def test_success_audited(self, sanitizer, executor, audit_logger):
        plan = sanitizer.sanitize(QueryPlan(table="users", filters=[Filter(column="phone", value=REGISTERED_PHONE)]))
        executor.execute(plan, phone=REGISTERED_PHONE)
        records = audit_logger.read_records()
        assert len(records) == 1
        assert records[0].row_count == 1
        assert records[0].phone == REGISTERED_PHONE
        assert records[0].filters == [{"column": "phone", "op": "=", "value": REDACTED}]
        assert records[0].args == [REDACTED]

    def test_without_audit_logger(self, sanitizer, store, registry):
        executor = QueryExecutor(store, registry)
        assert executor.execute(sanitizer.sanitize(QueryPlan(table="kpr_rates"))).success


class TestRender:
    """Test row projection."""

    def setup_method(self):
        self.executor = QueryExecutor(store=None, registry=None)

    def test_render_cap(self):
        cursor = ListRowCursor(["id"], [(i,) for i in range(30)])
        text, count = self.executor.render(cursor, max_rows=20)
        assert count == 30
        assert text.count("\n") == 20
        assert text.startswith("id=0\nid=1\n")

    def test_redacted_columns(self):
        cursor = ListRowCursor(["username", "NIK", "monthly_income"], [("budi", "3171", 15000000)])
        text, _ = self.executor.render(cursor, max_rows=5)
        assert text == f"username=budi NIK={REDACTED} monthly_income={REDACTED}\n"

    def test_empty(self):
        assert self.executor.render(ListRowCursor(["id"], []), max_rows=5) == (NO_RESULTS, 0)

    def test_cancel_between_rows(self):
        event = threading.Event()

        def rows():
            yield (1,)
            event.set()
            yield (2,)

        class GeneratorCursor(ListRowCursor):
            def __iter__(self):
                return rows()

        with pytest.raises(QueryExecutionError):
            self.executor.render(GeneratorCursor(["id"], []), max_rows=5, cancel_event=event)


class TestDuckDBStore:
    """Test the DuckDB store directly."""

    def test_positional_args(self, duckdb_store):
        cursor = duckdb_store.query("SELECT username FROM users WHERE phone = $1", [REGISTERED_PHONE])
        assert cursor.columns == ["username"]
        assert list(cursor) == [("budi",)]
        cursor.close()

    def test_file_store_is_read_only(self, tmp_path):
        import duckdb

        path = str(tmp_path / "kpr.duckdb")
        conn = duckdb.connect(path)
        conn.execute("CREATE TABLE kpr_rates (id INTEGER)")
        conn.close()

        store = DuckDBStore(path, read_only=True)
        try:
            with pytest.raises(duckdb.Error):
                store.query("INSERT INTO kpr_rates VALUES (1)")
        finally:
            store.close()
