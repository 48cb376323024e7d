# Tests for the Raw SQL Guard
"""
Test suite for the read-only and privacy checks on model-written SQL.

These tests verify that:
- Raw SQL is limited to one read-only statement over allowed tables
- Every table reference counts, including comma lists and sub-selects
- Set operations, OR and NOT are refused or void the identity scope
- A sensitive table is scoped only by an identity equality in the WHERE of
  the SELECT that reads it, directly or through an identity join
- Redacted columns may only be selected under their own name
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from kprbot.engine.errors import ForbiddenOperationError
from kprbot.engine.sql_guard import analyze_raw_sql, inspect_raw_sql, parse_raw_sql


class TestInspectRawSql:
    """Test the read-only check on raw SQL."""

    def test_tables_in_order(self, catalog):
        sql = "SELECT a.status FROM kpr_applications a JOIN properties p ON p.id = a.property_id WHERE a.user_id = 42"
        assert inspect_raw_sql(sql, catalog) == ("kpr_applications", "properties")

    def test_cte_names_skipped(self, catalog):
        sql = "WITH promo AS (SELECT * FROM kpr_rates WHERE is_promo) SELECT rate_name FROM promo"
        assert inspect_raw_sql(sql, catalog) == ("kpr_rates",)

    def test_schema_qualified(self, catalog):
        assert inspect_raw_sql('SELECT * FROM "public"."kpr_rates"', catalog) == ("kpr_rates",)

    def test_column_names_containing_keywords(self, catalog):
        """updated_at and created_at are not write keywords."""
        sql = "SELECT updated_at, created_at FROM kpr_applications WHERE id = 100"
        assert inspect_raw_sql(sql, catalog) == ("kpr_applications",)

    def test_keywords_inside_literals(self, catalog):
        sql = "SELECT rate_name FROM kpr_rates WHERE rate_name = 'update promo'"
        assert inspect_raw_sql(sql, catalog) == ("kpr_rates",)

    def test_comma_join_lists_every_table(self, catalog):
        sql = "SELECT * FROM kpr_rates r, users u"
        assert inspect_raw_sql(sql, catalog) == ("kpr_rates", "users")

    def test_sub_select_tables_listed(self, catalog):
        sql = "SELECT rate_name FROM kpr_rates WHERE id IN (SELECT id FROM users)"
        assert inspect_raw_sql(sql, catalog) == ("kpr_rates", "users")

    @pytest.mark.parametrize("sql", [
        "DELETE FROM users",
        "UPDATE users SET status = 'INACTIVE'",
        "SELECT * FROM users; DROP TABLE users",
        "SELECT * FROM kpr_rates -- comment",
        "SELECT * FROM kpr_rates /* comment */",
        "WITH x AS (DELETE FROM users RETURNING *) SELECT * FROM x",
        "SELECT * FROM pg_catalog.pg_tables",
        "SELECT * FROM secrets",
        "SELECT * FROM kpr_rates r, secrets s",
        "SELECT 1",
        "SELECT * FROM kpr_rates UNION SELECT * FROM read_parquet('x')",
        "SELECT * FROM read_csv_auto('users.csv')",
        "SELECT getenv('HOME') FROM kpr_rates",
        "COPY kpr_rates TO 'out.csv'",
    ])
    def test_refused(self, catalog, sql):
        with pytest.raises(ForbiddenOperationError):
            inspect_raw_sql(sql, catalog)

    def test_placeholders_parse(self):
        assert parse_raw_sql("SELECT username FROM users WHERE id = $1") is not None


class TestSetOperations:
    """UNION, INTERSECT and EXCEPT are refused wherever they appear."""

    @pytest.mark.parametrize("sql", [
        "SELECT username FROM users WHERE id = 42 UNION SELECT username FROM users",
        "SELECT username FROM users WHERE id = 42 UNION ALL SELECT username FROM users",
        "SELECT id FROM users WHERE id = 42 INTERSECT SELECT id FROM users",
        "SELECT id FROM users EXCEPT SELECT id FROM users WHERE id = 42",
        "SELECT * FROM (SELECT rate_name FROM kpr_rates UNION SELECT username FROM users) t",
        "SELECT rate_name FROM kpr_rates UNION SELECT rate_name FROM kpr_rates",
    ])
    def test_refused(self, catalog, sql):
        with pytest.raises(ForbiddenOperationError):
            analyze_raw_sql(sql, catalog)


class TestIdentityScope:
    """Test which sensitive tables count as pinned to one identity."""

    @pytest.mark.parametrize("sql", [
        "SELECT username FROM users WHERE id = 42",
        "SELECT username FROM users WHERE phone = $1",
        "SELECT u.username FROM users u WHERE u.id = 42",
        "SELECT username FROM users WHERE (id = 42 AND status = 'ACTIVE')",
        "SELECT username FROM users WHERE id = 42 AND email IS NOT NULL",
        "SELECT r.rate_name, u.username FROM kpr_rates r, users u WHERE u.id = 42",
        "SELECT a.status FROM kpr_applications a JOIN users u ON u.id = a.user_id WHERE u.phone = $1",
        "SELECT a.status FROM kpr_applications a, users u WHERE a.user_id = u.id AND u.phone = $1",
        "SELECT * FROM (SELECT username FROM users WHERE id = 42) t",
        "WITH me AS (SELECT id, username FROM users WHERE id = 42) SELECT * FROM me",
        "SELECT rate_name FROM kpr_rates",
    ])
    def test_scoped(self, catalog, sql):
        assert analyze_raw_sql(sql, catalog).unscoped_tables == ()

    @pytest.mark.parametrize("sql,unscoped", [
        ("SELECT * FROM kpr_rates r, users u", ("users",)),
        ("SELECT count(*) FROM users", ("users",)),
        ("SELECT username FROM users WHERE status = 'ACTIVE'", ("users",)),
        ("SELECT username FROM users WHERE id = 42 OR 1 = 1", ("users",)),
        ("SELECT username FROM users WHERE NOT id = 42", ("users",)),
        ("SELECT username FROM users WHERE id = 42 AND NOT status = 'INACTIVE'", ("users",)),
        ("SELECT username FROM users WHERE id IN (SELECT user_id FROM kpr_applications WHERE user_id = 42)",
         ("users",)),
        ("SELECT * FROM (SELECT username, id FROM users) t WHERE t.id = 42", ("users",)),
        ("SELECT u.username FROM kpr_rates r JOIN users u ON u.id = 42", ("users",)),
        ("SELECT u.username FROM users u, kpr_rates r WHERE r.id = 1", ("users",)),
        ("SELECT u.username FROM users u JOIN kpr_applications a ON a.status = u.status WHERE a.user_id = 42",
         ("users",)),
        ("SELECT rate_name FROM kpr_rates WHERE id IN (SELECT id FROM users)", ("users",)),
    ])
    def test_unscoped(self, catalog, sql, unscoped):
        assert analyze_raw_sql(sql, catalog).unscoped_tables == unscoped

    def test_ambiguous_unqualified_pin(self, catalog):
        """An unqualified identity column in a join pins nothing."""
        sql = "SELECT a.status FROM kpr_applications a JOIN users u ON u.id = a.user_id WHERE id = 42"
        inspection = analyze_raw_sql(sql, catalog)
        assert set(inspection.unscoped_tables) == {"kpr_applications", "users"}

    def test_sensitive_tables_reported(self, catalog):
        sql = "SELECT a.status FROM kpr_applications a JOIN properties p ON p.id = a.property_id WHERE a.user_id = 42"
        inspection = analyze_raw_sql(sql, catalog)
        assert inspection.sensitive
        assert inspection.sensitive_tables == ("kpr_applications",)
        assert not analyze_raw_sql("SELECT rate_name FROM kpr_rates", catalog).sensitive

    @pytest.mark.parametrize("sql", [
        "WITH users AS (SELECT * FROM kpr_rates) SELECT * FROM users WHERE id = 1",
        "SELECT * FROM users AS u(a, b) WHERE a = 42",
        "SELECT * FROM (SELECT id, phone FROM users) AS t(x, y) WHERE x = 42",
    ])
    def test_renaming_tricks_refused(self, catalog, sql):
        with pytest.raises(ForbiddenOperationError):
            analyze_raw_sql(sql, catalog)


class TestProjection:
    """Redacted columns may only be selected under their own name."""

    @pytest.mark.parametrize("sql", [
        "SELECT phone, email FROM users WHERE id = 43",
        "SELECT u.phone AS phone FROM users u WHERE u.id = 43",
        "SELECT username, status FROM users WHERE id = 43",
        "SELECT * FROM users WHERE id = 43",
    ])
    def test_allowed(self, catalog, sql):
        assert analyze_raw_sql(sql, catalog).exposed_columns == ()

    @pytest.mark.parametrize("sql,exposed", [
        ("SELECT phone AS p, email AS e FROM users WHERE id = 43", ("phone", "email")),
        ("SELECT upper(email) FROM users WHERE id = 43", ("email",)),
        ("SELECT 'x' || phone AS contact FROM users WHERE id = 43", ("phone",)),
        ("SELECT monthly_income * 12 AS yearly FROM user_profiles WHERE user_id = 42", ("monthly_income",)),
        ("SELECT rate_name, (SELECT email FROM users WHERE id = 42) AS contact FROM kpr_rates", ("email",)),
        ("SELECT u FROM users u WHERE u.id = 43", ("u",)),
        ("SELECT * REPLACE (phone AS username) FROM users WHERE id = 43", ("*",)),
    ])
    def test_exposed(self, catalog, sql, exposed):
        assert analyze_raw_sql(sql, catalog).exposed_columns == exposed
