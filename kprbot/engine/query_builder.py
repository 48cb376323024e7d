# KPR Bot - Query Builder
# ========================
"""
Query Builder
=============
Renders sanitized plans into SQL.

Structured plans become a parameterized SELECT with `$n` placeholders for
every filter value, optionally joined once to the users table. Raw SQL
from the model goes through the raw SQL guard (read-only, allowed tables
only) and is wrapped in a bounded outer query when it does not already
carry an acceptable LIMIT.

Values are never concatenated into SQL text.
"""

import re
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Tuple

from .errors import ForbiddenOperationError, UnresolvedTableError
from .models import BuiltQuery, SanitizedPlan
from .policy import USERS_FALLBACK_COLUMNS, USERS_JOIN_KEYS
from .schema_catalog import SchemaCatalog
from .sql_guard import inspect_raw_sql

logger = logging.getLogger(__name__)


MAIN_ALIAS = "t"
USERS_ALIAS = "u"

_IDENTIFIER = re.compile(r'^[a-z_][a-z0-9_]*$')
_TRAILING_LIMIT = re.compile(r'\blimit\s+(\d+)\s*$', re.IGNORECASE)
_PLACEHOLDER_COLUMN = re.compile(r'(?:\b[a-z_][a-z0-9_]*\.)?([a-z_][a-z0-9_]*)\s*=\s*\$(\d+)', re.IGNORECASE)

_INT_TYPES = {"int", "integer", "int2", "int4", "int8", "bigint", "smallint", "serial", "bigserial", "smallserial"}
_DECIMAL_TYPES = {"numeric", "decimal", "real", "double", "float", "float4", "float8", "money"}
_BOOL_TYPES = {"bool", "boolean"}


def validate_identifier(name: str) -> str:
    """Return the identifier if it is a plain lower-case SQL name, else raise."""
    if not _IDENTIFIER.match(name or ""):
        raise ForbiddenOperationError(f"invalid identifier '{name}'")
    return name


def _base_type(declared: str) -> str:
    return declared.split("(", 1)[0].strip().lower()


def coerce_value(value: str, declared_type: str) -> Any:
    """
    Convert a filter value to the Python type matching the declared column type.

    Values that do not parse stay strings, letting the store report the mismatch.
    """
    base = _base_type(declared_type)
    text = str(value).strip()
    if base in _INT_TYPES and re.fullmatch(r'-?\d+', text):
        return int(text)
    if base in _DECIMAL_TYPES:
        try:
            return Decimal(text)
        except InvalidOperation:
            return text
    if base in _BOOL_TYPES and text.lower() in ("true", "false", "t", "f", "1", "0"):
        return text.lower() in ("true", "t", "1")
    return text


class QueryBuilder:
    """
    Turns a SanitizedPlan into a BuiltQuery.

    Example:
        builder = QueryBuilder()
        query = builder.build(sanitized, catalog)
        cursor = store.query(query.sql, query.args)
    """

    def build(self, plan: SanitizedPlan, catalog: SchemaCatalog) -> BuiltQuery:
        if plan.is_raw:
            return self.build_raw(plan, catalog)
        return self.build_structured(plan, catalog)

    def _users_columns(self, catalog: SchemaCatalog) -> Tuple[str, ...]:
        return catalog.columns_for("users") or USERS_FALLBACK_COLUMNS

    def _on_main_table(self, table: str, column: str, catalog: SchemaCatalog) -> bool:
        if catalog.knows_columns(table):
            return catalog.has_column(table, column)
        # Without declared columns only the join key is assumed to exist
        return column == USERS_JOIN_KEYS.get(table)

    def build_structured(self, plan: SanitizedPlan, catalog: SchemaCatalog) -> BuiltQuery:
        """
        Render `SELECT ... FROM table t [JOIN users u ...] [WHERE ...] [LIMIT n]`.

        Raises:
            UnresolvedTableError: If the plan has no table
            ForbiddenOperationError: If a sensitive plan would project every column
        """
        table = plan.table
        if not table:
            raise UnresolvedTableError(table)
        validate_identifier(table)

        users_columns = self._users_columns(catalog)
        join_key = USERS_JOIN_KEYS.get(table)

        needs_join = join_key is not None and any(
            not self._on_main_table(table, f.column, catalog) and f.column in users_columns
            for f in plan.filters
        )

        projection = [
            c for c in plan.columns
            if not catalog.knows_columns(table) or catalog.has_column(table, c)
        ]
        if not projection and plan.sensitive and not plan.relaxed:
            raise ForbiddenOperationError(f"no exposable columns for '{table}'")
        select_list = ", ".join(
            f"{MAIN_ALIAS}.{validate_identifier(c)}" for c in projection
        ) or f"{MAIN_ALIAS}.*"

        sql = f"SELECT {select_list} FROM {table} {MAIN_ALIAS}"
        if needs_join:
            sql += f" JOIN users {USERS_ALIAS} ON {USERS_ALIAS}.id = {MAIN_ALIAS}.{validate_identifier(join_key)}"

        conditions: List[str] = []
        args: List[Any] = []
        arg_columns: List[str] = []
        for f in plan.filters:
            if f.op != "=":
                continue
            column = validate_identifier(f.column)
            if self._on_main_table(table, column, catalog):
                target, declared = f"{MAIN_ALIAS}.{column}", catalog.column_type(table, column)
            elif needs_join and column in users_columns:
                target, declared = f"{USERS_ALIAS}.{column}", catalog.column_type("users", column)
            else:
                continue
            args.append(coerce_value(f.value, declared))
            arg_columns.append(column)
            conditions.append(f"{target} = ${len(args)}")

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if plan.limit > 0:
            sql += f" LIMIT {int(plan.limit)}"

        tables = (table, "users") if needs_join else (table,)
        logger.debug(f"Built structured query on {table}: {len(args)} args, join={needs_join}")
        return BuiltQuery(sql=sql, args=tuple(args), arg_columns=tuple(arg_columns), tables=tables)

    def build_raw(self, plan: SanitizedPlan, catalog: SchemaCatalog) -> BuiltQuery:
        """
        Validate raw SQL and bound it by the plan's limit.

        A trailing `LIMIT n` with n within the limit is kept; anything else is
        wrapped in `SELECT * FROM (...) sub LIMIT n`. Relaxed plans run as given.
        Arguments compared against a declared column take that column's type.
        """
        sql = (plan.raw_sql or "").strip()
        tables = inspect_raw_sql(sql, catalog)

        if not plan.relaxed:
            trailing = _TRAILING_LIMIT.search(sql)
            within = trailing is not None and 0 < int(trailing.group(1)) <= plan.limit
            if not within:
                sql = f"SELECT * FROM ({sql}) sub LIMIT {int(plan.limit)}"

        arg_columns = self._raw_arg_columns(sql, len(plan.raw_args))
        args = tuple(
            coerce_value(value, self._raw_column_type(column, tables, catalog)) if column else value
            for value, column in zip(plan.raw_args, arg_columns)
        )
        return BuiltQuery(sql=sql, args=args, arg_columns=arg_columns, tables=tables)

    @staticmethod
    def _raw_column_type(column: str, tables: Tuple[str, ...], catalog: SchemaCatalog) -> str:
        for table in tables:
            declared = catalog.column_type(table, column)
            if declared:
                return declared
        return ""

    @staticmethod
    def _raw_arg_columns(sql: str, count: int) -> Tuple[str, ...]:
        """Best-effort map of `$n` placeholders to the column compared against them."""
        mapping: Dict[int, str] = {}
        for column, index in _PLACEHOLDER_COLUMN.findall(sql):
            mapping.setdefault(int(index), column.lower())
        return tuple(mapping.get(i + 1, "") for i in range(count))
