# KPR Bot - Raw SQL Guard
# ========================
"""
Raw SQL Guard
=============
Read-only and privacy checks for SQL written by the language model.

Layers:
1. Text checks      - SELECT/WITH only, one statement, no comments, no
                      write/DDL keywords, no file or catalog functions
2. Parse            - sqlglot AST in the DuckDB dialect; UNION, INTERSECT
                      and EXCEPT are refused
3. Tables           - every table reference (comma lists, joins, sub-selects,
                      CTE bodies) must be a catalog table
4. Identity scope   - each SELECT that reads a sensitive table must pin it to
                      one identity with an equality in its top-level WHERE,
                      either directly or through an identity-column join to a
                      pinned table; OR and NOT void the scope
5. Projection       - contact and financial-identifier columns may only be
                      selected under their own name, so redaction by column
                      label in the executor still applies

The guard only reads the statement; the text sent to the store is the
model's own SQL (bounded by the query builder).
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from .errors import ForbiddenOperationError
from .policy import IDENTITY_COLUMNS, REDACTED_COLUMNS, USERS_JOIN_KEYS, is_sensitive_table
from .schema_catalog import SchemaCatalog

logger = logging.getLogger(__name__)


DIALECT = "duckdb"

FORBIDDEN_KEYWORDS = (
    "insert", "update", "delete", "drop", "alter", "create", "grant", "revoke",
    "truncate", "copy", "attach", "detach", "pragma", "install", "load", "call",
    "merge", "vacuum", "export", "import", "checkpoint",
)

ALLOWED_SCHEMAS = ("", "public", "main")

# Columns that may tie one table's rows to another's identity
LINK_COLUMNS = IDENTITY_COLUMNS | frozenset(USERS_JOIN_KEYS.values()) | frozenset({"application_id"})

_READ_PREFIX = re.compile(r'^\s*(select|with)\b', re.IGNORECASE)
_COMMENT = re.compile(r'--|/\*')
_QUOTED = re.compile(r"'(?:[^']|'')*'|\"[^\"]*\"")
_FORBIDDEN = re.compile(r'\b(' + '|'.join(FORBIDDEN_KEYWORDS) + r')\b', re.IGNORECASE)
_FILE_FUNCTION = re.compile(
    r'\b(read_\w+|\w+_scan|glob|getenv|columns|query|query_table|sniff_csv|duckdb_\w+|pg_\w+|current_setting)\s*\(',
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r'\$\d+')


@dataclass(frozen=True)
class RawSqlInspection:
    """What a raw statement reads and where it steps outside the privacy policy."""
    # Catalog tables read, in order of first appearance
    tables: Tuple[str, ...]

    # Sensitive tables among them
    sensitive_tables: Tuple[str, ...] = ()

    # Sensitive tables not pinned to a single identity
    unscoped_tables: Tuple[str, ...] = ()

    # Redacted columns renamed or wrapped in the output, or whole-row values
    exposed_columns: Tuple[str, ...] = ()

    @property
    def sensitive(self) -> bool:
        return bool(self.sensitive_tables)


# =============================================================================
# TEXT CHECKS AND PARSING
# =============================================================================

def _check_text(text: str):
    if not _READ_PREFIX.match(text):
        raise ForbiddenOperationError("raw SQL must start with SELECT or WITH")
    if ";" in text:
        raise ForbiddenOperationError("statement terminator in raw SQL")
    if _COMMENT.search(text):
        raise ForbiddenOperationError("comment in raw SQL")

    unquoted = _QUOTED.sub("''", text)
    keyword = _FORBIDDEN.search(unquoted)
    if keyword:
        raise ForbiddenOperationError(f"keyword '{keyword.group(1).lower()}' in raw SQL")
    function = _FILE_FUNCTION.search(unquoted)
    if function:
        raise ForbiddenOperationError(f"function '{function.group(1).lower()}' in raw SQL")


def parse_raw_sql(sql: str) -> exp.Expression:
    """
    Parse raw SQL into a sqlglot expression.

    `$n` placeholders are read as `?` so the parser sees plain parameters.

    Raises:
        ForbiddenOperationError: If the text does not parse as one statement
    """
    try:
        statements = sqlglot.parse(_PLACEHOLDER.sub("?", sql), read=DIALECT)
    except SqlglotError as e:
        raise ForbiddenOperationError(f"raw SQL could not be parsed: {e}") from e
    statements = [s for s in statements if s is not None]
    if len(statements) != 1:
        raise ForbiddenOperationError("raw SQL must be exactly one statement")
    return statements[0]


def _table_name(table: exp.Table) -> str:
    if not isinstance(table.this, exp.Identifier):
        raise ForbiddenOperationError("table functions are not allowed in raw SQL")
    if table.args.get("catalog") is not None or (table.db or "").lower() not in ALLOWED_SCHEMAS:
        raise ForbiddenOperationError(f"schema '{table.db}' is not allowed")
    return table.name.lower()


def _first_position(text: str, table: str) -> int:
    match = re.search(r'\b' + re.escape(table) + r'\b', text, re.IGNORECASE)
    return match.start() if match else len(text)


# =============================================================================
# SCOPES
# =============================================================================

@dataclass
class _Scope:
    """Sources of one SELECT: catalog tables by alias, plus every source name."""
    tables: Dict[str, str]
    names: Set[str]

    def owner(self, column: exp.Column) -> Optional[str]:
        """Alias of the catalog table a column belongs to, when certain."""
        qualifier = column.table.lower()
        if qualifier:
            return qualifier if qualifier in self.tables else None
        if len(self.names) == 1 and len(self.tables) == 1:
            return next(iter(self.tables))
        return None


def _clauses(select: exp.Select, kind) -> List[exp.Expression]:
    """Direct child clauses of one SELECT (never those of nested selects)."""
    return [child for child in select.iter_expressions() if isinstance(child, kind)]


def _scope_for(select: exp.Select, cte_names: Set[str], seen: Set[int]) -> _Scope:
    sources: List[exp.Expression] = []
    for from_ in _clauses(select, exp.From):
        sources.append(from_.this)
        sources.extend(from_.expressions)
    for join in _clauses(select, exp.Join):
        sources.append(join.this)

    scope = _Scope(tables={}, names=set())
    for source in sources:
        if source is None:
            continue
        scope.names.add(source.alias_or_name.lower())
        if isinstance(source, exp.Table):
            seen.add(id(source))
            name = source.name.lower()
            if name not in cte_names:
                scope.tables[source.alias_or_name.lower()] = name
    return scope


def _conjuncts(condition: Optional[exp.Expression]) -> List[exp.Expression]:
    if condition is None:
        return []
    if isinstance(condition, exp.Paren):
        return _conjuncts(condition.this)
    if isinstance(condition, exp.And):
        return _conjuncts(condition.this) + _conjuncts(condition.expression)
    return [condition]


def _identity_pin(condition: exp.Expression, scope: _Scope) -> Optional[str]:
    """Alias pinned by `identity_column = literal`, if the condition is one."""
    if not isinstance(condition, exp.EQ):
        return None
    for column, value in ((condition.this, condition.expression), (condition.expression, condition.this)):
        if (isinstance(column, exp.Column)
                and column.name.lower() in IDENTITY_COLUMNS
                and isinstance(value, (exp.Literal, exp.Placeholder, exp.Parameter))):
            return scope.owner(column)
    return None


def _identity_link(condition: exp.Expression, scope: _Scope) -> Optional[Tuple[str, str]]:
    """Aliases tied by `a.link_column = b.link_column`, if the condition is one."""
    if not isinstance(condition, exp.EQ):
        return None
    left, right = condition.this, condition.expression
    if not (isinstance(left, exp.Column) and isinstance(right, exp.Column)):
        return None
    if left.name.lower() not in LINK_COLUMNS or right.name.lower() not in LINK_COLUMNS:
        return None
    a, b = scope.owner(left), scope.owner(right)
    if a and b and a != b:
        return a, b
    return None


def _pinned_aliases(select: exp.Select, scope: _Scope) -> Set[str]:
    """
    Aliases restricted to one identity.

    Pins only come from the top-level WHERE conjunction; links may also come
    from JOIN ... ON, since a pinned row can only match its own partners.
    """
    where_conditions: List[exp.Expression] = []
    for where in _clauses(select, exp.Where):
        where_conditions.extend(_conjuncts(where.this))
    on_conditions: List[exp.Expression] = []
    for join in _clauses(select, exp.Join):
        on_conditions.extend(_conjuncts(join.args.get("on")))

    pinned: Set[str] = set()
    for condition in where_conditions:
        alias = _identity_pin(condition, scope)
        if alias:
            pinned.add(alias)

    links = [link for link in (_identity_link(c, scope) for c in where_conditions + on_conditions) if link]
    changed = True
    while changed:
        changed = False
        for a, b in links:
            if (a in pinned) != (b in pinned):
                pinned.update((a, b))
                changed = True
    return pinned


def _exposed_columns(select: exp.Select, scope: _Scope) -> List[str]:
    exposed: List[str] = []
    for star in select.find_all(exp.Star):
        if star.args.get("replace") or star.args.get("rename"):
            exposed.append("*")

    for projection in select.expressions:
        if isinstance(projection, exp.Star):
            continue
        inner = projection.this if isinstance(projection, exp.Alias) else projection
        keeps_label = isinstance(inner, exp.Column) and (
            inner is projection or projection.alias.lower() == inner.name.lower()
        )
        for column in projection.find_all(exp.Column):
            name = column.name.lower()
            if not column.table and name in scope.names:
                # A bare source name is the whole row as one value
                exposed.append(name)
            elif name in REDACTED_COLUMNS and not keeps_label:
                exposed.append(name)
    return exposed


def _has_disjunction(parsed: exp.Expression) -> bool:
    if parsed.find(exp.Or) is not None:
        return True
    # IS NOT NULL parses as NOT(IS ...) and narrows like any other conjunct
    return any(not isinstance(node.this, exp.Is) for node in parsed.find_all(exp.Not))


# =============================================================================
# PUBLIC API
# =============================================================================

def analyze_raw_sql(sql: str, catalog: SchemaCatalog) -> RawSqlInspection:
    """
    Inspect raw SQL against the catalog and the privacy policy.

    Args:
        sql: Raw SQL text from the model
        catalog: Schema snapshot

    Returns:
        RawSqlInspection; the caller decides what to refuse

    Raises:
        ForbiddenOperationError: Not a single read-only SELECT, a set
            operation, a table function, a table outside the catalog, a
            CTE named like a table, or column aliases on a table or sub-select
    """
    text = (sql or "").strip()
    _check_text(text)
    parsed = parse_raw_sql(text)

    if not isinstance(parsed, exp.Select):
        raise ForbiddenOperationError(f"raw SQL must be a SELECT, got {parsed.key.upper()}")
    if parsed.find(exp.Union, exp.Intersect, exp.Except) is not None:
        raise ForbiddenOperationError("set operations are not allowed in raw SQL")
    for alias in parsed.find_all(exp.TableAlias):
        if alias.args.get("columns"):
            raise ForbiddenOperationError("column aliases on a table or sub-select are not allowed")

    cte_names = {cte.alias_or_name.lower() for cte in parsed.find_all(exp.CTE)}
    for name in cte_names:
        if catalog.has_table(name):
            raise ForbiddenOperationError(f"CTE '{name}' shadows a table")

    tables: List[str] = []
    for table in parsed.find_all(exp.Table):
        name = _table_name(table)
        if name in cte_names or name in tables:
            continue
        if not catalog.has_table(name):
            raise ForbiddenOperationError(f"table '{name}' is not allowed")
        tables.append(name)
    if not tables:
        raise ForbiddenOperationError("raw SQL references no allowed table")
    tables.sort(key=lambda t: _first_position(text, t))

    sensitive_tables = tuple(t for t in tables if is_sensitive_table(t))
    unscoped: List[str] = []
    exposed: List[str] = []
    seen: Set[int] = set()
    for select in parsed.find_all(exp.Select):
        scope = _scope_for(select, cte_names, seen)
        exposed.extend(_exposed_columns(select, scope))
        pinned = _pinned_aliases(select, scope)
        unscoped.extend(
            name for alias, name in scope.tables.items()
            if is_sensitive_table(name) and alias not in pinned
        )

    for table in parsed.find_all(exp.Table):
        name = table.name.lower()
        if id(table) not in seen and name not in cte_names and is_sensitive_table(name):
            unscoped.append(name)

    if sensitive_tables and _has_disjunction(parsed):
        unscoped.extend(sensitive_tables)

    inspection = RawSqlInspection(
        tables=tuple(tables),
        sensitive_tables=sensitive_tables,
        unscoped_tables=tuple(dict.fromkeys(unscoped)),
        exposed_columns=tuple(dict.fromkeys(exposed)),
    )
    logger.debug(
        f"Raw SQL inspected: tables={','.join(tables)} "
        f"unscoped={len(inspection.unscoped_tables)} exposed={len(inspection.exposed_columns)}"
    )
    return inspection


def inspect_raw_sql(sql: str, catalog: SchemaCatalog) -> Tuple[str, ...]:
    """
    Check that raw SQL is a single read-only statement over allowed tables.

    Returns:
        Catalog tables read, in order of first appearance

    Raises:
        ForbiddenOperationError: See analyze_raw_sql
    """
    return analyze_raw_sql(sql, catalog).tables
