# KPR Bot - Schema Catalog
# =========================
"""
Schema Catalog
==============
Parses DDL text into immutable lookup tables used by every other component:
allowed table names, per-table column lists, declared column types and
enumerated-type values.

The catalog itself is never mutated. `SchemaRegistry` holds the current
catalog and swaps in a freshly parsed one on `reload()`, so readers either
see the old catalog or the new one, never a half-built one.

Example:
    registry = SchemaRegistry("ddl.sql")
    catalog = registry.current()
    if catalog.has_table("kpr_applications"):
        print(catalog.columns_for("kpr_applications"))
"""

import re
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import SchemaUnavailableError

logger = logging.getLogger(__name__)


# Tables that are always allowed, even without a readable DDL source
BASELINE_TABLES: FrozenSet[str] = frozenset({
    "users",
    "roles",
    "branch_staff",
    "user_profiles",
    "kpr_rates",
    "kpr_applications",
    "approval_workflow",
    "properties",
})

_CONSTRAINT_PREFIXES = ("constraint", "primary", "foreign", "unique", "check", "exclude")
_CREATE_TABLE = re.compile(r'\bcreate\s+(?:unlogged\s+)?table\s+(?:if\s+not\s+exists\s+)?', re.IGNORECASE)
_CREATE_TYPE = re.compile(r'\bcreate\s+type\s+', re.IGNORECASE)
_AS_ENUM = re.compile(r'^\s*as\s+enum\s*\(', re.IGNORECASE)
_QUOTED_LITERAL = re.compile(r"'((?:[^']|'')*)'")


def _clean_identifier(name: str) -> str:
    """Lower-case an identifier and strip quotes and the public schema prefix."""
    name = name.strip().replace('"', "").lower()
    if name.startswith("public."):
        name = name[len("public."):]
    return name


def _matching_paren(text: str, open_index: int) -> int:
    """
    Return the index of the parenthesis closing the one at `open_index`.

    Quoted literals are skipped so a ')' inside a default string does not
    end the body early. Returns -1 when the body is unterminated.
    """
    depth = 0
    in_quote = False
    for i in range(open_index, len(text)):
        ch = text[i]
        if ch == "'":
            in_quote = not in_quote
        elif in_quote:
            continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _split_top_level(body: str) -> List[str]:
    """Split a table body on commas that are not nested in parentheses or quotes."""
    parts = []
    depth = 0
    in_quote = False
    current = []
    for ch in body:
        if ch == "'":
            in_quote = not in_quote
        elif not in_quote:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            elif ch == "," and depth == 0:
                parts.append("".join(current))
                current = []
                continue
        current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def _strip_sql_comments(ddl: str) -> str:
    return re.sub(r'--[^\n]*', '', ddl)


def parse_tables(ddl: str) -> Dict[str, List[Tuple[str, str]]]:
    """
    Extract `table -> [(column, declared_type), ...]` from CREATE TABLE statements.

    Malformed statements are skipped.
    """
    ddl = _strip_sql_comments(ddl)
    tables: Dict[str, List[Tuple[str, str]]] = {}

    for match in _CREATE_TABLE.finditer(ddl):
        rest = ddl[match.end():]
        name_match = re.match(r'\s*([^\s(]+)', rest)
        if not name_match:
            continue
        name = _clean_identifier(name_match.group(1))
        open_index = rest.find("(", name_match.end())
        if not name or open_index == -1:
            continue
        # Only whitespace may sit between the name and the body
        if rest[name_match.end():open_index].strip():
            continue
        close_index = _matching_paren(rest, open_index)
        if close_index == -1:
            logger.debug(f"Unterminated CREATE TABLE body for {name}")
            continue

        columns: List[Tuple[str, str]] = []
        for definition in _split_top_level(rest[open_index + 1:close_index]):
            if definition.lower().startswith(_CONSTRAINT_PREFIXES):
                continue
            tokens = definition.split()
            column = _clean_identifier(tokens[0])
            declared_type = _clean_identifier(tokens[1]) if len(tokens) > 1 else ""
            if column:
                columns.append((column, declared_type))

        if columns and name not in tables:
            tables[name] = columns

    return tables


def parse_enums(ddl: str) -> Dict[str, List[str]]:
    """Extract `type_name -> [values...]` from CREATE TYPE ... AS ENUM statements."""
    ddl = _strip_sql_comments(ddl)
    enums: Dict[str, List[str]] = {}

    for match in _CREATE_TYPE.finditer(ddl):
        rest = ddl[match.end():]
        name_match = re.match(r'\s*([^\s(]+)', rest)
        if not name_match:
            continue
        after_name = rest[name_match.end():]
        enum_match = _AS_ENUM.match(after_name)
        if not enum_match:
            continue
        open_index = enum_match.end() - 1
        close_index = _matching_paren(after_name, open_index)
        if close_index == -1:
            continue
        values = [
            v.replace("''", "'").strip()
            for v in _QUOTED_LITERAL.findall(after_name[open_index + 1:close_index])
        ]
        values = [v for v in values if v]
        if values:
            enums[_clean_identifier(name_match.group(1))] = values

    return enums


@dataclass(frozen=True)
class SchemaCatalog:
    """
    Immutable view of the allowed schema.

    Attributes:
        tables: Allowed table names (lower-case), baseline included
        columns: Declared columns per table, in declaration order
        column_types: Declared type per column, per table
        enum_values: Allowed literals per enumerated type
        column_enums: Enum-typed columns per table with their allowed literals
    """
    tables: FrozenSet[str] = BASELINE_TABLES
    columns: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    column_types: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: MappingProxyType({}))
    enum_values: Mapping[str, FrozenSet[str]] = field(default_factory=lambda: MappingProxyType({}))
    column_enums: Mapping[str, Mapping[str, FrozenSet[str]]] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def baseline(cls) -> "SchemaCatalog":
        """Catalog containing only the baseline tables."""
        return cls()

    @classmethod
    def load(cls, ddl_text: Optional[str]) -> "SchemaCatalog":
        """
        Build a catalog from DDL text.

        Args:
            ddl_text: Contents of the DDL source (None or empty gives the baseline)

        Returns:
            SchemaCatalog containing the baseline plus everything parsed
        """
        if not ddl_text or not ddl_text.strip():
            return cls.baseline()

        parsed_tables = parse_tables(ddl_text)
        parsed_enums = parse_enums(ddl_text)

        columns = {t: tuple(c for c, _ in cols) for t, cols in parsed_tables.items()}
        column_types = {
            t: MappingProxyType({c: typ for c, typ in cols})
            for t, cols in parsed_tables.items()
        }
        enum_values = {name: frozenset(values) for name, values in parsed_enums.items()}

        column_enums = {}
        for table, cols in parsed_tables.items():
            enum_cols = {c: enum_values[typ] for c, typ in cols if typ in enum_values}
            if enum_cols:
                column_enums[table] = MappingProxyType(enum_cols)

        catalog = cls(
            tables=BASELINE_TABLES | frozenset(parsed_tables),
            columns=MappingProxyType(columns),
            column_types=MappingProxyType(column_types),
            enum_values=MappingProxyType(enum_values),
            column_enums=MappingProxyType(column_enums),
        )
        logger.info(
            f"Schema catalog loaded: {len(catalog.tables)} tables, "
            f"{len(columns)} with columns, {len(enum_values)} enum types"
        )
        return catalog

    @classmethod
    def from_file(cls, path: Optional[str]) -> "SchemaCatalog":
        """
        Build a catalog from a DDL file, degrading to the baseline on I/O failure.

        Never raises; the failure is logged as a warning.
        """
        try:
            return cls.load(read_ddl(path))
        except SchemaUnavailableError as e:
            logger.warning(f"{e}; using baseline tables only")
            return cls.baseline()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def has_table(self, table: str) -> bool:
        return (table or "").strip().lower() in self.tables

    def knows_columns(self, table: str) -> bool:
        """True when the DDL declared columns for this table."""
        return table in self.columns

    def columns_for(self, table: str) -> Tuple[str, ...]:
        return self.columns.get(table, ())

    def has_column(self, table: str, column: str) -> bool:
        return column.lower() in self.columns.get(table, ())

    def column_type(self, table: str, column: str) -> str:
        return self.column_types.get(table, {}).get(column.lower(), "")

    def enum_for(self, table: str, column: str) -> Optional[FrozenSet[str]]:
        return self.column_enums.get(table, {}).get(column.lower())

    def canonical_enum_value(self, table: str, column: str, value: str) -> Optional[str]:
        """Return the declared literal matching `value` case-insensitively, or None."""
        allowed = self.enum_for(table, column) or ()
        wanted = value.strip().lower()
        for literal in allowed:
            if literal.lower() == wanted:
                return literal
        return None

    def sorted_tables(self) -> List[str]:
        return sorted(self.tables)

    # ------------------------------------------------------------------
    # Prompt context
    # ------------------------------------------------------------------

    def tables_text(self) -> str:
        return ", ".join(self.sorted_tables())

    def columns_text(self) -> str:
        """`table: col1,col2; table2: ...` for allowed tables with known columns."""
        return "; ".join(
            f"{t}: {','.join(self.columns[t])}"
            for t in sorted(self.columns)
            if t in self.tables
        )

    def enums_text(self) -> str:
        """`table: col={a,b}; ...` for every enum-typed column."""
        parts = []
        for table in sorted(self.column_enums):
            pairs = sorted(
                f"{col}={{{','.join(sorted(values))}}}"
                for col, values in self.column_enums[table].items()
            )
            parts.append(f"{table}: {'; '.join(pairs)}")
        return "; ".join(parts)


def read_ddl(path: Optional[str]) -> str:
    """
    Read a DDL source file.

    Raises:
        SchemaUnavailableError: If the path is unset or unreadable
    """
    if not path:
        raise SchemaUnavailableError("<unset>", "no DDL path configured")
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SchemaUnavailableError(str(path), str(e)) from e


class SchemaRegistry:
    """
    Holds the current SchemaCatalog and replaces it atomically on reload.

    Callers take one snapshot per operation with `current()` and use it
    throughout, so a concurrent reload cannot change the schema mid-plan.
    """

    def __init__(self, ddl_path: Optional[str] = None, catalog: Optional[SchemaCatalog] = None):
        self.ddl_path = ddl_path
        self._lock = threading.Lock()
        self._catalog = catalog if catalog is not None else SchemaCatalog.from_file(ddl_path)

    def current(self) -> SchemaCatalog:
        return self._catalog

    def reload(self, ddl_text: Optional[str] = None) -> SchemaCatalog:
        """
        Rebuild the catalog from the DDL source (or the given text) and swap it in.

        Args:
            ddl_text: Optional DDL text to use instead of re-reading the file

        Returns:
            The newly installed catalog
        """
        if ddl_text is not None:
            catalog = SchemaCatalog.load(ddl_text)
        else:
            catalog = SchemaCatalog.from_file(self.ddl_path)
        with self._lock:
            self._catalog = catalog
        logger.info(f"Schema catalog reloaded ({len(catalog.tables)} tables)")
        return catalog
