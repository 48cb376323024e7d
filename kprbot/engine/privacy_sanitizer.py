# KPR Bot - Privacy Sanitizer
# ============================
"""
Privacy Sanitizer
=================
The policy pass every plan must clear before execution.

Steps, in fixed order:
1. Table admission     - table must be in the catalog (remapped via the
                         resolver when the model used a synonym)
2. Global cap          - clamp the limit (raw SQL gets a looser ceiling)
3. Filter validation   - keep only declared columns, or users columns on
                         tables one hop from users; enum values must be
                         declared literals
4. Sensitive gate      - sensitive tables need an equality filter on an
                         identity column, otherwise BulkAccessDeniedError
5. Column whitelist    - sensitive tables only expose their safe columns
6. Sensitive cap       - clamp the limit to the sensitive ceiling

Raw SQL plans go through the raw SQL guard instead: every sensitive table
must be pinned to one identity, and contact columns may only be selected
under their own name.

Relaxed mode skips steps 2, 4, 5 and 6. It is off unless configured.

The input plan is never modified; the result is a frozen SanitizedPlan.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import BulkAccessDeniedError, ForbiddenOperationError, UnresolvedTableError
from .models import Filter, QueryPlan, SanitizedPlan, SELECT
from .policy import (
    EQUALITY_OPS,
    SAFE_COLUMNS,
    USERS_FALLBACK_COLUMNS,
    can_join_users,
    has_identity_filter,
    is_sensitive_table,
)
from .schema_catalog import SchemaCatalog, SchemaRegistry
from .sql_guard import analyze_raw_sql
from .table_resolver import TableResolver

logger = logging.getLogger(__name__)


@dataclass
class SanitizerConfig:
    """Row ceilings and mode for the privacy sanitizer."""
    # Ceiling for structured plans
    global_limit: int = 50

    # Ceiling for raw SQL plans
    raw_limit: int = 100

    # Ceiling for any plan touching a sensitive table
    sensitive_limit: int = 5

    # Trusted deployments only
    relaxed: bool = False


def cap_limit(limit: int, ceiling: int) -> int:
    """Clamp a limit: unset, zero, negative or too large become the ceiling."""
    if limit is None or limit <= 0 or limit > ceiling:
        return ceiling
    return limit


class PrivacySanitizer:
    """
    Applies the privacy policy to a QueryPlan.

    Example:
        sanitizer = PrivacySanitizer(registry)
        safe = sanitizer.sanitize(plan)   # may raise BulkAccessDeniedError
    """

    def __init__(self, registry: SchemaRegistry, config: Optional[SanitizerConfig] = None):
        self.registry = registry
        self.config = config or SanitizerConfig()

    @property
    def relaxed(self) -> bool:
        return self.config.relaxed

    def sanitize(self, plan: QueryPlan, catalog: Optional[SchemaCatalog] = None) -> SanitizedPlan:
        """
        Run the full policy pass.

        Args:
            plan: Plan from the planner (not modified)
            catalog: Schema snapshot; taken from the registry when omitted

        Returns:
            SanitizedPlan ready for the query builder

        Raises:
            ForbiddenOperationError: Non-SELECT operation or unsafe raw SQL
            UnresolvedTableError: No allowed table
            BulkAccessDeniedError: Sensitive table without identity filter
        """
        catalog = catalog or self.registry.current()

        if (plan.operation or SELECT).strip().upper() != SELECT:
            raise ForbiddenOperationError(f"operation '{plan.operation}' is not SELECT")

        if plan.is_raw:
            return self._sanitize_raw(plan, catalog)

        table = self.admit_table(plan.table, catalog)
        sensitive = is_sensitive_table(table)

        limit = plan.limit if self.relaxed else cap_limit(plan.limit, self.config.global_limit)
        filters = self.validate_filters(table, plan.filters, catalog)
        columns = self.validate_columns(table, plan.columns, catalog)

        if sensitive and not self.relaxed:
            if not has_identity_filter(filters):
                logger.warning(f"Bulk access refused on sensitive table {table}")
                raise BulkAccessDeniedError(table)
            columns = self.whitelist_columns(table, columns, catalog)
            limit = cap_limit(limit, self.config.sensitive_limit)

        sanitized = SanitizedPlan(
            table=table,
            columns=tuple(columns),
            filters=tuple(filters),
            limit=limit,
            sensitive=sensitive,
            relaxed=self.relaxed,
        )
        logger.info(
            f"Plan sanitized: table={table} cols={len(columns)} "
            f"filters={len(filters)} limit={limit} sensitive={sensitive}"
        )
        return sanitized

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def admit_table(self, table: str, catalog: SchemaCatalog) -> str:
        """Return an allowed table name for `table`, remapping synonyms."""
        name = (table or "").strip().lower()
        if not name:
            raise UnresolvedTableError(name)
        if catalog.has_table(name):
            return name
        mapped = TableResolver(catalog).resolve(name, use_default=False)
        if not mapped:
            raise UnresolvedTableError(name)
        logger.info(f"Table '{name}' remapped to '{mapped}'")
        return mapped

    def validate_filters(self, table: str, filters: Sequence[Filter], catalog: SchemaCatalog) -> List[Filter]:
        """
        Keep equality filters on declared columns (or on users columns for
        tables that join to users). Enum-typed values must match a declared
        literal and are rewritten to it; others are dropped.
        """
        users_columns = catalog.columns_for("users") or USERS_FALLBACK_COLUMNS
        kept: List[Filter] = []
        for f in filters:
            column = f.column.strip().lower()
            if f.op.strip() not in EQUALITY_OPS or not str(f.value).strip():
                continue

            if catalog.has_column(table, column):
                owner = table
            elif can_join_users(table) and column in users_columns:
                owner = "users"
            else:
                logger.debug(f"Dropping filter on unknown column {table}.{column}")
                continue

            value = str(f.value).strip()
            if catalog.enum_for(owner, column) is not None:
                literal = catalog.canonical_enum_value(owner, column, value)
                if literal is None:
                    logger.debug(f"Dropping filter with undeclared enum value on {owner}.{column}")
                    continue
                value = literal

            kept.append(Filter(column=column, value=value, op="="))
        return kept

    def validate_columns(self, table: str, columns: Sequence[str], catalog: SchemaCatalog) -> List[str]:
        """Drop requested columns the catalog does not declare (when it knows the table)."""
        result: List[str] = []
        for c in columns:
            c = c.strip().lower()
            if c in result:
                continue
            if catalog.knows_columns(table) and not catalog.has_column(table, c):
                continue
            result.append(c)
        return result

    def whitelist_columns(self, table: str, columns: Sequence[str], catalog: Optional[SchemaCatalog] = None) -> List[str]:
        """
        Restrict a projection to the table's safe columns.

        An empty request, or one with no safe column in it, gets the full
        safe set. Applying this twice gives the same result as once.
        """
        safe = SAFE_COLUMNS.get(table, ())
        if catalog is not None and catalog.knows_columns(table):
            safe = tuple(c for c in safe if catalog.has_column(table, c))
        requested = [c.strip().lower() for c in columns]
        chosen = [c for c in safe if c in requested]
        return chosen or list(safe)

    # ------------------------------------------------------------------
    # Raw SQL
    # ------------------------------------------------------------------

    def _sanitize_raw(self, plan: QueryPlan, catalog: SchemaCatalog) -> SanitizedPlan:
        sql = plan.raw_sql.strip()
        inspection = analyze_raw_sql(sql, catalog)
        tables = inspection.tables

        if self.relaxed:
            limit = cap_limit(plan.limit, self.config.raw_limit) if plan.limit > 0 else 0
        else:
            if inspection.exposed_columns:
                logger.warning(f"Raw projection refused: {', '.join(inspection.exposed_columns)} renamed or wrapped")
                raise ForbiddenOperationError(
                    f"column '{inspection.exposed_columns[0]}' must be selected under its own name"
                )
            if inspection.unscoped_tables:
                logger.warning(f"Bulk raw access refused on {', '.join(inspection.unscoped_tables)}")
                raise BulkAccessDeniedError(inspection.unscoped_tables[0])
            limit = self.config.sensitive_limit if inspection.sensitive else self.config.raw_limit

        logger.info(
            f"Raw plan sanitized: tables={','.join(tables)} limit={limit} sensitive={inspection.sensitive}"
        )
        return SanitizedPlan(
            table=tables[0],
            columns=(),
            filters=(),
            limit=limit,
            sensitive=inspection.sensitive,
            relaxed=self.relaxed,
            raw_sql=sql,
            raw_args=tuple(str(a) for a in plan.raw_args),
        )
