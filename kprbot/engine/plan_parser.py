# KPR Bot - Plan Parser
# ======================
"""
Plan Parser
===========
Extracts a QueryPlan from language-model output.

The model is asked for JSON but is not guaranteed to return it: answers
arrive wrapped in code fences, with trailing prose, single objects split
over lines, or numbers where strings were expected. Extraction is
therefore field by field rather than a full document parse.

Two shapes are recognised:
    (A) {"operation": "SELECT", "table": ..., "columns": [...],
         "filters": [{"column": ..., "op": "=", "value": ...}], "limit": n}
    (B) {"sql": "SELECT ...", "args": [...]}

When a raw SQL payload is present it wins; the structured fields are kept
only as advisory hints.
"""

import re
import logging
from typing import List, Optional

from .errors import ForbiddenOperationError, MissingTableError, PlanParseError, PlanParseReason
from .models import Filter, QueryPlan, SELECT
from .table_resolver import DEFAULT_TABLE, TableResolver

logger = logging.getLogger(__name__)


DEFAULT_PLAN_LIMIT = 20

_STRING_VALUE = r'"((?:[^"\\]|\\.)*)"'
_FIELD_STRING = {
    name: re.compile(r'"' + name + r'"\s*:\s*' + _STRING_VALUE, re.IGNORECASE)
    for name in ("sql", "table", "operation")
}
_FIELD_LIST = {
    name: re.compile(r'"' + name + r'"\s*:\s*\[(.*?)\]', re.IGNORECASE | re.DOTALL)
    for name in ("columns", "args")
}
_LIMIT = re.compile(r'"limit"\s*:\s*"?(-?\d+)"?', re.IGNORECASE)
_LIST_ITEM = re.compile(_STRING_VALUE + r'|(-?\d+(?:\.\d+)?)')
_FILTER_OBJECT = re.compile(r'\{[^{}]*"column"[^{}]*\}', re.IGNORECASE)
_FILTER_COLUMN = re.compile(r'"column"\s*:\s*' + _STRING_VALUE, re.IGNORECASE)
_FILTER_OP = re.compile(r'"op"\s*:\s*' + _STRING_VALUE, re.IGNORECASE)
_FILTER_VALUE = re.compile(r'"value"\s*:\s*(?:' + _STRING_VALUE + r'|([^,}\s]+))', re.IGNORECASE)


def _unescape(value: str) -> str:
    return (value
            .replace('\\"', '"')
            .replace('\\n', ' ')
            .replace('\\t', ' ')
            .replace('\\\\', '\\'))


def _string_field(text: str, name: str) -> Optional[str]:
    match = _FIELD_STRING[name].search(text)
    if not match:
        return None
    return _unescape(match.group(1)).strip()


def _list_field(text: str, name: str) -> List[str]:
    match = _FIELD_LIST[name].search(text)
    if not match:
        return []
    items = []
    for quoted, number in _LIST_ITEM.findall(match.group(1)):
        item = _unescape(quoted).strip() if quoted else number
        if item:
            items.append(item)
    return items


def _filters(text: str) -> List[Filter]:
    filters = []
    for obj in _FILTER_OBJECT.findall(text):
        column = _FILTER_COLUMN.search(obj)
        value = _FILTER_VALUE.search(obj)
        if not column or not value:
            continue
        op = _FILTER_OP.search(obj)
        raw_value = value.group(1) if value.group(1) is not None else value.group(2)
        filters.append(Filter(
            column=column.group(1).strip().lower(),
            op=(op.group(1).strip() if op else "") or "=",
            value=_unescape(raw_value).strip().strip('"'),
        ))
    return filters


def parse_plan(text: str) -> QueryPlan:
    """
    Extract a plan from model output.

    Args:
        text: Raw model output

    Returns:
        QueryPlan (raw_sql set for shape B)

    Raises:
        PlanParseError: If the output is empty
        MissingTableError: If neither a table nor raw SQL could be found
        ForbiddenOperationError: If a structured plan names anything but SELECT
    """
    if not text or not text.strip():
        raise PlanParseError(PlanParseReason.EMPTY_OUTPUT)

    flat = text.replace("\r", " ").replace("\n", " ")

    raw_sql = _string_field(flat, "sql") or None
    table = (_string_field(flat, "table") or "").lower()
    operation = (_string_field(flat, "operation") or SELECT).upper()

    limit = DEFAULT_PLAN_LIMIT
    limit_match = _LIMIT.search(flat)
    if limit_match:
        limit = int(limit_match.group(1))

    if not raw_sql and operation != SELECT:
        raise ForbiddenOperationError(f"model planned operation '{operation}'")
    if not table and not raw_sql:
        raise MissingTableError(flat[:120])

    plan = QueryPlan(
        table=table,
        operation=operation,
        columns=[c.lower() for c in _list_field(flat, "columns")],
        filters=_filters(flat),
        limit=limit,
        raw_sql=raw_sql,
        raw_args=_list_field(flat, "args"),
    )
    logger.debug(
        f"Parsed plan: table={plan.table or '-'} op={plan.operation} "
        f"cols={len(plan.columns)} filters={len(plan.filters)} raw={plan.is_raw}"
    )
    return plan


def naive_plan(text: str, resolver: TableResolver) -> QueryPlan:
    """
    Deterministic plan for when no language model is available.

    Always returns a plan: unresolved text falls back to the default table.
    """
    table = resolver.resolve(text) or DEFAULT_TABLE
    return QueryPlan(table=table, operation=SELECT, limit=DEFAULT_PLAN_LIMIT)
