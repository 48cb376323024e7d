"""
Audit Service
=============

Append-only JSONL audit trail for every query the engine runs.

One line per attempt, written after the attempt finishes so the duration
is real. Sensitive filter values and their bound arguments are replaced
with a redaction marker before anything is serialized; so are literals
compared against sensitive columns inside the SQL text. Each line carries
a SHA-256 checksum of its content for tamper detection.

Write failures never reach the caller: auditing must not block answers.
"""

import re
import json
import hashlib
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from kprbot.engine.errors import AuditWriteError
from kprbot.engine.models import REDACTED, BuiltQuery, Filter, SanitizedPlan
from kprbot.engine.policy import REDACTED_COLUMNS, is_redacted_column

from .models import AuditRecord, AuditStatus, IntegrityCheckResult

logger = logging.getLogger(__name__)


def _compute_checksum(data: Dict[str, Any]) -> str:
    """SHA-256 over the record content with sorted keys."""
    serialized = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


def redact_filters(filters: Iterable[Filter]) -> List[Dict[str, str]]:
    return [
        {
            "column": f.column,
            "op": f.op,
            "value": REDACTED if is_redacted_column(f.column) else str(f.value),
        }
        for f in filters
    ]


def redact_args(args: Sequence[Any], arg_columns: Sequence[str]) -> List[Any]:
    redacted = []
    for i, value in enumerate(args):
        column = arg_columns[i] if i < len(arg_columns) else ""
        redacted.append(REDACTED if column and is_redacted_column(column) else value)
    return redacted


_REDACTED_NAMES = "|".join(sorted(REDACTED_COLUMNS))
_LITERAL = r"(?:'(?:[^']|'')*'|-?\d+(?:\.\d+)?)"
_COLUMN_THEN_LITERAL = re.compile(
    rf"(\b(?:{_REDACTED_NAMES})\b\s*(?:=|==|<>|!=|<=|>=|<|>|\bnot\s+i?like\b|\bi?like\b|\bnot\s+in\s*\(|\bin\s*\()\s*)"
    rf"({_LITERAL}(?:\s*,\s*{_LITERAL})*)",
    re.IGNORECASE,
)
_LITERAL_THEN_COLUMN = re.compile(
    rf"(?<![\w$.])({_LITERAL})(\s*(?:=|==|<>|!=|<=|>=|<|>)\s*(?:[a-z_][a-z0-9_]*\.)?(?:{_REDACTED_NAMES})\b)",
    re.IGNORECASE,
)


def redact_sql_literals(sql: str) -> str:
    """Replace literals compared against redacted columns with the redaction marker."""
    sql = _COLUMN_THEN_LITERAL.sub(lambda m: f"{m.group(1)}'{REDACTED}'", sql or "")
    return _LITERAL_THEN_COLUMN.sub(lambda m: f"'{REDACTED}'{m.group(2)}", sql)


class QueryAuditLogger:
    """
    Writes AuditRecords to a JSONL file.

    An empty path disables auditing entirely.

    Example:
        audit = QueryAuditLogger("sql_audit.jsonl")
        audit.log_query(phone, plan, query, row_count=3, duration_ms=12.5)
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def log_query(
        self,
        phone: str,
        plan: SanitizedPlan,
        query: Optional[BuiltQuery],
        row_count: int,
        duration_ms: float,
        status: str = AuditStatus.OK.value,
        error: Optional[BaseException] = None,
    ) -> Optional[AuditRecord]:
        """
        Record one query attempt.

        Args:
            phone: Identity that asked (may be empty)
            plan: The sanitized plan that was attempted
            query: Rendered query, or None if rendering failed
            row_count: Rows returned
            duration_ms: Wall time of the attempt
            status: ok or error
            error: Failure, if any

        Returns:
            The written record, or None when auditing is disabled or failed
        """
        if not self.enabled:
            return None

        sql = redact_sql_literals(query.sql if query else (plan.raw_sql or ""))
        args = redact_args(query.args, query.arg_columns) if query else []
        content = {
            "phone": phone or "",
            "table": plan.table,
            "columns": list(plan.columns),
            "filters": redact_filters(plan.filters),
            "limit": plan.limit,
            "query": sql,
            "args": args,
            "row_count": row_count,
            "duration_ms": int(duration_ms),
            "status": AuditStatus(status),
            "error": str(error) if error else None,
        }
        record = AuditRecord(**content)
        record = record.model_copy(update={"checksum": _compute_checksum(self._checksum_data(record))})

        try:
            self._write(record)
        except AuditWriteError as e:
            logger.warning(f"Audit record dropped: {e}")
            return None
        return record

    @staticmethod
    def _checksum_data(record: AuditRecord) -> Dict[str, Any]:
        return record.model_dump(mode="json", exclude={"checksum"})

    def _write(self, record: AuditRecord):
        line = record.model_dump_json(exclude_none=True)
        try:
            with self._lock:
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(line + '\n')
        except OSError as e:
            raise AuditWriteError(str(self.path), str(e)) from e

    def read_records(self) -> List[AuditRecord]:
        """Load every record from the audit file (empty if missing)."""
        if not self.enabled or not self.path.exists():
            return []
        records = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(AuditRecord.model_validate_json(line))
        return records

    def verify_integrity(self) -> List[IntegrityCheckResult]:
        """Recompute the checksum of every stored record."""
        results = []
        for number, record in enumerate(self.read_records(), start=1):
            computed = _compute_checksum(self._checksum_data(record))
            results.append(IntegrityCheckResult(
                line_number=number,
                integrity_valid=(computed == record.checksum),
                stored_checksum=record.checksum or "",
                computed_checksum=computed,
            ))
        return results
