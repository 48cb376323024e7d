"""
KPR Bot Audit Module
====================

Append-only audit trail of every query the engine runs.

This module provides:
- Pydantic record model with redacted filters and arguments
- JSONL sink with per-line SHA-256 checksums
- Integrity verification over the stored trail
"""

from .models import AuditRecord, AuditStatus, IntegrityCheckResult
from .service import QueryAuditLogger, redact_args, redact_filters, redact_sql_literals

__all__ = [
    # Models
    "AuditRecord",
    "AuditStatus",
    "IntegrityCheckResult",
    # Service
    "QueryAuditLogger",
    "redact_args",
    "redact_filters",
    "redact_sql_literals",
]
