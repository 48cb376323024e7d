"""
Audit Models
============

Pydantic models for the SQL audit trail.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditStatus(str, Enum):
    """Outcome of a query attempt."""
    OK = "ok"
    ERROR = "error"


class AuditRecord(BaseModel):
    """One query attempt. Written once, never changed."""
    model_config = ConfigDict(frozen=True)

    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    phone: str = ""
    table: str = ""
    columns: List[str] = Field(default_factory=list)
    filters: List[Dict[str, str]] = Field(default_factory=list)
    limit: int = 0
    query: str = ""
    args: List[Any] = Field(default_factory=list)
    row_count: int = 0
    duration_ms: int = 0
    status: AuditStatus = AuditStatus.OK
    error: Optional[str] = None
    checksum: Optional[str] = None


class IntegrityCheckResult(BaseModel):
    """Result of re-hashing a stored audit record."""
    line_number: int
    integrity_valid: bool
    stored_checksum: str
    computed_checksum: str
