# KPR Bot - Engine Errors
# ========================
"""
Engine Errors
=============
Every failure the planning/execution engine can report.

Each error carries a `user_message` in Indonesian that is safe to show to the
person chatting with the bot; the exception text itself is for logs only.
"""

from enum import Enum
from typing import Optional


class KPRBotError(Exception):
    """Base exception for engine errors."""

    user_message = "Maaf, permintaan ini belum bisa diproses. Coba tanya dengan cara lain ya."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class SchemaUnavailableError(KPRBotError):
    """Raised when the DDL source cannot be read."""

    def __init__(self, path: str, original_error: Optional[str] = None):
        self.path = path
        self.original_error = original_error
        super().__init__(f"Schema source unavailable: {path} ({original_error or 'unknown error'})")


class UnresolvedTableError(KPRBotError):
    """Raised when no allowed table matches the plan."""

    user_message = (
        "Aku belum bisa menentukan data yang kamu maksud. "
        "Coba sebutkan lebih spesifik, misalnya 'status pengajuan' atau 'profil saya'."
    )

    def __init__(self, table: str = ""):
        self.table = table
        super().__init__(f"No allowed table could be resolved from '{table}'")


class BulkAccessDeniedError(KPRBotError):
    """Raised when a sensitive table is queried without an identity filter."""

    user_message = (
        "Akses massal ke data pengguna dibatasi. Sebutkan filter spesifik "
        "(misal: id, user_id, phone, atau email)."
    )

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Identity-bearing filter required for sensitive table '{table}'")


class ForbiddenOperationError(KPRBotError):
    """Raised for anything other than a read-only SELECT."""

    user_message = "Permintaan ini tidak diizinkan. Aku hanya bisa membaca data, bukan mengubahnya."

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Forbidden operation: {reason}")


class PlanParseReason(str, Enum):
    """Why model output could not be turned into a plan."""
    EMPTY_OUTPUT = "empty_output"
    MISSING_TABLE = "missing_table"
    FORBIDDEN_OPERATION = "forbidden_operation"


class PlanParseError(KPRBotError):
    """Raised when model output has no usable plan."""

    def __init__(self, reason: PlanParseReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"Could not parse plan ({reason.value}){': ' + detail if detail else ''}")


class MissingTableError(PlanParseError):
    """Neither a table nor raw SQL could be extracted."""

    def __init__(self, detail: str = ""):
        super().__init__(PlanParseReason.MISSING_TABLE, detail)


class QueryExecutionError(KPRBotError):
    """Raised when the store rejects a rendered query."""

    user_message = "Data sedang tidak bisa diambil. Coba lagi sebentar lagi ya."

    def __init__(self, message: str, query: str = ""):
        self.query = query
        super().__init__(message)


class AuditWriteError(KPRBotError):
    """Raised internally when the audit sink cannot be written."""

    def __init__(self, path: str, original_error: Optional[str] = None):
        self.path = path
        self.original_error = original_error
        super().__init__(f"Audit write failed for {path}: {original_error or 'unknown error'}")


class StoreUnavailableError(KPRBotError):
    """Raised when a configured store cannot be opened at all."""

    def __init__(self, target: str, original_error: Optional[str] = None):
        self.target = target
        self.original_error = original_error
        super().__init__(f"Cannot open relational store at {target}: {original_error or 'unknown error'}")


class LLMError(KPRBotError):
    """Raised when the language model call fails."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} request failed: {reason}")
