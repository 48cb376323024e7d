# KPR Bot - Privacy Policy Tables
# ================================
"""
Fixed privacy policy shared by the sanitizer, the query builder and the
executor: which tables are sensitive, which columns identify a person,
which columns may be shown, and how tables join to the users table.
"""

from typing import Dict, FrozenSet, Iterable, Tuple

from .models import Filter

SENSITIVE_TABLES: FrozenSet[str] = frozenset({
    "users",
    "user_profiles",
    "kpr_applications",
    "approval_workflow",
    "branch_staff",
})

IDENTITY_COLUMNS: FrozenSet[str] = frozenset({"id", "user_id", "phone", "email"})

EQUALITY_OPS: FrozenSet[str] = frozenset({"=", "eq", "=="})

# Columns that may be shown from each sensitive table, in display order
SAFE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "users": ("id", "username", "status", "created_at"),
    "user_profiles": ("id", "user_id", "full_name", "occupation", "city", "province"),
    "kpr_applications": (
        "id", "application_number", "status", "submitted_at", "approved_at",
        "rejected_at", "loan_amount", "down_payment", "property_value", "ltv_ratio",
    ),
    "approval_workflow": ("id", "application_id", "stage", "status", "assigned_to", "due_date"),
    "branch_staff": ("id", "user_id", "branch_code", "position", "is_active"),
}

# Tables one hop away from users, with the column that holds users.id
USERS_JOIN_KEYS: Dict[str, str] = {
    "kpr_applications": "user_id",
    "user_profiles": "user_id",
    "branch_staff": "user_id",
    "approval_workflow": "assigned_to",
}

# Assumed users columns when the DDL does not declare the table
USERS_FALLBACK_COLUMNS: Tuple[str, ...] = ("id", "username", "email", "phone", "status", "created_at")

# Values of these columns never leave the executor unless relaxed
REDACTED_COLUMNS: FrozenSet[str] = frozenset({"email", "phone", "monthly_income", "nik", "npwp"})


def is_sensitive_table(table: str) -> bool:
    return (table or "").strip().lower() in SENSITIVE_TABLES


def can_join_users(table: str) -> bool:
    return (table or "").strip().lower() in USERS_JOIN_KEYS


def is_identity_filter(f: Filter) -> bool:
    return (
        f.column.strip().lower() in IDENTITY_COLUMNS
        and f.op.strip() in EQUALITY_OPS
        and bool(str(f.value).strip())
    )


def has_identity_filter(filters: Iterable[Filter]) -> bool:
    return any(is_identity_filter(f) for f in filters)


def is_redacted_column(column: str) -> bool:
    return column.strip().lower() in REDACTED_COLUMNS
