# KPR Bot Engine Package
"""
KPR Bot - Query Engine
======================
Natural-language question to privacy-safe SQL to grounded answer.

Pipeline:
1. Table Resolution - Free text to an allowed table
2. Planning - Language-model JSON plan, or the naive fallback
3. Privacy Sanitization - Table admission, caps, identity gate, whitelist
4. Query Building - Parameterized SELECT or bounded raw SQL
5. Execution - One store query, redacted projection, audit record
6. Answer Composition - Facts-only prompt or fixed Indonesian templates
"""

# Models
from .models import (
    Filter,
    QueryPlan,
    SanitizedPlan,
    BuiltQuery,
    ExecutionResult,
    AnswerResult,
    NO_RESULTS,
    REDACTED,
)

# Errors
from .errors import (
    KPRBotError,
    SchemaUnavailableError,
    UnresolvedTableError,
    BulkAccessDeniedError,
    ForbiddenOperationError,
    PlanParseError,
    PlanParseReason,
    MissingTableError,
    QueryExecutionError,
    AuditWriteError,
    StoreUnavailableError,
    LLMError,
)

# Pipeline Components
from .schema_catalog import SchemaCatalog, SchemaRegistry
from .table_resolver import TableResolver, TableResolution
from .plan_parser import parse_plan, naive_plan
from .privacy_sanitizer import PrivacySanitizer, SanitizerConfig
from .query_builder import QueryBuilder
from .sql_guard import RawSqlInspection, analyze_raw_sql
from .executor import QueryExecutor, ExecutorConfig, RelationalStore, RowCursor, DuckDBStore
from .identity import IdentityContext, IdentityStore, IdentityResolver
from .llm_providers import LLMConfig, BaseLLMProvider, ClaudeProvider, MockProvider, create_llm_provider
from .planner import QueryPlanner
from .answer_composer import AnswerComposer, ComposerConfig, is_data_intent

__all__ = [
    # Models
    'Filter',
    'QueryPlan',
    'SanitizedPlan',
    'BuiltQuery',
    'ExecutionResult',
    'AnswerResult',
    'NO_RESULTS',
    'REDACTED',

    # Errors
    'KPRBotError',
    'SchemaUnavailableError',
    'UnresolvedTableError',
    'BulkAccessDeniedError',
    'ForbiddenOperationError',
    'PlanParseError',
    'PlanParseReason',
    'MissingTableError',
    'QueryExecutionError',
    'AuditWriteError',
    'StoreUnavailableError',
    'LLMError',

    # Components
    'SchemaCatalog',
    'SchemaRegistry',
    'TableResolver',
    'TableResolution',
    'parse_plan',
    'naive_plan',
    'PrivacySanitizer',
    'SanitizerConfig',
    'QueryBuilder',
    'RawSqlInspection',
    'analyze_raw_sql',
    'QueryExecutor',
    'ExecutorConfig',
    'RelationalStore',
    'RowCursor',
    'DuckDBStore',
    'IdentityContext',
    'IdentityStore',
    'IdentityResolver',
    'LLMConfig',
    'BaseLLMProvider',
    'ClaudeProvider',
    'MockProvider',
    'create_llm_provider',
    'QueryPlanner',
    'AnswerComposer',
    'ComposerConfig',
    'is_data_intent',
]
