# KPR Bot - Service Wiring
# =========================
"""
Builds the full object graph (catalog, store, audit, planner, sanitizer,
executor, identity, composer) from a BotConfig. The HTTP app, the
messaging handler and the CLI all get their composer from here.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .audit import QueryAuditLogger
from .config import BotConfig
from .engine.answer_composer import AnswerComposer, ComposerConfig
from .engine.errors import QueryExecutionError
from .engine.executor import DuckDBStore, ExecutorConfig, QueryExecutor, RelationalStore, RowCursor
from .engine.identity import IdentityResolver, IdentityStore
from .engine.knowledge import load_base_prompt
from .engine.llm_providers import BaseLLMProvider, LLMConfig, create_llm_provider
from .engine.planner import QueryPlanner
from .engine.privacy_sanitizer import PrivacySanitizer, SanitizerConfig
from .engine.schema_catalog import SchemaRegistry

logger = logging.getLogger(__name__)


class UnconfiguredStore(RelationalStore):
    """Stand-in when DATABASE_URL is empty: every query fails softly."""

    def query(self, sql: str, args: Sequence[Any] = (), timeout: Optional[float] = None) -> RowCursor:
        raise QueryExecutionError("no relational store configured", sql)


@dataclass
class BotServices:
    """Everything one running bot needs."""
    config: BotConfig
    registry: SchemaRegistry
    store: RelationalStore
    audit_logger: QueryAuditLogger
    composer: AnswerComposer
    llm: Optional[BaseLLMProvider] = None

    def close(self):
        self.store.close()


def create_services(config: BotConfig,
                    store: Optional[RelationalStore] = None,
                    llm: Optional[BaseLLMProvider] = None,
                    registry: Optional[SchemaRegistry] = None) -> BotServices:
    """
    Factory function to create the configured services.

    Args:
        config: Bot configuration
        store: Pre-built store (tests); opened from DATABASE_URL otherwise
        llm: Pre-built model provider (tests); created from the API key otherwise
        registry: Pre-built schema registry (tests); read from DDL_PATH otherwise

    Raises:
        StoreUnavailableError: If DATABASE_URL is set but cannot be opened
    """
    registry = registry or SchemaRegistry(config.ddl_path)

    if store is None:
        if config.database_url:
            store = DuckDBStore(config.database_url, read_only=True)
        else:
            logger.warning("DATABASE_URL not set; data questions will be answered without data")
            store = UnconfiguredStore()

    if llm is None:
        llm = create_llm_provider(LLMConfig(
            anthropic_api_key=config.anthropic_api_key or None,
            claude_model=config.claude_model,
            timeout=config.llm_timeout,
        ))

    audit_logger = QueryAuditLogger(config.audit_path or None)
    sanitizer = PrivacySanitizer(registry, SanitizerConfig(
        global_limit=config.global_row_limit,
        raw_limit=config.raw_row_limit,
        sensitive_limit=config.sensitive_row_limit,
        relaxed=config.relaxed,
    ))
    executor = QueryExecutor(store, registry, audit_logger, ExecutorConfig(
        timeout_seconds=config.query_timeout,
        relaxed=config.relaxed,
    ))

    composer = AnswerComposer(
        registry=registry,
        planner=QueryPlanner(registry, llm),
        sanitizer=sanitizer,
        executor=executor,
        llm=llm,
        identity_store=IdentityStore(),
        identity_resolver=IdentityResolver(store),
        base_prompt=load_base_prompt(config.prompt_path, config.ddl_path),
        config=ComposerConfig(
            llm_can_see_data=config.llm_can_see_data,
            relaxed=config.relaxed,
            identity_cache_ttl=config.identity_cache_ttl,
        ),
    )

    for problem in config.validate():
        logger.warning(f"Config: {problem}")
    logger.info(
        f"Services ready: tables={len(registry.current().tables)} "
        f"llm={'on' if llm else 'off'} audit={'on' if audit_logger.enabled else 'off'}"
    )
    return BotServices(
        config=config,
        registry=registry,
        store=store,
        audit_logger=audit_logger,
        composer=composer,
        llm=llm,
    )
