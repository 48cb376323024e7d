# KPR Bot - Configuration
# ========================
"""
Runtime configuration read from the environment (and a `.env` file when
present). Invalid numbers fall back to their defaults with a warning.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUTHY = {"true", "1", "yes", "on"}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int, positive: bool = True) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        number = int(value.strip())
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using {default}")
        return default
    if positive and number <= 0:
        logger.warning(f"Non-positive {name}={number}, using {default}")
        return default
    return number


@dataclass
class BotConfig:
    """All settings for the bot and its HTTP surface."""
    database_url: str = ""
    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-20250514"
    llm_timeout: int = 60
    api_key: str = ""
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    prompt_path: str = "kpr_prompt.txt"
    ddl_path: str = "ddl.sql"
    audit_path: str = "sql_audit.jsonl"
    llm_can_see_data: bool = False
    relaxed: bool = False
    global_row_limit: int = 50
    raw_row_limit: int = 100
    sensitive_row_limit: int = 5
    identity_cache_ttl: int = 300
    query_timeout: int = 30

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "BotConfig":
        """Create config from environment variables, loading `.env` first."""
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv(Path.cwd() / ".env")

        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip(),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", "").strip(),
            claude_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-20250514"),
            llm_timeout=_env_int("LLM_TIMEOUT_SECONDS", 60),
            api_key=os.getenv("API_KEY", "").strip(),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
            http_port=_env_int("HTTP_PORT", 8080),
            prompt_path=os.getenv("KPR_PROMPT_PATH", "kpr_prompt.txt"),
            ddl_path=os.getenv("DDL_PATH", "ddl.sql"),
            # Empty string disables auditing
            audit_path=os.getenv("SQL_AUDIT_PATH", "sql_audit.jsonl").strip(),
            llm_can_see_data=_env_bool("LLM_CAN_SEE_DATA"),
            relaxed=_env_bool("RELAXED_MODE"),
            global_row_limit=_env_int("GLOBAL_ROW_LIMIT", 50),
            raw_row_limit=_env_int("RAW_ROW_LIMIT", 100),
            sensitive_row_limit=_env_int("SENSITIVE_ROW_LIMIT", 5),
            identity_cache_ttl=_env_int("IDENTITY_CACHE_TTL_SECONDS", 300, positive=False),
            query_timeout=_env_int("QUERY_TIMEOUT_SECONDS", 30, positive=False),
        )

    def validate(self) -> List[str]:
        """Return configuration problems; empty when the config is usable."""
        problems = []
        if not self.api_key:
            problems.append("API_KEY is not set; HTTP endpoints will reject every request")
        if not self.database_url:
            problems.append("DATABASE_URL is not set; data questions cannot be answered")
        if not Path(self.ddl_path).exists():
            problems.append(f"DDL file not found: {self.ddl_path}; baseline tables only")
        if self.sensitive_row_limit > self.global_row_limit:
            problems.append("SENSITIVE_ROW_LIMIT is larger than GLOBAL_ROW_LIMIT")
        if self.relaxed:
            problems.append("RELAXED_MODE is on; privacy caps and redaction are disabled")
        return problems
