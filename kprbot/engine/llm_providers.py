# KPR Bot - LLM Provider Abstraction
# ===================================
"""
LLM Provider System
===================
Black-box text completion used by the planner and the answer composer:
- Claude (Anthropic API) - Primary
- Mock (testing)

A request is one prompt plus optional auxiliary context blocks; the reply
is free text. `create_llm_provider()` returns None when no API key is
configured, which callers treat as "no language model available".
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Union

from .errors import LLMError

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LLMConfig:
    """Configuration for the Claude provider."""
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.1
    max_tokens: int = 1024
    timeout: int = 60


@dataclass
class LLMRequest:
    """Prompt plus auxiliary context blocks."""
    prompt: str
    context_blocks: List[str] = field(default_factory=list)
    system_prompt: Optional[str] = None
    max_tokens: int = 1024
    temperature: float = 0.1

    def blocks(self) -> List[str]:
        return [self.prompt] + [b for b in self.context_blocks if b]


@dataclass
class LLMResponse:
    """Response from the model."""
    content: str
    model: str
    provider: str
    generation_time_ms: float
    tokens_used: Optional[int] = None
    raw_response: Optional[Any] = None


# =============================================================================
# BASE LLM PROVIDER
# =============================================================================

class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig()

    @abstractmethod
    def generate(self, request: LLMRequest) -> LLMResponse:
        """
        Generate a response from the LLM.

        Raises:
            LLMError: On any provider failure
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        pass

    @abstractmethod
    def get_model_name(self) -> str:
        pass

    def complete(self, prompt: str, context_blocks: Iterable[str] = ()) -> str:
        """Convenience wrapper returning only the text."""
        request = LLMRequest(
            prompt=prompt,
            context_blocks=list(context_blocks),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        return self.generate(request).content


# =============================================================================
# CLAUDE PROVIDER
# =============================================================================

class ClaudeProvider(BaseLLMProvider):
    """Claude LLM provider using the Anthropic API."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)
        self.api_key = config.anthropic_api_key
        self.model = config.claude_model
        self._client = None
        self._client_lock = threading.Lock()

    def get_provider_name(self) -> str:
        return "claude"

    def get_model_name(self) -> str:
        return self.model

    def _get_client(self):
        """Get or create the Anthropic client."""
        if self._client is None:
            if not self.api_key:
                raise LLMError("claude", "ANTHROPIC_API_KEY not set")
            import anthropic
            with self._client_lock:
                if self._client is None:
                    self._client = anthropic.Anthropic(
                        api_key=self.api_key,
                        timeout=self.config.timeout,
                    )
        return self._client

    def is_available(self) -> bool:
        return bool(self.api_key)

    def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate a response using the Claude API."""
        start_time = time.time()
        client = self._get_client()

        content_blocks = [{"type": "text", "text": block} for block in request.blocks()]
        kwargs = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": content_blocks}],
            "temperature": request.temperature,
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt

        try:
            response = client.messages.create(**kwargs)
        except Exception as e:
            error_msg = str(e)
            logger.error(f"Claude API error: {error_msg}")
            if "authentication" in error_msg.lower() or "api key" in error_msg.lower():
                raise LLMError("claude", f"authentication failed: {error_msg}") from e
            if "rate" in error_msg.lower():
                raise LLMError("claude", f"rate limited: {error_msg}") from e
            raise LLMError("claude", error_msg) from e

        content = ""
        for block in response.content or []:
            if hasattr(block, 'text'):
                content += block.text

        generation_time = (time.time() - start_time) * 1000
        tokens = None
        if getattr(response, "usage", None):
            tokens = response.usage.input_tokens + response.usage.output_tokens

        return LLMResponse(
            content=content,
            model=self.model,
            provider="claude",
            generation_time_ms=generation_time,
            tokens_used=tokens,
            raw_response=response,
        )


# =============================================================================
# MOCK PROVIDER (for testing)
# =============================================================================

Responder = Union[str, Exception, Callable[[LLMRequest], str]]


class MockProvider(BaseLLMProvider):
    """
    Scripted provider for tests.

    Responses are consumed in order; each may be a string, an exception to
    raise, or a callable receiving the request. When the script runs out
    the default response is returned. Every request is kept in `requests`.
    """

    def __init__(self, responses: Iterable[Responder] = (), default: str = ""):
        super().__init__(LLMConfig())
        self._responses = deque(responses)
        self.default = default
        self.requests: List[LLMRequest] = []

    def get_provider_name(self) -> str:
        return "mock"

    def get_model_name(self) -> str:
        return "mock-model"

    def is_available(self) -> bool:
        return True

    def generate(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        responder: Responder = self._responses.popleft() if self._responses else self.default
        if isinstance(responder, Exception):
            raise responder
        content = responder(request) if callable(responder) else responder
        return LLMResponse(content=content, model="mock-model", provider="mock", generation_time_ms=0.0)


# =============================================================================
# PROVIDER FACTORY
# =============================================================================

def create_llm_provider(config: Optional[LLMConfig]) -> Optional[BaseLLMProvider]:
    """
    Create the Claude provider, or None when no API key is configured.
    """
    if config is None or not config.anthropic_api_key:
        logger.info("No language model configured; using deterministic fallbacks")
        return None
    logger.info(f"Creating LLM provider: claude ({config.claude_model})")
    return ClaudeProvider(config)
