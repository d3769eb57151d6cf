"""AI text completion through LangChain chat models."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ..config import get_settings
from ..core.errors import ErrorType, PhaseExecutionError, TradeflowError, classify_error
from ..core.resilience import CircuitBreaker, RetryPolicy, execute_with_retry

logger = structlog.get_logger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com"

_DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "deepseek": "deepseek-chat",
}

# One breaker per provider account, shared by every client built for it
_circuit_breakers: Dict[Tuple[str, str], CircuitBreaker] = {}


def provider_circuit_breaker(provider: str, api_key: str) -> CircuitBreaker:
    key = (provider.lower(), api_key)
    breaker = _circuit_breakers.get(key)
    if breaker is None:
        settings = get_settings()
        breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_seconds,
            name=f"ai:{key[0]}",
        )
        _circuit_breakers[key] = breaker
    return breaker


def create_chat_model(
    provider: str,
    model: str,
    api_key: Optional[str],
    temperature: float = 0.2,
    max_tokens: Optional[int] = None,
    base_url: Optional[str] = None,
) -> Any:
    """Instantiate a LangChain chat model for a provider.

    Raises:
        PhaseExecutionError: If the provider is not supported
    """
    kwargs: Dict[str, Any] = {
        "model": model,
        "temperature": temperature,
    }

    if max_tokens:
        kwargs["max_tokens"] = max_tokens

    if api_key:
        kwargs["api_key"] = api_key

    if provider == "deepseek":
        kwargs["base_url"] = base_url or DEEPSEEK_BASE_URL
        return ChatOpenAI(**kwargs)

    if provider == "openai":
        if base_url:
            kwargs["base_url"] = base_url
        return ChatOpenAI(**kwargs)

    if provider == "anthropic":
        if base_url:
            kwargs["base_url"] = base_url
        return ChatAnthropic(**kwargs)

    raise PhaseExecutionError(
        f"Unsupported AI provider: {provider}. Supported providers: openai, anthropic, deepseek",
        error_type=ErrorType.API_KEY,
    )


class AICompletionClient:
    """Single request/response completions with retry and error classification."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: Optional[str] = None,
        *,
        default_max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        settings = get_settings()
        self.provider = (provider or settings.ai_default_provider).lower()
        self.api_key = api_key
        self.model = model or _DEFAULT_MODELS.get(self.provider, settings.ai_default_model)
        self.default_max_tokens = default_max_tokens or settings.ai_default_max_tokens
        self.temperature = settings.ai_temperature if temperature is None else temperature
        self.retry_policy = retry_policy or RetryPolicy.for_vendor_calls()
        self.circuit_breaker = circuit_breaker

        if not self.api_key:
            raise PhaseExecutionError(
                f"No API key configured for AI provider {self.provider}",
                error_type=ErrorType.API_KEY,
            )

    def _build_model(self, max_tokens: int) -> Any:
        return create_chat_model(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            temperature=self.temperature,
            max_tokens=max_tokens,
        )

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Run one completion and return its text.

        Raises:
            PhaseExecutionError: When every attempt failed; ``error_type`` is
                classified from the last provider error (``ai_error`` by default)
        """
        llm = self._build_model(max_tokens or self.default_max_tokens)
        messages = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        try:
            response = await execute_with_retry(
                llm.ainvoke,
                messages,
                retry_policy=self.retry_policy,
                circuit_breaker=self.circuit_breaker,
                metadata={"provider": self.provider, "model": self.model},
            )
        except TradeflowError as exc:
            cause = exc.__cause__ or exc
            error_type = classify_error(cause, default=ErrorType.AI_ERROR)
            logger.error(
                "AI completion failed",
                provider=self.provider,
                model=self.model,
                error_type=error_type.value,
                error=str(cause),
            )
            raise PhaseExecutionError(
                f"AI provider {self.provider} failed: {cause}",
                error_type=error_type,
                details=exc.details,
            ) from exc

        text = _response_text(response)
        if not text.strip():
            raise PhaseExecutionError(
                f"AI provider {self.provider} returned an empty completion",
                error_type=ErrorType.AI_ERROR,
            )
        return text


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Anthropic returns content blocks
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(str(block.get("text", "")))
            else:
                parts.append(str(block))
        return "".join(parts)
    return str(content or "")


def build_ai_client(api_settings: Any, *, max_tokens: Optional[int] = None) -> AICompletionClient:
    """Build a client from per-request ``ApiSettings``.

    Clients for the same provider account share one circuit breaker, so a
    provider outage stops every phase from calling it, not just one client.
    """
    circuit_breaker = None
    if api_settings.ai_api_key:
        circuit_breaker = provider_circuit_breaker(api_settings.ai_provider, api_settings.ai_api_key)
    return AICompletionClient(
        provider=api_settings.ai_provider,
        api_key=api_settings.ai_api_key,
        model=api_settings.ai_model,
        default_max_tokens=max_tokens,
        circuit_breaker=circuit_breaker,
    )
