"""Factory for async LLM clients based on PipelineSettings."""

from __future__ import annotations

from typing import Callable, Dict

from core.llm_client import (
    AsyncClaudeLLMClient,
    AsyncGeminiLLMClient,
    AsyncLLMClient,
    AsyncOpenAILLMClient,
)
from core.obs import JsonRepoLogger, Logger
from core.settings import PipelineSettings


# Provider registry for simple DI. Extend as new adapters are added.
_ASYNC_PROVIDERS: Dict[str, Callable[[PipelineSettings, Logger], AsyncLLMClient]] = {
    "openai": lambda s, logger: AsyncOpenAILLMClient(
        api_key=s.openai_api_key,
        timeout=s.llm_timeout_seconds,
        logger=logger,
        log_content=s.log_llm_content,
    ),
    "claude": lambda s, logger: AsyncClaudeLLMClient(
        api_key=s.anthropic_api_key,
        timeout=s.llm_timeout_seconds,
        logger=logger,
        log_content=s.log_llm_content,
    ),
    "gemini": lambda s, logger: AsyncGeminiLLMClient(
        api_key=s.google_api_key,
        timeout=s.llm_timeout_seconds,
        logger=logger,
        log_content=s.log_llm_content,
    ),
}
_ALIASES = {"anthropic": "claude", "google": "gemini"}


def available_providers() -> list[str]:
    return sorted(_ASYNC_PROVIDERS)


def get_async_llm_client(
    settings: PipelineSettings,
    logger: Logger | None = None,
    provider: str | None = None,
) -> AsyncLLMClient:
    # Use a shared JSON repo logger by default so all LLM calls are observable.
    logger = logger or JsonRepoLogger(service="llm")
    name = (provider or settings.llm_provider or "openai").lower()
    name = _ALIASES.get(name, name)
    try:
        factory = _ASYNC_PROVIDERS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown async LLM provider '{name}'") from exc
    return factory(settings, logger)
