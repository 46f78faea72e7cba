"""Async LLM provider adapters (OpenAI, Anthropic Claude, Google Gemini).

Adapters make exactly one provider call per `chat()`; retries belong to the
caller's RetryExecutor. Provider SDK failures are translated into the pipeline
error taxonomy so retry classification works the same for every provider.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Optional, Protocol

import anthropic
import google.generativeai as genai
import httpx
import openai
from anthropic import AsyncAnthropic
from google.api_core import exceptions as google_exceptions
from openai import AsyncOpenAI

from core.errors import ErrorKind, PipelineError, UpstreamError
from core.obs import Logger, NullLogger, with_span


def _ensure_req_id(kwargs: dict[str, Any]) -> str:
    req_id = kwargs.pop("req_id", None)
    return req_id if isinstance(req_id, str) and req_id else str(uuid.uuid4())


def _llm_span_fields(*args: Any, **kwargs: Any) -> dict[str, Any]:
    model = kwargs.get("model")
    if model is None and len(args) >= 3:
        model = args[2]
    return {"req_id": kwargs.get("req_id"), "model": model}


def _llm_span(provider: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return with_span(
        "llm.chat",
        logger_attr="_logger",
        fields={"provider": provider},
        fields_fn=_llm_span_fields,
    )


def _safe_text_preview(text: str, limit: int = 1000) -> str:
    return (text or "")[:limit]


def _safe_messages(messages: list[dict[str, Any]], *, log_content: bool) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for m in messages:
        content = m.get("content")
        if content is None:
            content = "\n".join(str(p or "") for p in m.get("parts") or [])
        entry: dict[str, Any] = {"role": m.get("role")}
        if log_content:
            entry["content"] = _safe_text_preview(content)
        else:
            entry["content_len"] = len(content)
        out.append(entry)
    return out


def _translate_sdk_error(provider: str, exc: BaseException) -> PipelineError:
    """Map openai / anthropic / google / httpx exceptions onto taxonomy errors."""
    # Timeouts first: the SDK timeout classes subclass their connection errors.
    if isinstance(
        exc,
        (
            openai.APITimeoutError,
            anthropic.APITimeoutError,
            google_exceptions.DeadlineExceeded,
            httpx.TimeoutException,
            asyncio.TimeoutError,
        ),
    ):
        return UpstreamError(f"{provider} request timed out", ErrorKind.TIMEOUT, recoverable=True)
    if isinstance(exc, (openai.RateLimitError, anthropic.RateLimitError, google_exceptions.ResourceExhausted)):
        return UpstreamError(
            f"{provider} rate limit exceeded", ErrorKind.RATE_LIMITED, status=429, recoverable=True
        )
    if isinstance(
        exc,
        (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            anthropic.AuthenticationError,
            anthropic.PermissionDeniedError,
            google_exceptions.Unauthenticated,
            google_exceptions.PermissionDenied,
        ),
    ):
        status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
        return UpstreamError(
            f"{provider} authentication failed",
            ErrorKind.AUTH_FAILED,
            status=status if isinstance(status, int) else None,
            recoverable=False,
        )
    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)):
        return UpstreamError(f"{provider} API error: {exc.status_code}", status=exc.status_code)
    if isinstance(exc, google_exceptions.GoogleAPICallError):
        code = exc.code if isinstance(exc.code, int) else None
        return UpstreamError(f"{provider} API error: {exc.message}", status=code)
    if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError, httpx.TransportError)):
        return UpstreamError(f"{provider} fetch failed: {exc}", recoverable=True)
    return UpstreamError(f"{provider} call failed: {exc}", recoverable=False)


class AsyncLLMClient(Protocol):
    """Port interface for async LLM calls."""

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.0,
        **kwargs: Any,
    ) -> str:
        """
        Send chat messages to an LLM and return the assistant's content.
        """
        ...


class _BaseAsyncClient:
    provider = "base"
    key_name = "API_KEY"

    def __init__(self, *, logger: Optional[Logger] = None, log_content: bool = False) -> None:
        self._logger: Logger = logger or NullLogger()
        self._log_content = log_content

    def _missing_key(self) -> UpstreamError:
        return UpstreamError(
            f"{self.key_name} is not configured", ErrorKind.AUTH_FAILED, recoverable=False
        )

    def _log_response(self, req_id: str, model: str, content: str, usage: Any) -> None:
        fields: dict[str, Any] = {
            "req_id": req_id,
            "provider": self.provider,
            "model": model,
            "usage": getattr(usage, "__dict__", None) if usage else None,
            "content_len": len(content or ""),
        }
        if self._log_content:
            fields["preview"] = _safe_text_preview(content or "")
        self._logger.info("llm.response", **fields)

    def _fail(self, req_id: str, model: str, exc: BaseException) -> PipelineError:
        err = _translate_sdk_error(self.provider, exc)
        self._logger.warn(
            "llm.failure",
            req_id=req_id,
            provider=self.provider,
            model=model,
            code=err.code,
            status=err.status,
            error=str(exc),
        )
        return err


class AsyncOpenAILLMClient(_BaseAsyncClient):
    provider = "openai"
    key_name = "OPENAI_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
        logger: Optional[Logger] = None,
        log_content: bool = False,
        client: Any | None = None,
    ):
        super().__init__(logger=logger, log_content=log_content)
        self._timeout = float(timeout)
        self._api_key = api_key
        self._client = client

    def _sdk(self) -> Any:
        # Built on first use so a missing key fails the run, not app startup.
        if self._client is None:
            if not self._api_key:
                raise self._missing_key()
            self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    @_llm_span("openai")
    async def chat(self, messages, model, temperature=0.0, **kwargs) -> str:
        req_id = _ensure_req_id(kwargs)
        self._logger.info(
            "llm.request",
            req_id=req_id,
            provider=self.provider,
            model=model,
            temperature=temperature,
            message_count=len(messages),
            messages=_safe_messages(messages, log_content=self._log_content),
        )
        try:
            resp = await self._sdk().chat.completions.create(
                model=model,
                messages=messages,
                timeout=self._timeout,
                temperature=temperature,
                **kwargs,
            )
        except (openai.OpenAIError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise self._fail(req_id, model, exc) from exc
        content = resp.choices[0].message.content or ""
        self._log_response(req_id, model, content, getattr(resp, "usage", None))
        return content


def _split_anthropic_messages(messages: list[dict[str, str]]):
    system = None
    converted: list[dict[str, str]] = []
    for m in messages:
        role = m.get("role")
        content = m.get("content", "")
        if role == "system" and system is None:
            system = content
            continue
        converted.append({"role": "assistant" if role == "assistant" else "user", "content": content})
    return system, converted


class AsyncClaudeLLMClient(_BaseAsyncClient):
    """Async Claude client implementing the AsyncLLMClient protocol."""

    provider = "anthropic"
    key_name = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
        logger: Optional[Logger] = None,
        log_content: bool = False,
        max_tokens: int = 4096,
        client: Any | None = None,
    ):
        super().__init__(logger=logger, log_content=log_content)
        self._api_key = api_key
        self._timeout = float(timeout)
        self._client = client
        self._max_tokens = max_tokens

    def _sdk(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise self._missing_key()
            self._client = AsyncAnthropic(api_key=self._api_key, timeout=self._timeout, max_retries=0)
        return self._client

    @_llm_span("anthropic")
    async def chat(self, messages, model, temperature=0.0, **kwargs) -> str:
        req_id = _ensure_req_id(kwargs)
        system, converted = _split_anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": model,
            "messages": converted,
            "max_tokens": kwargs.pop("max_tokens", self._max_tokens),
            "temperature": temperature,
        }
        if system:
            payload["system"] = system
        self._logger.info(
            "llm.request",
            req_id=req_id,
            provider=self.provider,
            model=model,
            message_count=len(converted),
            messages=_safe_messages(converted, log_content=self._log_content),
            system_len=len(system) if system else 0,
        )
        try:
            resp = await self._sdk().messages.create(**payload)
        except (anthropic.AnthropicError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise self._fail(req_id, model, exc) from exc
        content = "".join(getattr(block, "text", "") for block in (resp.content or []))
        self._log_response(req_id, model, content, getattr(resp, "usage", None))
        return content


def _split_gemini_messages(messages: list[dict[str, str]]):
    system = None
    converted = []
    for m in messages:
        role = m.get("role")
        content = m.get("content", "")
        if role == "system" and system is None:
            system = content
            continue
        converted.append({"role": "model" if role == "assistant" else "user", "parts": [content]})
    return system, converted


def _extract_gemini_text(resp: object) -> str:
    """Text of the first candidate; `resp.text` raises when there are no text parts."""
    candidates = getattr(resp, "candidates", None) or []
    if not candidates:
        raise UpstreamError("gemini returned no candidates", recoverable=True)
    content = getattr(candidates[0], "content", None)
    texts = [str(p.text) for p in (getattr(content, "parts", None) or []) if getattr(p, "text", None)]
    if not texts:
        reason = getattr(candidates[0], "finish_reason", None)
        raise UpstreamError(
            f"gemini returned no text parts (finish_reason={getattr(reason, 'name', reason)})",
            recoverable=True,
        )
    return "\n".join(texts).strip()


class AsyncGeminiLLMClient(_BaseAsyncClient):
    provider = "gemini"
    key_name = "GOOGLE_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
        logger: Optional[Logger] = None,
        log_content: bool = False,
        max_output_tokens: int = 8192,
    ):
        super().__init__(logger=logger, log_content=log_content)
        self._api_key = api_key
        self._configured = False
        self._timeout = float(timeout)
        self._max_tokens = max_output_tokens

    def _configure(self) -> None:
        if not self._configured:
            if not self._api_key:
                raise self._missing_key()
            genai.configure(api_key=self._api_key)
            self._configured = True

    @_llm_span("gemini")
    async def chat(self, messages, model, temperature=0.0, **kwargs) -> str:
        self._configure()
        req_id = _ensure_req_id(kwargs)
        system, converted = _split_gemini_messages(messages)
        gen_config = {
            "temperature": temperature,
            "max_output_tokens": kwargs.pop("max_output_tokens", self._max_tokens),
        }
        gm = genai.GenerativeModel(model_name=model, system_instruction=system)
        request_options = genai.types.RequestOptions(timeout=self._timeout)
        self._logger.info(
            "llm.request",
            req_id=req_id,
            provider=self.provider,
            model=model,
            message_count=len(converted),
            messages=_safe_messages(converted, log_content=self._log_content),
            system_len=len(system) if system else 0,
        )
        try:
            resp = await gm.generate_content_async(
                converted, generation_config=gen_config, request_options=request_options
            )
        except (google_exceptions.GoogleAPIError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise self._fail(req_id, model, exc) from exc
        content = _extract_gemini_text(resp)
        self._log_response(req_id, model, content, getattr(resp, "usage_metadata", None))
        return content
