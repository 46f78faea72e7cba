"""Retry with exponential backoff and jitter for async operations.

Usage:

    executor = RetryExecutor(RetryPresets.STANDARD, observer=RetryObserver(on_retry=...))
    result = await executor.run(lambda: client.fetch(...))

Errors are classified by substring match (case-insensitive) against the error
kind/code, any HTTP-status-like field, and the message. Non-retryable errors
propagate on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from core.errors import PipelineCancelled, PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "TIMEOUT",
    "RATE_LIMITED",
    "MALFORMED_OUTPUT",
    "429",
    "500",
    "502",
    "503",
    "504",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "connection reset",
    "fetch failed",
    "name resolution",
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry configuration. Delays are in milliseconds."""

    max_attempts: int = 4
    base_delay_ms: int = 1000
    max_delay_ms: int = 10_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_patterns: tuple[str, ...] = DEFAULT_RETRYABLE_PATTERNS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        return replace(self, **changes)


class RetryPresets:
    """Named policies for common call sites."""

    FAST = RetryPolicy(max_attempts=3, base_delay_ms=500, max_delay_ms=2_000, backoff_multiplier=1.5)
    STANDARD = RetryPolicy(max_attempts=4, base_delay_ms=1_000, max_delay_ms=10_000, backoff_multiplier=2.0)
    AGGRESSIVE = RetryPolicy(max_attempts=6, base_delay_ms=2_000, max_delay_ms=30_000, backoff_multiplier=2.0)
    RATE_LIMITED = RetryPolicy(
        max_attempts=4,
        base_delay_ms=5_000,
        max_delay_ms=60_000,
        backoff_multiplier=2.0,
        retryable_patterns=("429", "RATE_LIMITED", "rate limit"),
    )


@dataclass(slots=True)
class RetryObserver:
    """Optional hooks fired by RetryExecutor."""

    on_retry: Optional[Callable[[int, int, BaseException], None]] = None
    on_success: Optional[Callable[[int], None]] = None
    on_exhausted: Optional[Callable[[int, BaseException], None]] = None


def _error_info(error: BaseException) -> tuple[str, str, str]:
    """Return (code, status, message) strings used for pattern matching."""
    if isinstance(error, PipelineError):
        status = error.status
        return error.code, str(status) if status is not None else "", error.message

    code = getattr(error, "code", None)
    code_str = str(code) if code not in (None, "") else ""
    # Exception class names ("TimeoutError", "ConnectError") carry transient markers too.
    code_str = f"{code_str} {type(error).__name__}".strip()
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    return code_str, str(status) if status is not None else "", str(error)


def is_retryable(error: BaseException, patterns: Sequence[str]) -> bool:
    """Case-insensitive substring match of `patterns` against the error's code, status, and message."""
    if isinstance(error, PipelineCancelled):
        return False
    code, status, message = (part.lower() for part in _error_info(error))
    for pattern in patterns:
        needle = pattern.lower()
        if needle and (needle in code or needle in status or needle in message):
            return True
    return False


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> int:
    """Backoff delay in ms for a zero-based `attempt` index."""
    delay = min(float(policy.max_delay_ms), policy.base_delay_ms * (policy.backoff_multiplier**attempt))
    if policy.jitter:
        delay *= 0.5 + rand()
    return max(0, int(delay))


@dataclass(slots=True)
class RetryExecutor:
    """Run an async operation under a RetryPolicy."""

    policy: RetryPolicy = field(default_factory=lambda: RetryPresets.STANDARD)
    observer: RetryObserver | None = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rand: Callable[[], float] = random.random
    cancel_event: asyncio.Event | None = None

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled("retry abandoned after cancellation")

    async def _backoff(self, delay_ms: int) -> None:
        seconds = delay_ms / 1000.0
        if self.cancel_event is None:
            await self.sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        self._check_cancelled()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        observer = self.observer or RetryObserver()
        attempt = 0
        while True:
            self._check_cancelled()
            try:
                result = await operation()
            except PipelineCancelled:
                raise
            except Exception as exc:  # noqa: BLE001 - classified below
                if not is_retryable(exc, self.policy.retryable_patterns):
                    raise
                if attempt + 1 >= self.policy.max_attempts:
                    if observer.on_exhausted:
                        observer.on_exhausted(attempt + 1, exc)
                    raise
                delay = compute_delay(attempt, self.policy, self.rand)
                if observer.on_retry:
                    observer.on_retry(attempt + 1, delay, exc)
                await self._backoff(delay)
                attempt += 1
                continue
            if observer.on_success:
                observer.on_success(attempt)
            return result


def logging_observer(
    log: logging.Logger,
    operation: str,
    **fields: Any,
) -> RetryObserver:
    """RetryObserver that writes retry/exhaustion lines to a stdlib logger."""
    extra = " ".join(f"{k}={v}" for k, v in fields.items())

    def _on_retry(attempt: int, delay: int, error: BaseException) -> None:
        log.warning(
            "retry.scheduled op=%s attempt=%s delay_ms=%s error=%s %s",
            operation,
            attempt,
            delay,
            str(error),
            extra,
        )

    def _on_exhausted(attempts: int, error: BaseException) -> None:
        log.error(
            "retry.exhausted op=%s attempts=%s error=%s %s",
            operation,
            attempts,
            str(error),
            extra,
        )

    return RetryObserver(on_retry=_on_retry, on_exhausted=_on_exhausted)
