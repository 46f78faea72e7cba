from __future__ import annotations

import asyncio
import logging

import pytest

from core.errors import (
    ErrorKind,
    MalformedOutputError,
    PipelineCancelled,
    SearchError,
    UpstreamError,
    ValidationFailed,
)
from core.retry import (
    RetryExecutor,
    RetryObserver,
    RetryPolicy,
    RetryPresets,
    compute_delay,
    is_retryable,
    logging_observer,
)


class Flaky:
    """Fails with `error` for the first `failures` calls, then returns `result`."""

    def __init__(self, failures: int, error: Exception, result: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _executor(policy: RetryPolicy, **kwargs) -> tuple[RetryExecutor, RecordingSleep]:
    sleep = RecordingSleep()
    return RetryExecutor(policy, sleep=sleep, rand=lambda: 0.5, **kwargs), sleep


def test_compute_delay_grows_and_caps() -> None:
    policy = RetryPresets.STANDARD
    delays = [compute_delay(n, policy, rand=lambda: 0.5) for n in range(6)]
    assert delays == [1000, 2000, 4000, 8000, 10_000, 10_000]


def test_compute_delay_jitter_range() -> None:
    policy = RetryPolicy(base_delay_ms=1000, jitter=True)
    assert compute_delay(0, policy, rand=lambda: 0.0) == 500
    assert compute_delay(0, policy, rand=lambda: 0.999) == 1499
    assert compute_delay(0, policy.with_overrides(jitter=False), rand=lambda: 0.0) == 1000


def test_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    assert RetryPresets.AGGRESSIVE.max_retries == 5


@pytest.mark.parametrize(
    "error,expected",
    [
        (UpstreamError("timed out", ErrorKind.TIMEOUT), True),
        (UpstreamError("bad gateway", status=502), True),
        (UpstreamError("not found", status=404), False),
        (MalformedOutputError("no json"), True),
        (SearchError("RAPIDAPI_KEY missing", ErrorKind.AUTH_FAILED, recoverable=False), False),
        (ValidationFailed("targetRoles empty"), False),
        # classification is by pattern only; the recoverable flag is not consulted
        (SearchError("role search failed", ErrorKind.SEARCH_FAILED, recoverable=True), False),
        (ConnectionResetError("ECONNRESET while reading"), True),
        (RuntimeError("TypeError: fetch failed"), True),
        (ValueError("plain bug"), False),
        (PipelineCancelled("stop"), False),
    ],
)
def test_is_retryable_classification(error: Exception, expected: bool) -> None:
    assert is_retryable(error, RetryPresets.STANDARD.retryable_patterns) is expected


def test_rate_limited_preset_only_retries_throttling() -> None:
    patterns = RetryPresets.RATE_LIMITED.retryable_patterns
    assert is_retryable(SearchError("slow down", ErrorKind.RATE_LIMITED), patterns)
    assert is_retryable(UpstreamError("Too Many Requests", ErrorKind.RATE_LIMITED, status=429), patterns)
    assert not is_retryable(UpstreamError("boom", status=503), patterns)


@pytest.mark.asyncio
async def test_retries_until_success_with_backoff() -> None:
    op = Flaky(2, UpstreamError("timed out", ErrorKind.TIMEOUT))
    retries: list[tuple[int, int]] = []
    successes: list[int] = []
    executor, sleep = _executor(
        RetryPresets.STANDARD,
        observer=RetryObserver(
            on_retry=lambda attempt, delay, _err: retries.append((attempt, delay)),
            on_success=successes.append,
        ),
    )

    assert await executor.run(op) == "ok"
    assert op.calls == 3
    assert retries == [(1, 1000), (2, 2000)]
    assert sleep.delays == [1.0, 2.0]
    assert successes == [2]


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately() -> None:
    op = Flaky(5, ValidationFailed("nope"))
    executor, sleep = _executor(RetryPresets.AGGRESSIVE)
    with pytest.raises(ValidationFailed):
        await executor.run(op)
    assert op.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhaustion_raises_last_error_and_notifies() -> None:
    err = MalformedOutputError("still not json")
    op = Flaky(10, err)
    exhausted: list[tuple[int, BaseException]] = []
    executor, sleep = _executor(
        RetryPresets.FAST,
        observer=RetryObserver(on_exhausted=lambda n, e: exhausted.append((n, e))),
    )
    with pytest.raises(MalformedOutputError) as info:
        await executor.run(op)
    assert info.value is err
    assert op.calls == 3
    assert len(sleep.delays) == 2
    assert exhausted == [(3, err)]


@pytest.mark.asyncio
async def test_cancel_before_first_attempt() -> None:
    cancel = asyncio.Event()
    cancel.set()
    op = Flaky(0, RuntimeError("unused"))
    executor, _ = _executor(RetryPresets.STANDARD, cancel_event=cancel)
    with pytest.raises(PipelineCancelled):
        await executor.run(op)
    assert op.calls == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying() -> None:
    cancel = asyncio.Event()

    async def sleep_until_cancelled(_seconds: float) -> None:
        cancel.set()
        await asyncio.Event().wait()

    op = Flaky(5, UpstreamError("timed out", ErrorKind.TIMEOUT))
    executor = RetryExecutor(
        RetryPresets.STANDARD, sleep=sleep_until_cancelled, rand=lambda: 0.5, cancel_event=cancel
    )
    with pytest.raises(PipelineCancelled):
        await asyncio.wait_for(executor.run(op), timeout=1)
    assert op.calls == 1


@pytest.mark.asyncio
async def test_logging_observer_writes_retry_lines(caplog) -> None:
    log = logging.getLogger("tests.retry")
    op = Flaky(1, UpstreamError("timed out", ErrorKind.TIMEOUT))
    executor, _ = _executor(RetryPresets.FAST, observer=logging_observer(log, "jsearch.search", role="ML"))
    with caplog.at_level(logging.WARNING, logger="tests.retry"):
        await executor.run(op)
    assert any("retry.scheduled op=jsearch.search attempt=1" in r.getMessage() for r in caplog.records)
    assert any("role=ML" in r.getMessage() for r in caplog.records)
