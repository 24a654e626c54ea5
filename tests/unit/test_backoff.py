"""
Backoff Utility Tests
=====================

Delay computation and the retry_with_backoff helper.
"""

import asyncio
from typing import List

import pytest

from copilot_stream.core.backoff import (
    RetryOptions,
    compute_backoff_delay,
    retry_with_backoff,
    retry_with_backoff_detailed,
)


class FakeSleep:
    """Records requested sleeps instead of waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class Flaky:
    """Coroutine function failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, result: str = "done", error: Exception = None):
        self.failures = failures
        self.result = result
        self.error = error or ConnectionError("temporary")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestComputeBackoffDelay:
    def test_doubling_sequence(self):
        delays = [compute_backoff_delay(1000, 2, attempt) for attempt in range(5)]
        assert delays == [1000, 2000, 4000, 8000, 16000]

    def test_alternative_multiplier(self):
        delays = [compute_backoff_delay(1000, 1.5, attempt) for attempt in range(4)]
        assert delays == [1000, 1500, 2250, 3375]

    def test_rounds_to_whole_milliseconds(self):
        assert compute_backoff_delay(50, 1.5, 2) == 113
        assert compute_backoff_delay(333, 1.1, 1) == 366

    def test_capped_at_max_delay(self):
        assert compute_backoff_delay(1000, 2, 10, max_delay_ms=8000) == 8000

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError):
            compute_backoff_delay(1000, 2, -1)


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        sleep = FakeSleep()
        fn = Flaky(failures=0)

        result = await retry_with_backoff(fn, sleep=sleep)

        assert result == "done"
        assert fn.calls == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_retries_with_growing_delay(self):
        sleep = FakeSleep()
        fn = Flaky(failures=2)
        options = RetryOptions(max_attempts=3, initial_delay_ms=100, backoff_multiplier=2)

        result = await retry_with_backoff(fn, options, sleep=sleep)

        assert result == "done"
        assert fn.calls == 3
        assert sleep.calls == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_delay_capped(self):
        sleep = FakeSleep()
        fn = Flaky(failures=3)
        options = RetryOptions(
            max_attempts=4, initial_delay_ms=1000, backoff_multiplier=4, max_delay_ms=5000
        )

        await retry_with_backoff(fn, options, sleep=sleep)

        assert sleep.calls == pytest.approx([1.0, 4.0, 5.0])

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        sleep = FakeSleep()
        error = TimeoutError("still down")
        fn = Flaky(failures=10, error=error)

        with pytest.raises(TimeoutError) as exc_info:
            await retry_with_backoff(fn, RetryOptions(max_attempts=3), sleep=sleep)

        assert exc_info.value is error
        assert fn.calls == 3
        assert len(sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_should_retry_refusal_stops_immediately(self):
        sleep = FakeSleep()
        fn = Flaky(failures=5, error=PermissionError("forbidden"))
        options = RetryOptions(
            max_attempts=5, should_retry=lambda error: not isinstance(error, PermissionError)
        )

        with pytest.raises(PermissionError):
            await retry_with_backoff(fn, options, sleep=sleep)

        assert fn.calls == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_on_retry_receives_attempt_error_delay(self):
        seen = []
        fn = Flaky(failures=2)
        options = RetryOptions(
            max_attempts=3,
            initial_delay_ms=200,
            backoff_multiplier=1.5,
            on_retry=lambda attempt, error, delay_ms: seen.append((attempt, str(error), delay_ms)),
        )

        await retry_with_backoff(fn, options, sleep=FakeSleep())

        assert seen == [(1, "temporary", 200), (2, "temporary", 300)]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        calls = 0

        async def cancelled() -> None:
            nonlocal calls
            calls += 1
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await retry_with_backoff(cancelled, sleep=FakeSleep())

        assert calls == 1


class TestRetryWithBackoffDetailed:
    @pytest.mark.asyncio
    async def test_first_try(self):
        result = await retry_with_backoff_detailed(Flaky(failures=0), sleep=FakeSleep())

        assert result.data == "done"
        assert result.attempts == 1
        assert result.had_retry is False

    @pytest.mark.asyncio
    async def test_counts_calls_made(self):
        result = await retry_with_backoff_detailed(
            Flaky(failures=2), RetryOptions(max_attempts=3), sleep=FakeSleep()
        )

        assert result.attempts == 3
        assert result.had_retry is True


class TestRetryOptions:
    def test_defaults(self):
        options = RetryOptions()

        assert options.max_attempts == 3
        assert options.initial_delay_ms == 1000
        assert options.max_delay_ms == 8000
        assert options.backoff_multiplier == 2.0

    def test_from_settings_uses_utility_multiplier(self, test_settings):
        options = RetryOptions.from_settings(test_settings)

        assert options.backoff_multiplier == 1.5
        assert options.max_attempts == test_settings.utility_max_attempts

    def test_from_settings_overrides(self, test_settings):
        options = RetryOptions.from_settings(test_settings, max_attempts=7)

        assert options.max_attempts == 7

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryOptions(max_attempts=0)
