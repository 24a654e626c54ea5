"""
Backoff Utilities
=================

Exponential backoff delay computation shared by the connection manager, plus
a standalone ``retry_with_backoff`` helper for one-shot async operations
(e.g. the initial request that opens a stream).
"""

from typing import Any, Awaitable, Callable, Optional, TypeVar
import asyncio
import math

from pydantic import BaseModel, ConfigDict, Field

from copilot_stream.config.logging import get_logger
from copilot_stream.config.settings import StreamSettings

logger = get_logger(__name__)

T = TypeVar("T")


def compute_backoff_delay(
    initial_delay_ms: float,
    multiplier: float,
    attempt: int,
    max_delay_ms: Optional[float] = None,
) -> int:
    """
    Delay before a retry, in whole milliseconds.

    Args:
        initial_delay_ms: Delay for the first retry
        multiplier: Growth factor per attempt
        attempt: 0-based number of retries already scheduled
        max_delay_ms: Optional ceiling

    Returns:
        ``initial_delay_ms * multiplier ** attempt`` rounded, capped at ``max_delay_ms``
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    delay = initial_delay_ms * (multiplier ** attempt)
    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    # Half-up, so 112.5 ms becomes 113 ms
    return int(math.floor(delay + 0.5))


class RetryOptions(BaseModel):
    """Options for retry_with_backoff."""

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first")
    initial_delay_ms: float = Field(default=1000, gt=0, description="Delay after the first failure")
    max_delay_ms: float = Field(default=8000, gt=0, description="Delay ceiling")
    backoff_multiplier: float = Field(default=2.0, ge=1, description="Delay growth factor")
    on_retry: Optional[Callable[[int, BaseException, int], Any]] = Field(
        default=None, description="Called as (attempt, error, delay_ms) before each retry"
    )
    should_retry: Optional[Callable[[BaseException], bool]] = Field(
        default=None, description="Return False to stop retrying on this error"
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @classmethod
    def from_settings(cls, settings: StreamSettings, **overrides: Any) -> "RetryOptions":
        """Options using the utility variant's settings (1.5x multiplier by default)."""
        values: dict = {
            "max_attempts": max(1, settings.utility_max_attempts),
            "initial_delay_ms": settings.initial_retry_delay_ms,
            "max_delay_ms": settings.utility_max_delay_ms,
            "backoff_multiplier": settings.utility_backoff_multiplier,
        }
        values.update(overrides)
        return cls(**values)


class RetryResult(BaseModel):
    """Result of retry_with_backoff_detailed."""

    data: Any = None
    attempts: int = Field(..., ge=1, description="Calls actually made")
    had_retry: bool = False


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``fn`` until it succeeds, sleeping with exponential backoff between attempts.

    Args:
        fn: Zero-argument coroutine function
        options: Retry configuration, defaults to RetryOptions()
        sleep: Awaitable sleep taking seconds (injectable for tests)

    Returns:
        The first successful result

    Raises:
        The last error once attempts are exhausted, or immediately when
        ``should_retry`` rejects it
    """
    result, _ = await _run_with_backoff(fn, options or RetryOptions(), sleep)
    return result


async def retry_with_backoff_detailed(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult:
    """Like retry_with_backoff, but also reports how many attempts were needed."""
    data, attempts = await _run_with_backoff(fn, options or RetryOptions(), sleep)
    return RetryResult(data=data, attempts=attempts, had_retry=attempts > 1)


async def _run_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions,
    sleep: Callable[[float], Awaitable[Any]],
) -> "tuple[T, int]":
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(), attempt
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if options.should_retry is not None and not options.should_retry(e):
                raise
            if attempt >= options.max_attempts:
                logger.warning(
                    "Retry attempts exhausted", attempts=attempt, error=str(e)
                )
                raise

            delay_ms = compute_backoff_delay(
                options.initial_delay_ms,
                options.backoff_multiplier,
                attempt - 1,
                options.max_delay_ms,
            )
            logger.info(
                "Operation failed, retrying",
                attempt=attempt,
                delay_ms=delay_ms,
                error_type=type(e).__name__,
                error=str(e),
            )
            if options.on_retry is not None:
                options.on_retry(attempt, e, delay_ms)
            await sleep(delay_ms / 1000)
