"""
Rate Limit Tracking
===================

Tracks the backend's rate limit from response headers
(``X-RateLimit-Limit``, ``X-RateLimit-Remaining``, ``X-RateLimit-Reset``,
``Retry-After``) or inline ``rate_limit`` events, and counts the reset
window down once per second.
"""

from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from copilot_stream.config.logging import get_logger
from copilot_stream.models.schemas import RateLimitInfo, RateLimitPayload, utc_now
from copilot_stream.sse.scheduler import LoopScheduler, Scheduler, TimerHandle

logger = get_logger(__name__)

DEFAULT_LIMIT = 30

RATE_LIMIT_HEADERS = (
    "x-ratelimit-limit",
    "x-ratelimit-remaining",
    "x-ratelimit-reset",
    "retry-after",
)


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return max(0, int(str(value).strip()))
    except ValueError:
        return default


class RateLimitTracker:
    """
    Rate limit state with an automatic one-second countdown.

    ``on_limit_exceeded(reset_seconds)`` fires when the state becomes limited,
    ``on_limit_restored()`` when the countdown reaches zero.
    """

    def __init__(
        self,
        default_limit: int = DEFAULT_LIMIT,
        scheduler: Optional[Scheduler] = None,
        on_limit_exceeded: Optional[Callable[[int], Any]] = None,
        on_limit_restored: Optional[Callable[[], Any]] = None,
        on_change: Optional[Callable[[RateLimitInfo], Any]] = None,
    ) -> None:
        self.default_limit = default_limit
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._on_limit_exceeded = on_limit_exceeded
        self._on_limit_restored = on_limit_restored
        self._on_change = on_change
        self._countdown: Optional[TimerHandle] = None
        self._was_limited = False
        self._info = self._initial_info()
        self.logger: Any = logger.bind(component="rate_limit_tracker")

    def _initial_info(self) -> RateLimitInfo:
        return RateLimitInfo(limit=self.default_limit, remaining=self.default_limit)

    @property
    def info(self) -> RateLimitInfo:
        return self._info

    @property
    def is_limited(self) -> bool:
        return self._info.is_limited

    @property
    def formatted_time(self) -> str:
        """Remaining reset window as ``M:SS``."""
        minutes, seconds = divmod(self._info.reset_seconds, 60)
        return f"{minutes}:{seconds:02d}"

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        """
        Apply rate-limit response headers.

        ``Retry-After`` takes precedence over ``X-RateLimit-Reset``. Missing or
        unparseable values fall back to the default limit, to ``limit`` for
        remaining, and to 0 for the reset window.

        Returns:
            False when the response carried no rate-limit headers (state unchanged)
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        if not any(name in lowered for name in RATE_LIMIT_HEADERS):
            return False

        limit = _parse_int(lowered.get("x-ratelimit-limit"), self.default_limit)
        remaining = _parse_int(lowered.get("x-ratelimit-remaining"), limit)
        reset_seconds = _parse_int(
            lowered.get("retry-after") or lowered.get("x-ratelimit-reset"), 0
        )
        self._apply(limit, remaining, reset_seconds)
        return True

    def update_from_event(self, payload: RateLimitPayload) -> None:
        """Apply an inline rate_limit event; absent fields keep their current value."""
        limit = payload.limit if payload.limit is not None else self._info.limit
        remaining = payload.remaining if payload.remaining is not None else limit
        reset_seconds = payload.reset_seconds if payload.reset_seconds is not None else 0
        self._apply(limit, remaining, reset_seconds)

    def update(self, **fields: Any) -> RateLimitInfo:
        """
        Merge fields into the current state.

        ``is_limited`` is taken as given when passed; a transition from
        not limited to limited starts the countdown.
        """
        previous = self._info
        values = previous.model_dump()
        values.update(fields)
        values["last_updated"] = utc_now()
        updated = RateLimitInfo(**values)
        self._set(updated)

        if updated.is_limited and not previous.is_limited:
            self._limit_exceeded(updated.reset_seconds)
        return updated

    def reset(self) -> None:
        """Back to the default limit with no active window."""
        self._cancel_countdown()
        self._was_limited = False
        self._set(self._initial_info())

    def close(self) -> None:
        """Cancel the countdown timer."""
        self._cancel_countdown()

    def _apply(self, limit: int, remaining: int, reset_seconds: int) -> None:
        now = utc_now()
        is_limited = remaining == 0 or reset_seconds > 0
        self._set(
            RateLimitInfo(
                limit=limit,
                remaining=remaining,
                reset_seconds=reset_seconds,
                reset_at=now + timedelta(seconds=reset_seconds) if reset_seconds else None,
                is_limited=is_limited,
                last_updated=now,
            )
        )

        if is_limited and not self._was_limited:
            self._limit_exceeded(reset_seconds)
        elif not is_limited:
            self._cancel_countdown()
            self._was_limited = False

    def _limit_exceeded(self, reset_seconds: int) -> None:
        self._was_limited = True
        self.logger.warning(
            "Rate limit exceeded",
            limit=self._info.limit,
            remaining=self._info.remaining,
            reset_seconds=reset_seconds,
        )
        self._notify("on_limit_exceeded", self._on_limit_exceeded, reset_seconds)
        self._start_countdown(reset_seconds)

    def _start_countdown(self, seconds: int) -> None:
        self._cancel_countdown()
        if seconds <= 0:
            return
        try:
            self._countdown = self._scheduler.call_later(1.0, self._tick)
        except RuntimeError as e:
            # LoopScheduler outside a running loop; the window then only
            # clears on the next update
            self.logger.warning(
                "Rate limit countdown not started", reset_seconds=seconds, error=str(e)
            )

    def _tick(self) -> None:
        self._countdown = None
        previous = self._info
        remaining_seconds = max(0, previous.reset_seconds - 1)
        still_limited = remaining_seconds > 0

        self._set(
            previous.model_copy(
                update={
                    "reset_seconds": remaining_seconds,
                    "is_limited": still_limited,
                    "remaining": 0 if still_limited else previous.limit,
                    "last_updated": utc_now(),
                }
            )
        )

        if still_limited:
            self._countdown = self._scheduler.call_later(1.0, self._tick)
        elif self._was_limited:
            self._was_limited = False
            self.logger.info("Rate limit restored", limit=previous.limit)
            self._notify("on_limit_restored", self._on_limit_restored)

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None

    def _set(self, info: RateLimitInfo) -> None:
        self._info = info
        self._notify("on_change", self._on_change, info)

    def _notify(self, name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.warning(
                "Rate limit callback raised", callback=name, error_type=type(e).__name__, error=str(e)
            )
