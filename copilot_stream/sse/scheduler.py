"""
Timer Scheduling
================

Cancellable one-shot timers for the retry delay and countdown ticks.

LoopScheduler runs timers on the asyncio event loop. VirtualScheduler keeps
a virtual clock that only moves when ``advance()`` is called, so retry and
countdown behavior can be driven deterministically.
"""

from typing import Any, Callable, List, Optional, Protocol
import asyncio
import heapq
import itertools
import time


class TimerHandle(Protocol):
    """Handle returned by ``call_later``."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Minimal timer interface used by the connection manager and rate-limit tracker."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...

    def now(self) -> float: ...


class LoopScheduler:
    """Schedules callbacks on an asyncio event loop (the running loop by default)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(0.0, delay), callback)

    def now(self) -> float:
        if self._loop is not None:
            return self._loop.time()
        return time.monotonic()


class VirtualTimer:
    """Timer owned by a VirtualScheduler."""

    __slots__ = ("when", "seq", "callback", "cancelled")

    def __init__(self, when: float, seq: int, callback: Callable[[], Any]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "VirtualTimer") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class VirtualScheduler:
    """Manual clock: timers fire only inside ``advance()``, in deadline order."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: List[VirtualTimer] = []
        self._counter = itertools.count()
        self.scheduled_delays: List[float] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> VirtualTimer:
        delay = max(0.0, delay)
        timer = VirtualTimer(self._now + delay, next(self._counter), callback)
        heapq.heappush(self._timers, timer)
        self.scheduled_delays.append(delay)
        return timer

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing every timer that comes due.

        Timers scheduled by callbacks during the advance also fire if their
        deadline falls inside the window.

        Returns:
            Number of callbacks fired
        """
        target = self._now + seconds
        fired = 0
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.when
            timer.callback()
            fired += 1
        self._now = target
        return fired

    def run_all(self, limit: int = 1000) -> int:
        """Fire pending timers until none remain (bounded to avoid runaway loops)."""
        fired = 0
        while fired < limit:
            pending = self.pending
            if not pending:
                break
            next_when = min(timer.when for timer in pending)
            fired += self.advance(next_when - self._now)
        return fired

    @property
    def pending(self) -> List[VirtualTimer]:
        return sorted(timer for timer in self._timers if not timer.cancelled)
