"""Clock and timer abstraction used by every timer-driven component.

Components never call ``asyncio`` timers directly; they receive a
``Scheduler``. ``LoopScheduler`` forwards to a running asyncio loop, while
``ManualScheduler`` keeps a virtual clock that only moves when ``advance`` is
called, so state machines can be driven step by step.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from itertools import count
from typing import Any, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def create_future(self) -> "asyncio.Future[Any]": ...


class LoopScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop if loop is not None else asyncio.get_running_loop()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def time(self) -> float:
        return self._loop.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return self._loop.call_later(max(0.0, float(delay)), callback, *args)

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return self._loop.call_soon(callback, *args)

    def create_future(self) -> "asyncio.Future[Any]":
        return self._loop.create_future()


class ManualTimer:
    __slots__ = ("when", "callback", "args", "_cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Deterministic scheduler with a virtual clock.

    Timers fire only inside ``advance``/``run_ready``, in deadline order and,
    for equal deadlines, in the order they were scheduled. Futures are bound to
    a private event loop that is never run; their results can be inspected
    directly with ``done()``/``result()``.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._seq = count()
        self._heap: List[Tuple[float, int, ManualTimer]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self._now + max(0.0, float(delay)), callback, args)
        heapq.heappush(self._heap, (timer.when, next(self._seq), timer))
        return timer

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        return self.call_later(0.0, callback, *args)

    def create_future(self) -> "asyncio.Future[Any]":
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop.create_future()

    # ------------------------------------------------------------------
    def pending(self) -> int:
        """Return the number of armed (not cancelled) timers."""

        return sum(1 for _, _, timer in self._heap if not timer.cancelled())

    def next_deadline(self) -> Optional[float]:
        for when, _, timer in sorted(self._heap):
            if not timer.cancelled():
                return when
        return None

    def run_ready(self) -> int:
        """Fire every timer due at the current virtual time."""

        return self.advance(0.0)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers in order. Returns the count fired."""

        deadline = self._now + max(0.0, float(seconds))
        fired = 0
        while self._heap and self._heap[0][0] <= deadline:
            when, _, timer = heapq.heappop(self._heap)
            if timer.cancelled():
                continue
            self._now = max(self._now, when)
            timer.cancel()
            timer.callback(*timer.args)
            fired += 1
        self._now = deadline
        return fired

    def close(self) -> None:
        self._heap.clear()
        if self._loop is not None:
            self._loop.close()
            self._loop = None


__all__ = ["LoopScheduler", "ManualScheduler", "ManualTimer", "Scheduler", "TimerHandle"]
