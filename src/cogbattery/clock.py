"""
Event loop contract and cancellable timers.

EventLoop  – protocol satisfied by asyncio loops and by ManualLoop
ManualLoop – virtual-time loop for simulated sessions and tests
Timer      – single-owner cancellable timer built on an EventLoop

All engine mutations run as callbacks on one loop; nothing here is thread-safe.
"""
from __future__ import annotations

import heapq
import itertools
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class EventLoop(Protocol):
    """The subset of asyncio.AbstractEventLoop the engine relies on."""

    def time(self) -> float:
        """Return the loop's monotonic clock in seconds."""
        ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        ...


class ManualHandle:
    """Handle returned by ManualLoop.call_later."""

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple) -> None:
        self._when = when
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled

    def when(self) -> float:
        return self._when

    def _run(self) -> None:
        self._callback(*self._args)


class ManualLoop:
    """Virtual-time loop. Time only moves when advance() is called.

    Callbacks due at the same instant run in the order they were scheduled.
    Cancelled handles are discarded without running.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, ManualHandle]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        when = self._now + max(0.0, delay)
        handle = ManualHandle(when, callback, args)
        heapq.heappush(self._queue, (when, next(self._seq), handle))
        return handle

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        return self.call_later(0.0, callback, *args)

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        """Same as call_soon. Lets device readers post to a ManualLoop in tests."""
        return self.call_soon(callback, *args)

    def pending(self) -> int:
        """Number of scheduled, non-cancelled callbacks."""
        return sum(1 for _, _, h in self._queue if not h.cancelled())

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every callback that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled():
                continue
            self._now = when
            handle._run()
        self._now = target

    def run_until_idle(self, limit_s: float = 3600.0) -> None:
        """Run callbacks until none remain or limit_s of virtual time passes."""
        deadline = self._now + limit_s
        while self._queue:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled():
                continue
            if when > deadline:
                heapq.heappush(self._queue, (when, next(self._seq), handle))
                break
            self._now = when
            handle._run()


class Timer:
    """A named timer with exactly one pending callback at a time.

    arm() replaces any pending callback; cancel() guarantees it never fires.
    """

    def __init__(self, loop: EventLoop, name: str) -> None:
        self._loop = loop
        self.name = name
        self._handle: TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay_s: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        self._handle = self._loop.call_later(delay_s, self._fire, callback, args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[..., Any], args: tuple) -> None:
        self._handle = None
        callback(*args)
