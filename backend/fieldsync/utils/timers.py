"""Clock and cancellable delayed tasks used by the debounce and throttle logic.

Everything is expressed in milliseconds. Services never touch the event loop
timers directly; they go through a :class:`Scheduler` so that tests can swap
in a manual clock and advance time deterministically.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler:
    """Monotonic clock plus delayed callbacks."""

    def now_ms(self) -> float:
        raise NotImplementedError

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class LoopScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay_ms, 0) / 1000, callback)


class TaskTracker:
    """Keeps references to fire-and-forget tasks so they can be awaited or cancelled."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Background task in '{self.name}' failed: {exc}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> int:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return len(tasks)

    def __len__(self) -> int:
        return len(self._tasks)


class DelayedTask:
    """Single-slot delayed coroutine.

    Scheduling again while a run is pending replaces it, which is exactly the
    debounce behaviour. Once the delay elapses the coroutine is started on the
    owning :class:`TaskTracker`.
    """

    def __init__(self, scheduler: Scheduler, tracker: TaskTracker, name: str):
        self.name = name
        self._scheduler = scheduler
        self._tracker = tracker
        self._handle: Optional[TimerHandle] = None
        self.due_at_ms: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def remaining_ms(self) -> float:
        if self.due_at_ms is None:
            return 0.0
        return max(0.0, self.due_at_ms - self._scheduler.now_ms())

    def schedule(self, delay_ms: float, factory: Callable[[], Awaitable[Any]]) -> None:
        self.cancel()
        self.due_at_ms = self._scheduler.now_ms() + max(delay_ms, 0)

        def fire() -> None:
            self._handle = None
            self.due_at_ms = None
            log.trace(f"Timer '{self.name}' fired")
            self._tracker.spawn(factory())

        self._handle = self._scheduler.call_later(delay_ms, fire)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        self.due_at_ms = None
        return True
