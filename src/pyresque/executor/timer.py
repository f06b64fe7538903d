"""
Coarse software timers for periodic bookkeeping.

Timers are kept in a mapping from integer fire-second to the list of
tasks due in that second. Resolution is one second on purpose: these are
best-effort maintenance timers (heartbeats, periodic cleanup), not a
high-resolution scheduler. Callers that need sub-second timing hand the
Timer an event-loop adapter, and every operation is then delegated to it.

The Timer is advanced by calling tick(). Either the owner calls it
cooperatively (the worker does so once per loop iteration), or start()
runs a background ticker thread which takes the place of an alarm
signal: it sleeps while no task is pending and wakes once per quantum
while armed.

Drift: a persistent task's next fire time is computed from the tick that
fired it, not from its original schedule. Under sustained overload the
interval drifts instead of firing a burst of catch-up callbacks.

Example:
    ```python
    timer = Timer()
    timer_id = timer.add(30, send_heartbeat, persistent=True)
    ...
    timer.tick()          # from the owner's loop
    timer.delete(timer_id)
    ```
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from uuid_extensions import uuid7

logger = logging.getLogger(__name__)

__all__ = [
    "Timer",
    "TimerTask",
    "TimerMode",
    "TimerEventLoop",
    "AsyncioTimerAdapter",
    "TimerError",
    "InvalidIntervalError",
    "InvalidCallbackError",
]


class TimerMode(Enum):
    """Registration mode passed to an event-loop adapter."""

    RECURRING = "recurring"
    ONCE = "once"


@runtime_checkable
class TimerEventLoop(Protocol):
    """External event loop a Timer can delegate to."""

    def add(
        self, interval: float, mode: TimerMode, callback: Callable[..., Any], args: tuple
    ) -> Any: ...

    def delete(self, timer_id: Any, mode: TimerMode) -> bool: ...

    def clear_all_timers(self) -> None: ...


@dataclass(frozen=True)
class TimerTask:
    """
    A scheduled callback.

    Attributes:
        fire_at: Integer epoch second the task is due
        callback: Callable to run
        args: Positional arguments for the callback
        persistent: Re-arm after firing
        interval: Seconds between firings
        timer_id: Identifier shared by every re-arm of the task
    """

    fire_at: int
    callback: Callable[..., Any]
    args: tuple
    persistent: bool
    interval: float
    timer_id: str


class Timer:
    """Software timer table owned by one component.

    All state lives on the instance; several timers can coexist in one
    process and a forked child simply inherits a copy.
    """

    def __init__(
        self,
        event_loop: TimerEventLoop | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Create an empty timer table.

        Args:
            event_loop: Optional adapter; when given, every operation is delegated
            clock: Time source in epoch seconds (injectable for simulated time)
        """
        self._event_loop = event_loop
        self._clock = clock
        self._tasks: dict[int, list[TimerTask]] = {}
        self._lock = threading.RLock()

        # ids popped by the running tick, and which of those were deleted
        # since (they must neither fire nor be re-armed)
        self._pending: set[str] = set()
        self._cancelled: set[str] = set()

        self._armed = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def armed(self) -> bool:
        """True while at least one local task is pending."""
        return self._armed.is_set()

    def add(
        self,
        interval: float,
        callback: Callable[..., Any],
        args: Iterable[Any] = (),
        persistent: bool = True,
        timer_id: str | None = None,
    ) -> Any:
        """Schedule ``callback(*args)`` to run ``interval`` seconds from now.

        Args:
            interval: Seconds until the first firing, must be positive
            callback: Callable to run
            args: Positional arguments for the callback
            persistent: Re-arm after every firing
            timer_id: Explicit id (reused when re-arming); generated if None

        Returns:
            The timer id (the adapter's native id when delegating)

        Raises:
            InvalidIntervalError: If interval is not positive
            InvalidCallbackError: If callback is not callable
        """
        if isinstance(interval, bool) or not isinstance(interval, (int, float)):
            raise InvalidIntervalError(f"bad timer interval: {interval!r}")
        if interval <= 0:
            raise InvalidIntervalError(f"bad timer interval: {interval!r}")
        if not callable(callback):
            raise InvalidCallbackError(f"timer callback is not callable: {callback!r}")

        args = tuple(args)

        if self._event_loop is not None:
            mode = TimerMode.RECURRING if persistent else TimerMode.ONCE
            return self._event_loop.add(interval, mode, callback, args)

        timer_id = timer_id or f"timer_{uuid7().hex}"
        self._schedule(
            TimerTask(
                fire_at=int(self._clock() + interval),
                callback=callback,
                args=args,
                persistent=persistent,
                interval=interval,
                timer_id=timer_id,
            )
        )
        return timer_id

    def _schedule(self, task: TimerTask) -> None:
        with self._lock:
            if not self._tasks:
                self._arm()
            self._tasks.setdefault(task.fire_at, []).append(task)

    def tick(self, now: float | None = None) -> int:
        """Run every task due at or before ``now``.

        Buckets run in fire-time order and tasks within a bucket in
        insertion order. A failing callback is logged and never stops its
        siblings. A task deleted by an earlier callback of the same tick
        does not run. Persistent tasks are re-armed from ``now``.

        Args:
            now: Current epoch seconds, defaults to the clock

        Returns:
            Number of callbacks run
        """
        if now is None:
            now = self._clock()

        with self._lock:
            due = sorted(fire_at for fire_at in self._tasks if fire_at <= now)
            batches = [self._tasks.pop(fire_at) for fire_at in due]
            popped = {task.timer_id for batch in batches for task in batch}
            self._pending.update(popped)

        fired = 0
        try:
            for batch in batches:
                for task in batch:
                    with self._lock:
                        if task.timer_id in self._cancelled:
                            continue
                    self._run(task)
                    fired += 1

                    if task.persistent:
                        with self._lock:
                            if task.timer_id in self._cancelled:
                                continue
                            self._schedule(
                                TimerTask(
                                    fire_at=int(now + task.interval),
                                    callback=task.callback,
                                    args=task.args,
                                    persistent=True,
                                    interval=task.interval,
                                    timer_id=task.timer_id,
                                )
                            )
        finally:
            with self._lock:
                self._pending.difference_update(popped)
                self._cancelled.difference_update(popped)
                if not self._tasks:
                    self._disarm()

        return fired

    def _run(self, task: TimerTask) -> None:
        try:
            task.callback(*task.args)
        except Exception:
            logger.exception(f"Timer {task.timer_id} callback failed")

    def delete(self, timer_id: Any) -> bool:
        """Remove every pending task with ``timer_id``.

        Idempotent: unknown or already-fired ids are not an error.

        Returns:
            True (the adapter's answer when delegating)
        """
        if self._event_loop is not None:
            return self._event_loop.delete(timer_id, TimerMode.RECURRING)

        with self._lock:
            if timer_id in self._pending:
                self._cancelled.add(timer_id)

            for fire_at in list(self._tasks):
                remaining = [t for t in self._tasks[fire_at] if t.timer_id != timer_id]
                if remaining:
                    self._tasks[fire_at] = remaining
                else:
                    del self._tasks[fire_at]

            if not self._tasks:
                self._disarm()

        return True

    def delete_all(self) -> None:
        """Remove every task and disarm the ticker."""
        with self._lock:
            self._cancelled.update(self._pending)
            self._tasks.clear()
            self._disarm()

        if self._event_loop is not None:
            self._event_loop.clear_all_timers()

    def count(self) -> int:
        """Number of distinct pending fire-second buckets (not tasks)."""
        with self._lock:
            return len(self._tasks)

    def pending(self) -> list[TimerTask]:
        """Snapshot of every pending task, soonest first."""
        with self._lock:
            return [task for fire_at in sorted(self._tasks) for task in self._tasks[fire_at]]

    # ========================================================================
    # Background ticker
    # ========================================================================

    def _arm(self) -> None:
        self._armed.set()

    def _disarm(self) -> None:
        self._armed.clear()

    def start(self, quantum: float = 1.0) -> None:
        """Start the background ticker thread.

        The thread ticks once per ``quantum`` while tasks are pending and
        idles otherwise. Calling start() twice is a no-op.
        """
        if self._event_loop is not None:
            logger.debug("Timer delegates to an event loop, ticker thread not started")
            return
        if self._thread is not None and self._thread.is_alive():
            return

        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._ticker, args=(quantum,), name="pyresque-timer", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the ticker thread and wait for it to exit."""
        self._stopping.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _ticker(self, quantum: float) -> None:
        while not self._stopping.is_set():
            if not self._armed.wait(quantum):
                continue
            if self._stopping.wait(quantum):
                break
            try:
                self.tick()
            except Exception:
                logger.exception("Timer tick failed")


class AsyncioTimerAdapter:
    """Delegate timers to an asyncio event loop.

    Gives sub-second resolution by registering ``loop.call_later`` handles.
    Every method must be called from the loop's own thread.

    Usage:
        timer = Timer(event_loop=AsyncioTimerAdapter(asyncio.get_running_loop()))
        timer_id = timer.add(0.25, poll_status)
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._ids = itertools.count(1)
        self._handles: dict[int, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def add(
        self, interval: float, mode: TimerMode, callback: Callable[..., Any], args: tuple
    ) -> int:
        timer_id = next(self._ids)
        loop = self._get_loop()

        def fire() -> None:
            if mode is TimerMode.RECURRING:
                self._handles[timer_id] = loop.call_later(interval, fire)
            else:
                self._handles.pop(timer_id, None)
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Timer {timer_id} callback failed")

        self._handles[timer_id] = loop.call_later(interval, fire)
        return timer_id

    def delete(self, timer_id: Any, mode: TimerMode) -> bool:
        handle = self._handles.pop(timer_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def clear_all_timers(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)


class TimerError(Exception):
    """Timer operation failed."""

    pass


class InvalidIntervalError(TimerError, ValueError):
    """Timer interval was not a positive number."""

    pass


class InvalidCallbackError(TimerError, ValueError):
    """Timer callback was not callable."""

    pass
