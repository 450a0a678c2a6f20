"""Scheduled background work — periodic tasks with cancellation tokens.

Balance refresh and transaction monitoring run as PeriodicTasks. A task
ticks every `interval` seconds on its own daemon thread until one of:
- its callback returns True (the work is done),
- its cancellation token is set (disconnect, teardown),
- its optional max_duration ceiling elapses.

Cancellation is deterministic: cancel() wakes the sleeping thread at
once, and join() returns only after the thread has exited, so no tick
runs after cancel() + join().
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class StopReason(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CEILING = "ceiling"


class CancellationToken:
    """Shared flag that asks one or more tasks to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to timeout; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class PeriodicTask:
    """Runs fn every interval seconds on a background thread.

    fn returns True when no further ticks are needed. Exceptions raised
    by fn are logged and the task keeps ticking; a poll that fails once
    is retried on the next tick.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Optional[bool]],
        max_duration: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        run_immediately: bool = False,
        on_stop: Optional[Callable[["PeriodicTask"], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.max_duration = max_duration
        self.token = token or CancellationToken()
        self.run_immediately = run_immediately
        self.ticks = 0
        self.stop_reason: Optional[StopReason] = None
        self._fn = fn
        self._on_stop = on_stop
        self._thread: Optional[threading.Thread] = None

    def start(self) -> PeriodicTask:
        if self._thread is not None:
            raise RuntimeError(f"Task {self.name} already started")
        self._thread = threading.Thread(
            target=self._run, name=f"task-{self.name}", daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.token.cancel()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        started = time.monotonic()
        first = True
        while True:
            if not (first and self.run_immediately):
                wait = self.interval
                if self.max_duration is not None:
                    remaining = self.max_duration - (time.monotonic() - started)
                    if remaining <= 0:
                        self.stop_reason = StopReason.CEILING
                        break
                    wait = min(wait, remaining)
                if self.token.wait(wait):
                    self.stop_reason = StopReason.CANCELLED
                    break
                if (
                    self.max_duration is not None
                    and time.monotonic() - started >= self.max_duration
                ):
                    self.stop_reason = StopReason.CEILING
                    break
            first = False

            if self.token.cancelled:
                self.stop_reason = StopReason.CANCELLED
                break
            self.ticks += 1
            try:
                done = self._fn()
            except Exception:
                logger.exception("Periodic task %s tick %d failed", self.name, self.ticks)
                done = False
            if done:
                self.stop_reason = StopReason.COMPLETED
                break

        logger.debug(
            "Periodic task %s stopped after %d ticks (%s)",
            self.name, self.ticks, self.stop_reason.value,
        )
        if self._on_stop is not None:
            self._on_stop(self)


class TaskScheduler:
    """Owns a set of named periodic tasks so they can be torn down together."""

    def __init__(self) -> None:
        self._tasks: dict[str, PeriodicTask] = {}
        self._lock = threading.Lock()

    def schedule(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Optional[bool]],
        max_duration: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        run_immediately: bool = False,
        on_stop: Optional[Callable[[PeriodicTask], None]] = None,
    ) -> PeriodicTask:
        """Start a task under name, cancelling any previous task of that name."""
        task = PeriodicTask(
            name,
            interval,
            fn,
            max_duration=max_duration,
            token=token,
            run_immediately=run_immediately,
            on_stop=on_stop,
        )
        with self._lock:
            previous = self._tasks.pop(name, None)
            self._tasks[name] = task
        if previous is not None:
            previous.cancel()
        return task.start()

    def get(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    def discard(self, name: str, task: PeriodicTask) -> None:
        """Forget a finished task, unless name was rescheduled since."""
        with self._lock:
            if self._tasks.get(name) is task:
                del self._tasks[name]

    def cancel(self, name: str, wait: bool = True) -> None:
        with self._lock:
            task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            if wait:
                task.join()

    def cancel_all(self, wait: bool = True) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        if wait:
            for task in tasks:
                task.join()

    def active(self) -> list[str]:
        return [name for name, task in self._tasks.items() if task.is_running]
