"""Periodic task scheduling."""

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class ScheduledTask(Protocol):
    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None:
        """Stop future runs. A run already in progress is allowed to finish."""
        ...


class Scheduler(Protocol):
    def schedule(self, period_ms: int, task: Callable[[], None]) -> ScheduledTask:
        """Run ``task`` every ``period_ms`` until the returned handle is cancelled."""
        ...


class _PeriodicThread:
    """A daemon thread calling one task on a fixed period.

    Ticks are never dropped. When a run overruns its period the next run
    starts as soon as it returns and the schedule re-anchors on that
    moment, so there is no burst of catch-up runs.
    """

    def __init__(self, period_ms: int, task: Callable[[], None], name: str) -> None:
        if period_ms <= 0:
            raise ValueError(f"period_ms must be positive, got {period_ms}")
        self._period = period_ms / 1000
        self._task = task
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        deadline = time.monotonic() + self._period
        while not self._stop.wait(max(0.0, deadline - time.monotonic())):
            try:
                self._task()
            except Exception:
                logger.exception("Periodic task %s failed", self._thread.name)

            deadline += self._period
            now = time.monotonic()
            if deadline < now:
                deadline = now


class ThreadScheduler:
    """Scheduler backed by one daemon thread per periodic task."""

    def __init__(self, name: str = "sparkplug-eon") -> None:
        self._name = name
        self._tasks: list[_PeriodicThread] = []
        self._lock = threading.Lock()
        self._counter = 0

    def schedule(self, period_ms: int, task: Callable[[], None]) -> _PeriodicThread:
        with self._lock:
            self._counter += 1
            periodic = _PeriodicThread(period_ms, task, f"{self._name}-{self._counter}")
            self._tasks = [t for t in self._tasks if not t.cancelled]
            self._tasks.append(periodic)
        periodic.start()
        return periodic

    def close(self, timeout: float | None = 5.0) -> None:
        """Cancel every task and wait for in-flight runs to finish."""
        with self._lock:
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            task.join(timeout)
