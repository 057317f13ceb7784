"""Named, independently cancellable timers driven by one scheduler."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduledTask:
    name: str
    due: float
    callback: Callable[[], None]
    interval: float | None = None


class Scheduler:
    """Tasks are keyed by name; scheduling a name again replaces the earlier task.

    `tick()` runs whatever is due, which keeps tests deterministic with an
    injected clock. `start()` drives ticks from a daemon thread instead.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, resolution: float = 0.05):
        self._clock = clock
        self._resolution = resolution
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = threading.RLock()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def now(self) -> float:
        return self._clock()

    def schedule(
        self,
        name: str,
        delay: float,
        callback: Callable[[], None],
        *,
        repeat: bool = False,
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        if repeat and delay <= 0:
            raise ValueError("repeating tasks need a positive interval")
        with self._lock:
            self._tasks[name] = ScheduledTask(
                name=name,
                due=self._clock() + delay,
                callback=callback,
                interval=delay if repeat else None,
            )

    def cancel(self, name: str) -> bool:
        with self._lock:
            return self._tasks.pop(name, None) is not None

    def cancel_all(self, prefix: str = "") -> int:
        with self._lock:
            names = [n for n in self._tasks if n.startswith(prefix)]
            for name in names:
                del self._tasks[name]
        return len(names)

    def is_scheduled(self, name: str) -> bool:
        with self._lock:
            return name in self._tasks

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def tick(self, now: float | None = None) -> int:
        """Run every due task once; returns how many ran."""
        now = self._clock() if now is None else now
        with self._lock:
            due = sorted((t for t in self._tasks.values() if t.due <= now), key=lambda t: t.due)
            for task in due:
                if task.interval is None:
                    del self._tasks[task.name]
                else:
                    task.due = now + task.interval

        ran = 0
        for task in due:
            try:
                task.callback()
            except Exception:
                logger.exception(f"Scheduled task {task.name} failed")
            ran += 1
        return ran

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pagechat-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._resolution):
            self.tick()
