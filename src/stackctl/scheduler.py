"""Fixed-interval background tasks (health checks, backups, certificates)."""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

LOGGER = logging.getLogger(__name__)


class RecurringTask:
    """Run *callback* every *interval* seconds on a daemon thread.

    The first run happens one interval after :meth:`start`. Exceptions are
    logged and the loop keeps going.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], object]) -> None:
        if interval <= 0:
            raise ValueError(f"Interval for task {name!r} must be positive.")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"stackctl-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> None:
        """Invoke the callback now, logging instead of raising on failure."""
        self.runs += 1
        try:
            self.callback()
        except Exception:  # noqa: BLE001 - background task must survive
            self.failures += 1
            LOGGER.exception("Recurring task %s failed", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()


class Scheduler:
    """Own a set of :class:`RecurringTask` objects and their lifetimes."""

    def __init__(self, tasks: Iterable[RecurringTask] = ()) -> None:
        self.tasks: list[RecurringTask] = list(tasks)
        self._stopped = threading.Event()

    def add(self, name: str, interval: float, callback: Callable[[], object]) -> RecurringTask:
        task = RecurringTask(name, interval, callback)
        self.tasks.append(task)
        return task

    def start(self) -> None:
        self._stopped.clear()
        for task in self.tasks:
            LOGGER.info("Scheduling %s every %.0fs", task.name, task.interval)
            task.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        for task in self.tasks:
            task.stop(timeout)
        self._stopped.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until :meth:`stop` is called; return whether it was."""
        return self._stopped.wait(timeout)


__all__ = ["RecurringTask", "Scheduler"]
