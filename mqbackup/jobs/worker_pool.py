"""Worker threads for drain and replay runs.

Work always runs on worker threads, never on the main thread, so an operator
interrupt (Ctrl-C) lands in ``join`` where it only sets the stop event:
workers finish the record in hand and exit at their next check.

The first exception escaping a worker is kept as the run's fatal error and
stops the other workers.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional

from mqbackup.utils import get_logger

logger = get_logger(__name__)


class WorkerPool:
    def __init__(self, name: str, stop_event: threading.Event, *, join_poll: float = 0.2) -> None:
        self.name = name
        self.stop_event = stop_event
        self.join_poll = join_poll
        self.fatal: Optional[BaseException] = None
        self.interrupted = False
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def spawn(self, target: Callable[..., Any], *args: Any) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(target, args),
            name=f"{self.name}-worker-{len(self._threads) + 1}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()
        return thread

    def _run(self, target: Callable[..., Any], args: tuple) -> None:
        try:
            target(*args)
        except Exception as e:
            self.fail(e)

    def fail(self, error: BaseException) -> None:
        with self._lock:
            if self.fatal is None:
                self.fatal = error
                logger.error("Worker aborted the run", pool=self.name, error=str(error), error_type=type(error).__name__)
        self.stop_event.set()

    def interrupt(self) -> None:
        if not self.interrupted:
            logger.warning("Interrupt received; finishing records in flight", pool=self.name)
        self.interrupted = True
        self.stop_event.set()

    def join(self) -> None:
        """Wait for all workers; Ctrl-C while waiting requests a clean stop."""
        for thread in self._threads:
            while thread.is_alive():
                try:
                    thread.join(self.join_poll)
                except KeyboardInterrupt:
                    self.interrupt()


__all__ = ["WorkerPool"]
