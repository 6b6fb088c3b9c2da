"""
Background cleanup for the in-memory stores.

Each service owns one PeriodicSweeper; it is started with the service and
stopped on shutdown. A failing sweep is logged and the loop keeps running.
"""

import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    def __init__(self, name: str, interval: timedelta, sweep: Callable[[], int]):
        self.name = name
        self.interval = interval
        self._sweep = sweep
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"sweeper-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        """Run a single sweep, returning the number of evicted records (0 on failure)"""
        try:
            removed = self._sweep()
        except Exception:
            logger.exception("Cleanup sweep %s failed", self.name)
            return 0
        if removed:
            logger.debug("Cleanup sweep %s removed %d stale entries", self.name, removed)
        return removed

    def _run(self):
        seconds = self.interval.total_seconds()
        while not self._stop.wait(seconds):
            self.run_once()
