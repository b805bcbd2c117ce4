"""Periodic sweep that closes global sessions whose deadline has passed.

Hygiene only: correctness never depends on it, because every read and every
acquire already treats a past deadline as expired.
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


def run_sweep(registry) -> int:
    """Run one sweep; a failure is logged and reported as zero closed sessions."""
    try:
        return registry.sweep_expired()
    except Exception:
        logger.exception("Expired session sweep failed")
        return 0


class SweepScheduler:
    def __init__(self, registry, interval_seconds: float = 300):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweep", daemon=True)
        self._thread.start()
        logger.info("Session sweep scheduled every %s seconds", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            run_sweep(self.registry)
