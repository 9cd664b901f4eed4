"""Periodic reclaim of jobs whose lease has expired."""

from __future__ import annotations

import logging
import threading

from docjobs.queue.coordinator import QueueCoordinator

logger = logging.getLogger(__name__)


class LeaseReaper:
    """Calls `reclaim_expired` on a fixed interval until stopped."""

    def __init__(self, *, coordinator: QueueCoordinator, interval_seconds: float) -> None:
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.total_reclaimed = 0
        self.passes = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> int:
        reclaimed = self.coordinator.reclaim_expired()
        self.total_reclaimed += reclaimed
        self.passes += 1
        return reclaimed

    def run_forever(self, *, max_passes: int | None = None) -> int:
        """Block until `stop()` is called or `max_passes` is reached."""

        while not self._stop_event.is_set():
            self.run_once()
            if max_passes is not None and self.passes >= max_passes:
                break
            self._stop_event.wait(self.interval_seconds)
        return self.total_reclaimed

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            name="docjobs-lease-reaper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Lease reaper started (interval=%.1fs)", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
