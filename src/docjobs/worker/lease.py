"""Background lease renewal for one claimed job."""

from __future__ import annotations

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from docjobs.errors import LeaseConflict
from docjobs.executor.process import AbortSignal
from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.models import JobStatus

logger = logging.getLogger(__name__)


class LeaseKeeper:
    """Heartbeats a job on an interval shorter than its lease.

    Losing the lease aborts the execution immediately; an observed cancel
    request aborts it with the configured grace period.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        coordinator: QueueCoordinator,
        job_id: str,
        worker_id: str,
        lease_seconds: float,
        interval_seconds: float,
        abort: AbortSignal,
        cancel_grace_seconds: float = 10.0,
    ) -> None:
        self.coordinator = coordinator
        self.job_id = job_id
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self.abort = abort
        self.cancel_grace_seconds = cancel_grace_seconds
        self.lease_lost = threading.Event()
        self.cancel_requested = threading.Event()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"docjobs-lease-{self.job_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval_seconds))
        self._thread = None

    def beat(
        self,
        *,
        status: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> None:
        """Renew the lease now; raises LeaseConflict when ownership moved."""

        if self.lease_lost.is_set():
            raise LeaseConflict(self.job_id, self.worker_id)
        with self._lock:
            try:
                ack = self.coordinator.heartbeat(
                    self.job_id,
                    worker_id=self.worker_id,
                    lease_seconds=self.lease_seconds,
                    status=status,
                    progress=progress,
                    current_step=current_step,
                    total_steps=total_steps,
                )
            except LeaseConflict:
                self.lease_lost.set()
                self.abort.abort(reason="lease lost", grace_seconds=0)
                logger.warning("Lease lost: job_id=%s worker_id=%s", self.job_id, self.worker_id)
                raise
        if ack.cancel_requested and not self.cancel_requested.is_set():
            self.cancel_requested.set()
            self.abort.abort(reason="cancel requested", grace_seconds=self.cancel_grace_seconds)
            logger.info("Cancel requested: job_id=%s", self.job_id)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.beat()
            except LeaseConflict:
                return
            except SQLAlchemyError:
                logger.exception("Heartbeat failed for job %s; will retry", self.job_id)
