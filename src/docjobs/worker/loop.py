"""Queue worker that runs documentation jobs end to end."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from docjobs.documents.reconciler import DocumentReconciler
from docjobs.errors import ExecutionError, LeaseConflict
from docjobs.executor.process import AbortSignal, ProcessExecutor
from docjobs.executor.progress import ProgressEvent
from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.models import DEFAULT_TOTAL_STEPS, JobStatus, JobView
from docjobs.worker.lease import LeaseKeeper
from docjobs.worker.workspace import RepoWorkspaceManager

logger = logging.getLogger(__name__)

_UNHEALTHY_AFTER_ERRORS = 3
_BUSY_IDLE_WAIT_SECONDS = 1.0


class JobOutcome(str, Enum):
    """How one processed job ended from this worker's point of view."""

    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    DEAD = "dead"
    CANCELED = "canceled"
    DISCARDED = "discarded"


@dataclass(slots=True)
class WorkerStats:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead: int = 0
    canceled: int = 0
    discarded: int = 0
    idle_polls: int = 0
    total_duration_seconds: float = 0.0

    def record(self, outcome: JobOutcome, *, duration_seconds: float) -> None:
        self.processed += 1
        self.total_duration_seconds += duration_seconds
        if outcome == JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == JobOutcome.RETRIED:
            self.failed += 1
            self.retried += 1
        elif outcome == JobOutcome.DEAD:
            self.failed += 1
            self.dead += 1
        elif outcome == JobOutcome.CANCELED:
            self.canceled += 1
        else:
            self.discarded += 1

    @property
    def avg_duration_seconds(self) -> float | None:
        if self.processed == 0:
            return None
        return self.total_duration_seconds / self.processed


class QueueWorker:
    """Claims jobs and drives each through clone, analysis and reconciliation."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        coordinator: QueueCoordinator,
        reconciler: DocumentReconciler,
        executor: ProcessExecutor,
        workspace: RepoWorkspaceManager,
        worker_id: str,
        lease_seconds: float = 300.0,
        heartbeat_seconds: float = 60.0,
        poll_interval_seconds: float = 5.0,
        max_concurrent_jobs: int = 1,
        reclaim_on_poll: bool = True,
        cancel_grace_seconds: float = 10.0,
        graceful_shutdown_seconds: float = 30.0,
    ) -> None:
        self.coordinator = coordinator
        self.reconciler = reconciler
        self.executor = executor
        self.workspace = workspace
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_jobs = max(1, max_concurrent_jobs)
        self.reclaim_on_poll = reclaim_on_poll
        self.cancel_grace_seconds = cancel_grace_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stats = WorkerStats()
        self._stats_lock = threading.Lock()
        self._active: dict[str, AbortSignal] = {}
        self._active_lock = threading.Lock()
        self._stop_requested = False
        self._consecutive_errors = 0
        self._last_poll_monotonic: float | None = None

    def run_once(self) -> WorkerStats:
        """Claim and process at most one job in the calling thread."""

        summary = WorkerStats()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            self._record_idle()
            return summary
        started = time.monotonic()
        outcome = self.process_job(job)
        duration = time.monotonic() - started
        summary.record(outcome, duration_seconds=duration)
        with self._stats_lock:
            self.stats.record(outcome, duration_seconds=duration)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerStats:
        """Poll and process jobs until stopped.

        Args:
            max_jobs: Stop claiming after this many jobs (None = unlimited).
            max_idle_polls: Exit after this many consecutive empty polls while
                nothing is in flight (None = keep polling).
        """

        in_flight: set[Future[JobOutcome]] = set()
        claimed = 0
        consecutive_idle = 0
        with self._signal_handlers(), ThreadPoolExecutor(
            max_workers=self.max_concurrent_jobs,
            thread_name_prefix="docjobs-job",
        ) as pool:
            try:
                while not self._stop_requested:
                    in_flight = _reap(in_flight)
                    if max_jobs is not None and claimed >= max_jobs:
                        break
                    if len(in_flight) >= self.max_concurrent_jobs:
                        wait(
                            in_flight,
                            timeout=self.poll_interval_seconds or _BUSY_IDLE_WAIT_SECONDS,
                            return_when=FIRST_COMPLETED,
                        )
                        continue

                    job = self._poll()
                    if job is None:
                        consecutive_idle += 1
                        if in_flight:
                            wait(
                                in_flight,
                                timeout=self.poll_interval_seconds or _BUSY_IDLE_WAIT_SECONDS,
                                return_when=FIRST_COMPLETED,
                            )
                            continue
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    claimed += 1
                    in_flight.add(pool.submit(self._process_and_record, job))
            finally:
                self._drain(in_flight)
        return self.stats

    def stop(self) -> None:
        self._request_stop(signal_name="stop")

    def is_healthy(self) -> bool:
        """False after repeated polling errors or when polling has stalled."""

        if self._consecutive_errors >= _UNHEALTHY_AFTER_ERRORS:
            return False
        if self._last_poll_monotonic is None:
            return True
        with self._active_lock:
            busy = len(self._active) >= self.max_concurrent_jobs
        if busy:
            return True
        stalled_after = max(3 * self.poll_interval_seconds, 30.0)
        return time.monotonic() - self._last_poll_monotonic <= stalled_after

    def active_job_ids(self) -> list[str]:
        with self._active_lock:
            return sorted(self._active)

    def process_job(self, job: JobView) -> JobOutcome:
        """Run one claimed job to a terminal outcome for this attempt."""

        abort = AbortSignal()
        keeper = LeaseKeeper(
            coordinator=self.coordinator,
            job_id=job.job_id,
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
            interval_seconds=self.heartbeat_seconds,
            abort=abort,
            cancel_grace_seconds=self.cancel_grace_seconds,
        )
        workspace_path: Path | None = None
        with self._active_lock:
            self._active[job.job_id] = abort
        logger.info(
            "Processing job: job_id=%s repository_id=%s attempt=%s",
            job.job_id,
            job.repository_id,
            job.attempts + 1,
        )
        keeper.start()
        try:
            keeper.beat(status=JobStatus.CLONING, progress="Cloning repository...")
            workspace_path = self.workspace.prepare(
                job_id=job.job_id,
                source=job.source,
                branch=job.branch,
            )
            _raise_if_aborted(abort)

            keeper.beat(
                status=JobStatus.ANALYZING,
                progress="Analyzing repository...",
                current_step=0,
                total_steps=DEFAULT_TOTAL_STEPS,
            )
            execution = self.executor.execute(
                workspace_path,
                on_progress=lambda event: _report_progress(keeper, event),
                abort=abort,
                profile=job.profile,
            )
            _raise_if_aborted(abort)

            keeper.beat(status=JobStatus.GATHERING, progress="Saving documents...")
            _raise_if_aborted(abort)
            run_id = f"run_{int(time.time() * 1000)}_{job.job_id[:8]}"
            result = self._reconcile(
                job=job,
                run_id=run_id,
                metadata=execution.metadata,
                documents=execution.documents,
            )
            keeper.stop()
            # The last heartbeat may have seen a cancel or lost the lease while saving.
            _raise_if_aborted(abort)
            self.coordinator.complete(
                job.job_id,
                result=result,
                worker_id=self.worker_id,
                docs_count=len(execution.documents),
                run_id=run_id,
            )
            return JobOutcome.SUCCEEDED
        except LeaseConflict:
            logger.warning("Discarding result of job %s: lease no longer held", job.job_id)
            return JobOutcome.DISCARDED
        except Exception as error:  # noqa: BLE001
            keeper.stop()
            return self._handle_failure(job=job, error=error, keeper=keeper)
        finally:
            keeper.stop()
            with self._active_lock:
                self._active.pop(job.job_id, None)
            if workspace_path is not None:
                self.workspace.cleanup(workspace_path)

    def _reconcile(
        self,
        *,
        job: JobView,
        run_id: str,
        metadata: dict[str, Any],
        documents: list[Any],
    ) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": True,
            "message": f"Generated {len(documents)} documents successfully",
            "documents": len(documents),
            "metadata": metadata,
        }
        if "parse_warning" in metadata:
            # Empty collection after a parse failure must not wipe stored documents.
            logger.warning("Skipping reconciliation for job %s: output unreadable", job.job_id)
            result["stats"] = None
            return result
        stats = self.reconciler.reconcile(
            job_id=job.job_id,
            repository_id=job.repository_id,
            run_id=run_id,
            documents=documents,
        )
        result["stats"] = stats.as_dict()
        return result

    def _handle_failure(
        self,
        *,
        job: JobView,
        error: Exception,
        keeper: LeaseKeeper,
    ) -> JobOutcome:
        if keeper.lease_lost.is_set():
            logger.warning("Discarding result of job %s: lease lost during run", job.job_id)
            return JobOutcome.DISCARDED
        try:
            if keeper.cancel_requested.is_set():
                self.coordinator.acknowledge_cancel(job.job_id, worker_id=self.worker_id)
                logger.info("Job canceled: job_id=%s", job.job_id)
                return JobOutcome.CANCELED

            message = (
                error.summary()
                if isinstance(error, ExecutionError)
                else f"{type(error).__name__}: {error}"
            )
            logger.warning("Job attempt failed: job_id=%s error=%s", job.job_id, message)
            decision = self.coordinator.retry_or_fail(
                job.job_id,
                message,
                worker_id=self.worker_id,
            )
        except LeaseConflict:
            logger.warning("Discarding failure of job %s: lease no longer held", job.job_id)
            return JobOutcome.DISCARDED
        if decision.status == JobStatus.DEAD:
            return JobOutcome.DEAD
        return JobOutcome.RETRIED

    def _process_and_record(self, job: JobView) -> JobOutcome:
        started = time.monotonic()
        outcome = self.process_job(job)
        with self._stats_lock:
            self.stats.record(outcome, duration_seconds=time.monotonic() - started)
        return outcome

    def _poll(self) -> JobView | None:
        try:
            job = self._claim_job()
        except SQLAlchemyError:
            self._consecutive_errors += 1
            logger.exception("Polling the queue failed (%d in a row)", self._consecutive_errors)
            return None
        self._consecutive_errors = 0
        if job is None:
            self._record_idle()
        return job

    def _claim_job(self) -> JobView | None:
        self._last_poll_monotonic = time.monotonic()
        if self.reclaim_on_poll:
            self.coordinator.reclaim_expired()
        if self._stop_requested:
            return None
        return self.coordinator.claim_one(
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
        )

    def _record_idle(self) -> None:
        with self._stats_lock:
            self.stats.idle_polls += 1

    def _drain(self, in_flight: set[Future[JobOutcome]]) -> None:
        """Wait for running jobs; abort them once the shutdown grace elapses."""

        pending = {future for future in in_flight if not future.done()}
        if not pending:
            return
        if self._stop_requested:
            logger.info(
                "Waiting up to %.0fs for %d running job(s)",
                self.graceful_shutdown_seconds,
                len(pending),
            )
            _, pending = wait(pending, timeout=self.graceful_shutdown_seconds)
            if pending:
                with self._active_lock:
                    aborts = list(self._active.values())
                for abort in aborts:
                    abort.abort(
                        reason="worker shutdown",
                        grace_seconds=self.executor.config.kill_grace_seconds,
                    )
        wait(pending)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_requested:
            logger.info("Worker stop requested (%s)", signal_name)
        self._stop_requested = True


def _report_progress(keeper: LeaseKeeper, event: ProgressEvent) -> None:
    keeper.beat(
        progress=event.format(),
        current_step=event.step,
        total_steps=event.total_steps,
    )


def _raise_if_aborted(abort: AbortSignal) -> None:
    if abort.is_set():
        raise ExecutionError(
            f"Job aborted: {abort.reason or 'abort requested'}.",
            state="killed",
        )


def _reap(in_flight: set[Future[JobOutcome]]) -> set[Future[JobOutcome]]:
    """Drop finished futures, re-raising anything process_job did not handle."""

    for future in in_flight:
        if future.done():
            future.result()
    return {future for future in in_flight if not future.done()}
