"""Controllers for docjobs CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from docjobs.config import Settings
from docjobs.documents.reconciler import DocumentReconciler
from docjobs.executor.process import ProcessExecutor
from docjobs.executor.strategies import build_executor_config
from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.metrics import render_metrics_lines
from docjobs.queue.models import JobSpec, JobStatus, JobView, RetryPolicy
from docjobs.queue.reaper import LeaseReaper
from docjobs.worker.loop import QueueWorker, WorkerStats
from docjobs.worker.workspace import RepoWorkspaceManager


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation."""

    db_path: Path | None
    repository_id: str
    source: str
    branch: str
    profile: str | None
    dedupe_key: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class MetricsCommand:
    """CLI input for queue health metrics."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class DocumentsCommand:
    """CLI input for listing stored documents of a repository."""

    db_path: Path | None
    repository_id: str
    show_content: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class ReaperCommand:
    """CLI input for the lease reaper."""

    db_path: Path | None
    once: bool
    interval_seconds: float | None = None
    max_passes: int | None = None


class DocJobsCliController:
    """Coordinates queue, worker and inspection CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_queue()
        with _coordinator(settings) as coordinator:
            created = coordinator.create(
                JobSpec(
                    repository_id=command.repository_id,
                    source=command.source,
                    branch=command.branch,
                    profile=command.profile,
                    max_attempts=command.max_attempts,
                ),
                dedupe_key=command.dedupe_key,
            )
        if created.duplicate:
            return [
                "Active duplicate found: "
                f"job_id={created.job_id} status={created.status.value}",
            ]
        return [f"Job created: job_id={created.job_id} status={created.status.value}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _coordinator(settings) as coordinator:
            jobs = coordinator.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} repo={job.repository_id} status={job.status.value} "
                f"attempt={job.attempts}/{job.max_attempts} "
                f"progress={_progress_text(job)}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            details = coordinator.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Repository: {job.repository_id}",
            f"Source: {job.source}@{job.branch}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempts}/{job.max_attempts}",
            f"Progress: {_progress_text(job)}",
            f"Locked by: {job.locked_by or '-'}",
            f"Lease until: {job.lease_until.isoformat() if job.lease_until else '-'}",
            f"Run at: {job.run_at.isoformat() if job.run_at else '-'}",
            f"Cancel requested: {'yes' if job.cancel_requested else 'no'}",
            f"Documents: {job.docs_count if job.docs_count is not None else '-'}",
            f"Run id: {job.run_id or '-'}",
            f"Error: {job.last_error or '-'}",
        ]
        if job.result is not None:
            lines.append(f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True)}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            job = coordinator.request_cancel(command.job_id)
        if job.status == JobStatus.CANCELED:
            return [f"Job canceled: {job.job_id}"]
        return [f"Cancel requested: {job.job_id} status={job.status.value}"]

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            job = coordinator.retry_job(command.job_id)
        return [f"Job re-queued: {job.job_id}"]

    def metrics(self, command: MetricsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            snapshot = coordinator.get_metrics(window=timedelta(hours=max(1, command.hours)))
        return render_metrics_lines(metrics=snapshot)

    def list_documents(self, command: DocumentsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _reconciler(settings) as reconciler:
            documents = reconciler.list_documents(repository_id=command.repository_id)

        lines = [f"Documents: {len(documents)}"]
        for document in documents:
            lines.append(
                f"  [{document.kind.value}] {document.slug} title={document.title!r} "
                f"chapter={document.chapter_index} run_id={document.run_id}",
            )
            if command.show_content:
                lines.extend(f"    {line}" for line in document.content.splitlines())
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with _coordinator(settings) as coordinator, _reconciler(settings) as reconciler:
            worker = _build_worker(
                settings=settings,
                coordinator=coordinator,
                reconciler=reconciler,
            )
            stats = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [_worker_summary_line(stats)]

    def run_reaper(self, command: ReaperCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_queue()
        interval = command.interval_seconds or settings.queue.reaper_interval_seconds
        with _coordinator(settings) as coordinator:
            reaper = LeaseReaper(coordinator=coordinator, interval_seconds=interval)
            if command.once:
                reaper.run_once()
            else:
                try:
                    reaper.run_forever(max_passes=command.max_passes)
                except KeyboardInterrupt:
                    reaper.stop()
        return [
            f"Reaper summary: passes={reaper.passes} reclaimed={reaper.total_reclaimed}",
        ]


def _build_worker(
    *,
    settings: Settings,
    coordinator: QueueCoordinator,
    reconciler: DocumentReconciler,
) -> QueueWorker:
    worker_settings = settings.worker
    return QueueWorker(
        coordinator=coordinator,
        reconciler=reconciler,
        executor=ProcessExecutor(build_executor_config(settings)),
        workspace=RepoWorkspaceManager(
            worker_settings.workspace_root,
            git_token=worker_settings.git_token,
        ),
        worker_id=worker_settings.worker_id,
        lease_seconds=worker_settings.lease_seconds,
        heartbeat_seconds=worker_settings.heartbeat_seconds,
        poll_interval_seconds=worker_settings.poll_interval_seconds,
        max_concurrent_jobs=worker_settings.max_concurrent_jobs,
        reclaim_on_poll=worker_settings.reclaim_on_poll,
        cancel_grace_seconds=worker_settings.cancel_grace_seconds,
        graceful_shutdown_seconds=worker_settings.graceful_shutdown_seconds,
    )


def _worker_summary_line(stats: WorkerStats) -> str:
    return (
        "Worker summary: "
        f"processed={stats.processed} succeeded={stats.succeeded} "
        f"failed={stats.failed} retried={stats.retried} dead={stats.dead} "
        f"canceled={stats.canceled} discarded={stats.discarded} "
        f"idle_polls={stats.idle_polls}"
    )


def _progress_text(job: JobView) -> str:
    message = job.progress_message or "-"
    if job.current_step is None or job.total_steps is None:
        return message
    return f"{job.current_step}/{job.total_steps} {message}"


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _coordinator(settings: Settings) -> Iterator[QueueCoordinator]:
    coordinator = QueueCoordinator(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        retry_policy=RetryPolicy(
            base_seconds=settings.queue.backoff_base_seconds,
            multiplier=settings.queue.backoff_multiplier,
            cap_seconds=settings.queue.backoff_cap_seconds,
            jitter_seconds=settings.queue.backoff_jitter_seconds,
        ),
        default_max_attempts=settings.queue.max_attempts,
    )
    coordinator.init_schema()
    try:
        yield coordinator
    finally:
        coordinator.close()


@contextmanager
def _reconciler(settings: Settings) -> Iterator[DocumentReconciler]:
    reconciler = DocumentReconciler(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    reconciler.init_schema()
    try:
        yield reconciler
    finally:
        reconciler.close()
