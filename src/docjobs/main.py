"""CLI entrypoint for docjobs."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from docjobs import __version__
from docjobs.controllers import (
    DocJobsCliController,
    DocumentsCommand,
    JobCreateCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    MetricsCommand,
    ReaperCommand,
    WorkerCommand,
)
from docjobs.errors import DocJobsError
from docjobs.queue.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DocJobsCliController()
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="docjobs")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine messages (written to stderr).",
)
def docjobs(log_level: str) -> None:
    """Documentation generation job queue."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@docjobs.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--repository-id", required=True, help="Repository identifier.")
@click.option("--source", required=True, help="Git URL or local directory to analyze.")
@click.option("--branch", default="main", show_default=True, help="Branch to clone.")
@click.option("--profile", default=None, help="Analysis profile passed to the tool.")
@click.option(
    "--dedupe-key",
    default=None,
    help="Collapse onto an active job of the same repository with this key.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts before dead-lettering (default from DOCJOBS_MAX_ATTEMPTS).",
)
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    repository_id: str,
    source: str,
    branch: str,
    profile: str | None,
    dedupe_key: str | None,
    max_attempts: int | None,
) -> None:
    """Queue a documentation job for a repository."""

    _run(
        lambda: CONTROLLER.create_job(
            JobCreateCommand(
                db_path=db_path,
                repository_id=repository_id,
                source=source,
                branch=branch,
                profile=profile,
                dedupe_key=dedupe_key,
                max_attempts=max_attempts,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of jobs to show.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _run(
        lambda: CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event history."""

    _run(
        lambda: CONTROLLER.inspect_job(
            JobInspectCommand(db_path=db_path, job_id=job_id),
        ),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending job or ask the running worker to stop it."""

    _run(
        lambda: CONTROLLER.cancel_job(
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a dead, failed or canceled job with a fresh attempt budget."""

    _run(
        lambda: CONTROLLER.retry_job(
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@jobs.command("metrics")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Time window for completed/failed counters.",
)
def jobs_metrics(db_path: Path | None, hours: int) -> None:
    """Show queue health for a time window."""

    _run(lambda: CONTROLLER.metrics(MetricsCommand(db_path=db_path, hours=hours)))


@jobs.command("docs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--repository-id", required=True, help="Repository identifier.")
@click.option("--content/--no-content", default=False, help="Print document bodies too.")
def jobs_docs(db_path: Path | None, repository_id: str, content: bool) -> None:
    """List stored documents of a repository."""

    _run(
        lambda: CONTROLLER.list_documents(
            DocumentsCommand(
                db_path=db_path,
                repository_id=repository_id,
                show_content=content,
            ),
        ),
    )


@docjobs.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one job and exit.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after claiming this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: keep polling).",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Claim and run documentation jobs."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@docjobs.group()
def reaper() -> None:
    """Lease reaper commands."""


@reaper.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Run a single reclaim pass.")
@click.option(
    "--interval-seconds",
    type=click.FloatRange(min=0.1),
    default=None,
    help="Seconds between passes (default from DOCJOBS_REAPER_INTERVAL_SECONDS).",
)
def reaper_run(db_path: Path | None, once: bool, interval_seconds: float | None) -> None:
    """Return jobs with expired leases to the queue."""

    _run(
        lambda: CONTROLLER.run_reaper(
            ReaperCommand(db_path=db_path, once=once, interval_seconds=interval_seconds),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (DocJobsError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    docjobs()
