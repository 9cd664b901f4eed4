"""Lease-based job queue coordinator backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from docjobs.errors import (
    DocJobsError,
    InvalidTransitionError,
    JobNotFoundError,
    LeaseConflict,
)
from docjobs.queue.models import (
    ACTIVE_STATUSES,
    DEFAULT_TOTAL_STEPS,
    LOCKED_STATUSES,
    MANUALLY_RETRYABLE_STATUSES,
    RUNNING_PHASES,
    CreateResult,
    HeartbeatAck,
    JobDetails,
    JobEventView,
    JobSpec,
    JobStatus,
    JobView,
    QueueMetrics,
    RetryDecision,
    RetryPolicy,
    is_allowed_transition,
    status_values,
)
from docjobs.storage.alembic_runner import upgrade_head
from docjobs.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from docjobs.storage.tables import Job, JobEvent

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired"
CANCELED_ERROR = "Canceled by request"
_MAX_ERROR_CHARS = 4000


class QueueCoordinator:
    """Queue persistence facade: create, claim, lease, retry and reclaim jobs."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5000,
        retry_policy: RetryPolicy | None = None,
        default_max_attempts: int = 5,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_max_attempts = default_max_attempts
        self.clock = clock
        self._rng = rng or random.Random()  # noqa: S311
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create(self, spec: JobSpec, *, dedupe_key: str | None = None) -> CreateResult:
        """Create a pending job, or return the active job sharing the dedupe key."""

        if not spec.repository_id.strip():
            raise ValueError("repository_id must not be empty.")
        if not spec.source.strip():
            raise ValueError("source must not be empty.")
        max_attempts = spec.max_attempts or self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")

        now = self._now()
        with Session(self.engine) as session:
            if dedupe_key is not None:
                existing = self._find_active_duplicate(
                    session=session,
                    repository_id=spec.repository_id,
                    dedupe_key=dedupe_key,
                )
                if existing is not None:
                    return CreateResult(
                        job_id=existing.job_id,
                        duplicate=True,
                        status=JobStatus(existing.status),
                    )

            job_id = str(uuid4())
            session.add(
                Job(
                    job_id=job_id,
                    repository_id=spec.repository_id,
                    source=spec.source,
                    branch=spec.branch,
                    profile=spec.profile,
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    max_attempts=max_attempts,
                    dedupe_key=dedupe_key,
                    progress_message="Initializing...",
                    current_step=0,
                    total_steps=DEFAULT_TOTAL_STEPS,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            try:
                session.flush()
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="created",
                    status_from=None,
                    status_to=JobStatus.PENDING,
                    details={
                        "repository_id": spec.repository_id,
                        "dedupe_key": dedupe_key,
                        "max_attempts": max_attempts,
                    },
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                if dedupe_key is None:
                    raise
                existing = self._find_active_duplicate(
                    session=session,
                    repository_id=spec.repository_id,
                    dedupe_key=dedupe_key,
                )
                if existing is None:
                    raise
                return CreateResult(
                    job_id=existing.job_id,
                    duplicate=True,
                    status=JobStatus(existing.status),
                )

        logger.info("Job created: job_id=%s repository_id=%s", job_id, spec.repository_id)
        return CreateResult(job_id=job_id, duplicate=False, status=JobStatus.PENDING)

    def claim_one(self, *, worker_id: str, lease_seconds: float) -> JobView | None:
        """Atomically claim the oldest eligible pending job.

        Returns None when nothing is eligible or another worker won the race
        for the selected candidate.
        """

        now = self._now()
        now_db = to_db_datetime(now)
        with Session(self.engine) as session:
            candidate = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PENDING.value,
                    (col(Job.run_at).is_(None)) | (col(Job.run_at) <= now_db),
                )
                .order_by(
                    func.coalesce(col(Job.run_at), col(Job.created_at)).asc(),
                    col(Job.created_at).asc(),
                )
                .limit(1),
            ).one_or_none()
            if candidate is None:
                return None

            lease_until = now + timedelta(seconds=lease_seconds)
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == candidate.job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.CLAIMED.value,
                    locked_by=worker_id,
                    lease_until=to_db_datetime(lease_until),
                    started_at=now_db,
                    completed_at=None,
                    progress_message="Claimed by worker",
                    updated_at=now_db,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._add_event(
                session=session,
                job_id=candidate.job_id,
                event_type="claimed",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.CLAIMED,
                details={"worker_id": worker_id, "attempt": candidate.attempts + 1},
            )
            session.commit()
            claimed = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
            logger.info("Job claimed: job_id=%s worker_id=%s", claimed.job_id, worker_id)
            return _to_job_view(claimed)

    def heartbeat(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        worker_id: str,
        lease_seconds: float,
        status: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> HeartbeatAck:
        """Extend the caller's lease and record progress; raises LeaseConflict if not owner."""

        if status is not None and status not in RUNNING_PHASES:
            raise InvalidTransitionError(
                f"Heartbeat status must be a running phase, got {status.value}.",
            )

        now = self._now()
        lease_until = now + timedelta(seconds=lease_seconds)
        values: dict[str, Any] = {
            "lease_until": to_db_datetime(lease_until),
            "updated_at": to_db_datetime(now),
        }
        if status is not None:
            values["status"] = status.value
        if progress is not None:
            values["progress_message"] = progress
        if current_step is not None:
            values["current_step"] = current_step
        if total_steps is not None:
            values["total_steps"] = total_steps

        with Session(self.engine) as session:
            previous = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if previous is None:
                raise JobNotFoundError(job_id)
            previous_status = JobStatus(previous.status)
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.locked_by) == worker_id,
                    col(Job.status).in_(status_values(LOCKED_STATUSES)),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(job_id, worker_id)
            if status is not None and status != previous_status:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="heartbeat_status",
                    status_from=previous_status,
                    status_to=status,
                    details={"worker_id": worker_id},
                )
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return HeartbeatAck(
                lease_until=to_utc_aware_datetime(row.lease_until or lease_until),
                cancel_requested=bool(row.cancel_requested),
            )

    def complete(
        self,
        job_id: str,
        *,
        result: dict[str, Any],
        worker_id: str | None = None,
        docs_count: int | None = None,
        run_id: str | None = None,
    ) -> JobView:
        """Mark a locked job as completed and release its lease."""

        now_db = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous_status = JobStatus(row.status)
            conditions = [
                col(Job.job_id) == job_id,
                col(Job.status).in_(status_values(LOCKED_STATUSES)),
            ]
            if worker_id is not None:
                conditions.append(col(Job.locked_by) == worker_id)
            update_result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.COMPLETED.value,
                    locked_by=None,
                    lease_until=None,
                    result_json=_dump_json(result),
                    docs_count=docs_count,
                    run_id=run_id,
                    progress_message="Completed",
                    current_step=row.total_steps,
                    completed_at=now_db,
                    updated_at=now_db,
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(job_id, worker_id)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=previous_status,
                status_to=JobStatus.COMPLETED,
                details={"worker_id": worker_id, "docs_count": docs_count, "run_id": run_id},
            )
            session.commit()
            session.refresh(row)
            logger.info("Job completed: job_id=%s docs=%s", job_id, docs_count)
            return _to_job_view(row)

    def retry_or_fail(
        self,
        job_id: str,
        error_message: str,
        *,
        worker_id: str | None = None,
    ) -> RetryDecision:
        """Record a failed attempt: reschedule with backoff or dead-letter."""

        now = self._now()
        now_db = to_db_datetime(now)
        error_text = error_message[:_MAX_ERROR_CHARS]
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous_status = JobStatus(row.status)
            if previous_status not in LOCKED_STATUSES:
                raise LeaseConflict(job_id, worker_id)
            if worker_id is not None and row.locked_by != worker_id:
                raise LeaseConflict(job_id, worker_id)

            attempts = row.attempts + 1
            exhausted = attempts >= row.max_attempts
            run_at: datetime | None = None
            if exhausted:
                values: dict[str, Any] = {
                    "status": JobStatus.DEAD.value,
                    "completed_at": now_db,
                }
                next_status = JobStatus.DEAD
            else:
                delay = self.retry_policy.delay_seconds(attempts=attempts, rng=self._rng)
                run_at = now + timedelta(seconds=delay)
                values = {
                    "status": JobStatus.PENDING.value,
                    "run_at": to_db_datetime(run_at),
                    "progress_message": f"Retry scheduled (attempt {attempts + 1})",
                }
                next_status = JobStatus.PENDING

            update_result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == previous_status.value,
                    col(Job.attempts) == row.attempts,
                    col(Job.locked_by) == row.locked_by,
                )
                .values(
                    attempts=attempts,
                    locked_by=None,
                    lease_until=None,
                    last_error=error_text,
                    updated_at=now_db,
                    **values,
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(job_id, worker_id)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="dead_lettered" if exhausted else "retry_scheduled",
                status_from=previous_status,
                status_to=next_status,
                details={
                    "attempts": attempts,
                    "max_attempts": row.max_attempts,
                    "run_at": run_at.isoformat() if run_at is not None else None,
                    "error": error_text[:500],
                },
            )
            session.commit()

        if exhausted:
            logger.warning("Job dead-lettered: job_id=%s attempts=%s", job_id, attempts)
        else:
            logger.info(
                "Job retry scheduled: job_id=%s attempts=%s run_at=%s",
                job_id,
                attempts,
                run_at.isoformat() if run_at is not None else "-",
            )
        return RetryDecision(status=next_status, attempts=attempts, run_at=run_at)

    def reclaim_expired(self) -> int:
        """Return jobs whose lease has lapsed to pending; never raises."""

        try:
            return self._reclaim_expired()
        except SQLAlchemyError:
            logger.exception("Lease reclaim failed")
            return 0

    def _reclaim_expired(self) -> int:
        now_db = to_db_datetime(self._now())
        reclaimed = 0
        with Session(self.engine) as session:
            expired = session.exec(
                select(Job).where(
                    col(Job.status).in_(status_values(LOCKED_STATUSES)),
                    col(Job.lease_until).is_not(None),
                    col(Job.lease_until) < now_db,
                ),
            ).all()
            for row in expired:
                previous_status = JobStatus(row.status)
                previous_worker = row.locked_by
                if row.cancel_requested:
                    next_status = JobStatus.CANCELED
                    extra: dict[str, Any] = {"completed_at": now_db, "last_error": CANCELED_ERROR}
                else:
                    next_status = JobStatus.PENDING
                    extra = {"last_error": LEASE_EXPIRED_ERROR}
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == row.job_id,
                        col(Job.status) == previous_status.value,
                        col(Job.lease_until) < now_db,
                    )
                    .values(
                        status=next_status.value,
                        locked_by=None,
                        lease_until=None,
                        updated_at=now_db,
                        **extra,
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="lease_reclaimed",
                    status_from=previous_status,
                    status_to=next_status,
                    details={"previous_worker": previous_worker},
                )
                reclaimed += 1
            session.commit()

        if reclaimed:
            logger.warning("Reclaimed %d job(s) with expired leases", reclaimed)
        return reclaimed

    def request_cancel(self, job_id: str) -> JobView:
        """Cancel a pending job now, or flag a running job for cooperative cancellation."""

        now_db = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous == JobStatus.PENDING:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.CANCELED.value,
                        cancel_requested=True,
                        last_error=CANCELED_ERROR,
                        completed_at=now_db,
                        updated_at=now_db,
                    ),
                )
                event_type, status_to = "canceled", JobStatus.CANCELED
            elif previous in LOCKED_STATUSES:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status).in_(status_values(LOCKED_STATUSES)),
                    )
                    .values(cancel_requested=True, updated_at=now_db),
                )
                event_type, status_to = "cancel_requested", previous
            else:
                raise InvalidTransitionError(
                    f"Job cannot be canceled from status={previous.value}",
                )
            if result.rowcount != 1:
                session.rollback()
                raise DocJobsError(
                    "Job state changed concurrently while canceling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def acknowledge_cancel(self, job_id: str, *, worker_id: str) -> None:
        """Worker confirms it stopped a cancel-requested job."""

        now_db = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.locked_by) == worker_id,
                    col(Job.status).in_(status_values(LOCKED_STATUSES)),
                )
                .values(
                    status=JobStatus.CANCELED.value,
                    locked_by=None,
                    lease_until=None,
                    last_error=CANCELED_ERROR,
                    completed_at=now_db,
                    updated_at=now_db,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(job_id, worker_id)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="canceled",
                status_from=previous,
                status_to=JobStatus.CANCELED,
                details={"worker_id": worker_id},
            )
            session.commit()

    def retry_job(self, job_id: str) -> JobView:
        """Manual operator retry for dead/failed/canceled jobs."""

        now_db = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in MANUALLY_RETRYABLE_STATUSES:
                raise InvalidTransitionError(
                    "Only dead/failed/canceled jobs can be retried manually, "
                    f"got {previous.value}.",
                )
            try:
                result = session.exec(
                    sa_update(Job)
                    .where(col(Job.job_id) == job_id, col(Job.status) == previous.value)
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        run_at=None,
                        locked_by=None,
                        lease_until=None,
                        cancel_requested=False,
                        last_error=None,
                        completed_at=None,
                        progress_message="Initializing...",
                        current_step=0,
                        updated_at=now_db,
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise InvalidTransitionError(
                    f"Another active job already uses dedupe key {row.dedupe_key!r}.",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise DocJobsError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=JobStatus.PENDING,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_load_json(event.details_json) or {},
            )
            for event in event_rows
        ]
        return JobDetails(job=_to_job_view(row), events=events)

    def get_metrics(self, *, window: timedelta = timedelta(hours=1)) -> QueueMetrics:
        """Queue depth, throughput and failure counts over a trailing window."""

        cutoff_db = to_db_datetime(self._now() - window)
        with Session(self.engine) as session:
            status_rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
            completed_rows = session.exec(
                select(Job.started_at, Job.completed_at).where(
                    Job.status == JobStatus.COMPLETED.value,
                    col(Job.completed_at) >= cutoff_db,
                ),
            ).all()
            failed_jobs = session.exec(
                select(func.count()).where(
                    col(Job.status).in_([JobStatus.FAILED.value, JobStatus.DEAD.value]),
                    col(Job.completed_at) >= cutoff_db,
                ),
            ).one()
            retry_events = session.exec(
                select(func.count()).where(
                    JobEvent.event_type == "retry_scheduled",
                    col(JobEvent.created_at) >= cutoff_db,
                ),
            ).one()

        status_counts = {status.value: 0 for status in JobStatus}
        for status, count in status_rows:
            status_counts[str(status)] = int(count)

        durations = [
            (completed_at - started_at).total_seconds()
            for started_at, completed_at in completed_rows
            if started_at is not None and completed_at is not None
        ]
        return QueueMetrics(
            window_seconds=window.total_seconds(),
            pending=status_counts[JobStatus.PENDING.value],
            running=sum(status_counts[status.value] for status in LOCKED_STATUSES),
            completed_in_window=len(completed_rows),
            failed_in_window=int(failed_jobs),
            retries_in_window=int(retry_events),
            dead=status_counts[JobStatus.DEAD.value],
            avg_duration_seconds=(sum(durations) / len(durations)) if durations else None,
            status_counts=status_counts,
        )

    def _now(self) -> datetime:
        return to_utc_aware_datetime(self.clock())

    def _find_active_duplicate(
        self,
        *,
        session: Session,
        repository_id: str,
        dedupe_key: str,
    ) -> Job | None:
        return session.exec(
            select(Job)
            .where(
                Job.repository_id == repository_id,
                Job.dedupe_key == dedupe_key,
                col(Job.status).in_(status_values(ACTIVE_STATUSES)),
            )
            .limit(1),
        ).one_or_none()

    def _get_job_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        if status_from is not None and status_to is not None:
            _check_transition(status_from, status_to)
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(self._now()),
            ),
        )


def _check_transition(previous: JobStatus, next_status: JobStatus) -> None:
    if not is_allowed_transition(previous, next_status):
        raise InvalidTransitionError(
            f"Job cannot move from {previous.value} to {next_status.value}.",
        )


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        repository_id=row.repository_id,
        source=row.source,
        branch=row.branch,
        profile=row.profile,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        locked_by=row.locked_by,
        lease_until=optional_utc(row.lease_until),
        run_at=optional_utc(row.run_at),
        dedupe_key=row.dedupe_key,
        progress_message=row.progress_message,
        current_step=row.current_step,
        total_steps=row.total_steps,
        result=_load_json(row.result_json),
        last_error=row.last_error,
        cancel_requested=bool(row.cancel_requested),
        docs_count=row.docs_count,
        run_id=row.run_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )
