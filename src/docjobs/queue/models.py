"""Domain models for the job queue."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_TOTAL_STEPS = 6


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    GATHERING = "gathering"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"
    CANCELED = "canceled"


RUNNING_PHASES = frozenset(
    {JobStatus.CLONING, JobStatus.ANALYZING, JobStatus.GATHERING, JobStatus.RUNNING},
)
LOCKED_STATUSES = frozenset({JobStatus.CLAIMED, *RUNNING_PHASES})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, *LOCKED_STATUSES})
TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD, JobStatus.CANCELED},
)
MANUALLY_RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.DEAD, JobStatus.CANCELED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.CLAIMED, JobStatus.CANCELED}),
    **{
        status: frozenset(
            {
                *RUNNING_PHASES,
                JobStatus.COMPLETED,
                JobStatus.PENDING,
                JobStatus.DEAD,
                JobStatus.CANCELED,
            },
        )
        for status in LOCKED_STATUSES
    },
    JobStatus.COMPLETED: frozenset(),
    # Operator retry is the only way out of a failed, dead or canceled job.
    **{status: frozenset({JobStatus.PENDING}) for status in MANUALLY_RETRYABLE_STATUSES},
}


def is_allowed_transition(previous: JobStatus, next_status: JobStatus) -> bool:
    """True when `previous -> next_status` is an edge of the job lifecycle (or no change)."""

    return next_status == previous or next_status in ALLOWED_TRANSITIONS[previous]


def status_values(statuses: frozenset[JobStatus]) -> list[str]:
    return sorted(status.value for status in statuses)


@dataclass(slots=True)
class JobSpec:
    """Input payload for creating a documentation job."""

    repository_id: str
    source: str
    branch: str = "main"
    profile: str | None = None
    max_attempts: int | None = None


@dataclass(slots=True)
class CreateResult:
    """Outcome of a create request, possibly collapsed onto an active duplicate."""

    job_id: str
    duplicate: bool
    status: JobStatus


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    repository_id: str
    source: str
    branch: str
    profile: str | None
    status: JobStatus
    attempts: int
    max_attempts: int
    locked_by: str | None
    lease_until: datetime | None
    run_at: datetime | None
    dedupe_key: str | None
    progress_message: str | None
    current_step: int | None
    total_steps: int | None
    result: dict[str, Any] | None
    last_error: str | None
    cancel_requested: bool
    docs_count: int | None
    run_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class HeartbeatAck:
    """Lease renewal result returned to the lease holder."""

    lease_until: datetime
    cancel_requested: bool


@dataclass(slots=True)
class RetryDecision:
    """Where a failed attempt landed."""

    status: JobStatus
    attempts: int
    run_at: datetime | None


@dataclass(slots=True)
class QueueMetrics:
    """Queue health snapshot for one time window."""

    window_seconds: float
    pending: int
    running: int
    completed_in_window: int
    failed_in_window: int
    dead: int
    avg_duration_seconds: float | None
    retries_in_window: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with additive jitter."""

    base_seconds: float = 5.0
    multiplier: float = 2.0
    cap_seconds: float = 600.0
    jitter_seconds: float = 5.0

    def delay_seconds(self, *, attempts: int, rng: random.Random | None = None) -> float:
        """Delay before the next attempt after `attempts` failures."""

        exponent = max(attempts - 1, 0)
        delay = min(self.base_seconds * (self.multiplier**exponent), self.cap_seconds)
        if self.jitter_seconds > 0:
            delay += (rng or random).uniform(0, self.jitter_seconds)
        return delay
