"""Runtime configuration for the job queue, worker and executor."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

EXECUTOR_MODES = ("development", "production")


@dataclass(slots=True)
class QueueSettings:
    """Retry and lease policy of the queue coordinator."""

    max_attempts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 600.0
    backoff_jitter_seconds: float = 5.0
    reaper_interval_seconds: float = 30.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 5.0
    lease_seconds: float = 300.0
    heartbeat_seconds: float = 60.0
    max_concurrent_jobs: int = 1
    reclaim_on_poll: bool = True
    cancel_grace_seconds: float = 10.0
    graceful_shutdown_seconds: float = 30.0
    workspace_root: Path = Path("/tmp/docjobs")  # noqa: S108
    git_token: str | None = None


@dataclass(slots=True)
class ExecutorSettings:
    """Analysis tool invocation settings."""

    mode: str = "production"
    tool_path: str = "docgen"
    command_template: str | None = None
    tool_token: str | None = None
    timeout_seconds: float | None = None
    output_dir_name: str = ".tutorial-output"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".docjobs.db")
    sqlite_busy_timeout_ms: int = 5000
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        timeout_raw = os.getenv("DOCJOBS_TOOL_TIMEOUT_SECONDS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("DOCJOBS_DB_PATH", ".docjobs.db")),
            sqlite_busy_timeout_ms=int(os.getenv("DOCJOBS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                max_attempts=int(os.getenv("DOCJOBS_MAX_ATTEMPTS", "5")),
                backoff_base_seconds=float(os.getenv("DOCJOBS_BACKOFF_BASE_SECONDS", "5")),
                backoff_multiplier=float(os.getenv("DOCJOBS_BACKOFF_MULTIPLIER", "2")),
                backoff_cap_seconds=float(os.getenv("DOCJOBS_BACKOFF_CAP_SECONDS", "600")),
                backoff_jitter_seconds=float(os.getenv("DOCJOBS_BACKOFF_JITTER_SECONDS", "5")),
                reaper_interval_seconds=float(
                    os.getenv("DOCJOBS_REAPER_INTERVAL_SECONDS", "30"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("DOCJOBS_WORKER_ID") or _default_worker_id(),
                poll_interval_seconds=float(os.getenv("DOCJOBS_POLL_INTERVAL_SECONDS", "5")),
                lease_seconds=float(os.getenv("DOCJOBS_LEASE_SECONDS", "300")),
                heartbeat_seconds=float(os.getenv("DOCJOBS_HEARTBEAT_SECONDS", "60")),
                max_concurrent_jobs=int(os.getenv("DOCJOBS_MAX_CONCURRENT_JOBS", "1")),
                reclaim_on_poll=_env_bool("DOCJOBS_RECLAIM_ON_POLL", default=True),
                cancel_grace_seconds=float(os.getenv("DOCJOBS_CANCEL_GRACE_SECONDS", "10")),
                graceful_shutdown_seconds=float(
                    os.getenv("DOCJOBS_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                workspace_root=Path(
                    os.getenv("DOCJOBS_WORKSPACE_ROOT", "/tmp/docjobs"),  # noqa: S108
                ),
                git_token=os.getenv("DOCJOBS_GIT_TOKEN") or None,
            ),
            executor=ExecutorSettings(
                mode=os.getenv("DOCJOBS_EXECUTOR_MODE", "production").strip().lower(),
                tool_path=os.getenv("DOCJOBS_TOOL_PATH", "docgen"),
                command_template=os.getenv("DOCJOBS_TOOL_COMMAND_TEMPLATE") or None,
                tool_token=os.getenv("DOCJOBS_TOOL_TOKEN") or None,
                timeout_seconds=float(timeout_raw) if timeout_raw else None,
                output_dir_name=os.getenv("DOCJOBS_OUTPUT_DIR_NAME", ".tutorial-output"),
            ),
        )

    def validate_for_queue(self) -> None:
        """Raise configuration error if retry policy values are inconsistent."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DOCJOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("DOCJOBS_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base_seconds < 0:
            raise ValueError("DOCJOBS_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.queue.backoff_multiplier < 1:
            raise ValueError("DOCJOBS_BACKOFF_MULTIPLIER must be >= 1.")
        if self.queue.backoff_cap_seconds < self.queue.backoff_base_seconds:
            raise ValueError(
                "DOCJOBS_BACKOFF_CAP_SECONDS must be >= DOCJOBS_BACKOFF_BASE_SECONDS.",
            )
        if self.queue.backoff_jitter_seconds < 0:
            raise ValueError("DOCJOBS_BACKOFF_JITTER_SECONDS must be >= 0.")
        if self.queue.reaper_interval_seconds <= 0:
            raise ValueError("DOCJOBS_REAPER_INTERVAL_SECONDS must be > 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker or executor settings are invalid."""

        self.validate_for_queue()
        worker = self.worker
        if not worker.worker_id.strip():
            raise ValueError("DOCJOBS_WORKER_ID must not be empty.")
        if worker.poll_interval_seconds < 0:
            raise ValueError("DOCJOBS_POLL_INTERVAL_SECONDS must be >= 0.")
        if worker.heartbeat_seconds <= 0:
            raise ValueError("DOCJOBS_HEARTBEAT_SECONDS must be > 0.")
        if worker.lease_seconds <= worker.heartbeat_seconds:
            raise ValueError(
                "DOCJOBS_LEASE_SECONDS must be greater than DOCJOBS_HEARTBEAT_SECONDS "
                f"(got lease={worker.lease_seconds}, heartbeat={worker.heartbeat_seconds}).",
            )
        if worker.max_concurrent_jobs < 1:
            raise ValueError("DOCJOBS_MAX_CONCURRENT_JOBS must be >= 1.")
        if worker.cancel_grace_seconds < 0:
            raise ValueError("DOCJOBS_CANCEL_GRACE_SECONDS must be >= 0.")
        if self.executor.mode not in EXECUTOR_MODES:
            raise ValueError(
                f"Unsupported DOCJOBS_EXECUTOR_MODE: {self.executor.mode!r}. "
                f"Expected one of: {', '.join(EXECUTOR_MODES)}.",
            )
        if self.executor.timeout_seconds is not None and self.executor.timeout_seconds <= 0:
            raise ValueError("DOCJOBS_TOOL_TIMEOUT_SECONDS must be > 0 when set.")
        if not self.executor.output_dir_name.strip():
            raise ValueError("DOCJOBS_OUTPUT_DIR_NAME must not be empty.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
