"""Error types shared by queue, executor and reconciliation layers."""

from __future__ import annotations


class DocJobsError(RuntimeError):
    """Base error for job engine failures."""


class JobNotFoundError(DocJobsError):
    """Requested job does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(DocJobsError):
    """Requested status change is not allowed from the current status."""


class LeaseConflict(DocJobsError):
    """Caller no longer owns the lease on a job."""

    def __init__(self, job_id: str, worker_id: str | None) -> None:
        super().__init__(f"Lease lost for job {job_id} (worker={worker_id or '-'})")
        self.job_id = job_id
        self.worker_id = worker_id


class ValidationError(DocJobsError):
    """Execution prerequisites are not met; nothing was spawned."""


class ExecutionError(DocJobsError):
    """Analysis subprocess did not finish successfully."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        state: str = "failed",
        exit_code: int | None = None,
        signal_name: str | None = None,
        stdout_tail: str = "",
        stderr_tail: str = "",
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.state = state
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.stdout_tail = stdout_tail
        self.stderr_tail = stderr_tail
        self.hint = hint

    def summary(self) -> str:
        """Single-line message stored as the job's last error."""

        parts = [str(self)]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return " | ".join(parts)


class ReconciliationError(ExecutionError):
    """Document store write failed while reconciling a run."""

    def __init__(self, message: str) -> None:
        super().__init__(message, state="failed")


class ParseWarning(UserWarning):
    """Non-fatal problem found while collecting output files."""


class WorkspaceError(DocJobsError):
    """Repository checkout for a job could not be prepared."""
