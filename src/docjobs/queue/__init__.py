"""Lease-based job queue."""

from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.models import JobSpec, JobStatus, RetryPolicy

__all__ = ["JobSpec", "JobStatus", "QueueCoordinator", "RetryPolicy"]
