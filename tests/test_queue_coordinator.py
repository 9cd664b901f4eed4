from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from docjobs.errors import InvalidTransitionError, JobNotFoundError, LeaseConflict
from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.metrics import render_metrics_lines
from docjobs.queue.models import (
    ALLOWED_TRANSITIONS,
    JobSpec,
    JobStatus,
    RetryPolicy,
    is_allowed_transition,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Leases, Retries & Dedupe"),
]


def _spec(repository_id: str = "repo-1", **overrides) -> JobSpec:
    return JobSpec(
        repository_id=repository_id,
        source=overrides.pop("source", "https://example.com/org/repo.git"),
        **overrides,
    )


def test_create_job_starts_pending_with_initial_progress(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec(profile="fast"))

    assert created.duplicate is False
    assert created.status == JobStatus.PENDING
    job = coordinator.get_job(created.job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.profile == "fast"
    assert job.progress_message == "Initializing..."
    assert (job.current_step, job.total_steps) == (0, 6)
    assert job.locked_by is None
    assert job.lease_until is None


def test_create_rejects_empty_repository_id(coordinator: QueueCoordinator) -> None:
    with pytest.raises(ValueError, match="repository_id"):
        coordinator.create(_spec(repository_id="  "))


def test_claim_sets_lease_owner_and_started_at(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec())

    claimed = clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    assert claimed is not None
    assert claimed.job_id == created.job_id
    assert claimed.status == JobStatus.CLAIMED
    assert claimed.locked_by == "worker-a"
    assert claimed.lease_until == clock.now + timedelta(seconds=60)
    assert claimed.started_at == clock.now
    assert clocked_coordinator.claim_one(worker_id="worker-b", lease_seconds=60) is None


def test_claim_skips_jobs_scheduled_in_the_future(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec(max_attempts=3))
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    decision = clocked_coordinator.retry_or_fail(created.job_id, "boom", worker_id="worker-a")

    assert decision.status == JobStatus.PENDING
    assert clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60) is None

    clock.advance(5)
    reclaimed = clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    assert reclaimed is not None
    assert reclaimed.job_id == created.job_id


def test_claim_prefers_oldest_eligible_job(clocked_coordinator, clock) -> None:
    first = clocked_coordinator.create(_spec("repo-1"))
    clock.advance(1)
    clocked_coordinator.create(_spec("repo-2"))

    claimed = clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    assert claimed is not None
    assert claimed.job_id == first.job_id


def test_concurrent_claims_hand_out_each_job_once(db_path: Path, coordinator) -> None:
    job_ids = {coordinator.create(_spec(f"repo-{index}")).job_id for index in range(6)}
    claimed: list[str] = []
    claimed_lock = threading.Lock()
    errors: list[BaseException] = []
    start = threading.Barrier(4)

    def _claimer(worker_id: str) -> None:
        queue = QueueCoordinator(db_path)
        try:
            start.wait(timeout=5)
            for _ in range(6):
                job = queue.claim_one(worker_id=worker_id, lease_seconds=60)
                if job is not None:
                    with claimed_lock:
                        claimed.append(job.job_id)
        except Exception as error:  # noqa: BLE001
            errors.append(error)
        finally:
            queue.close()

    threads = [
        threading.Thread(target=_claimer, args=(f"worker-{index}",)) for index in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(claimed) == len(set(claimed))
    while (job := coordinator.claim_one(worker_id="drain", lease_seconds=60)) is not None:
        claimed.append(job.job_id)
    assert sorted(claimed) == sorted(job_ids)


def test_heartbeat_extends_lease_and_records_progress(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    clock.advance(30)

    ack = clocked_coordinator.heartbeat(
        created.job_id,
        worker_id="worker-a",
        lease_seconds=60,
        status=JobStatus.ANALYZING,
        progress="Step 2/6: Analyzing relationships",
        current_step=2,
        total_steps=6,
    )

    assert ack.lease_until == clock.now + timedelta(seconds=60)
    assert ack.cancel_requested is False
    job = clocked_coordinator.get_job(created.job_id)
    assert job is not None
    assert job.status == JobStatus.ANALYZING
    assert job.progress_message == "Step 2/6: Analyzing relationships"
    assert job.current_step == 2
    details = clocked_coordinator.get_job_details(created.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "claimed",
        "heartbeat_status",
    ]


def test_heartbeat_rejects_non_running_status(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    with pytest.raises(InvalidTransitionError):
        coordinator.heartbeat(
            created.job_id,
            worker_id="worker-a",
            lease_seconds=60,
            status=JobStatus.COMPLETED,
        )


def test_heartbeat_from_non_owner_raises_lease_conflict(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    with pytest.raises(LeaseConflict):
        coordinator.heartbeat(created.job_id, worker_id="worker-b", lease_seconds=60)


def test_expired_lease_is_reclaimed_and_old_owner_loses_it(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=10)

    clock.advance(11)
    assert clocked_coordinator.reclaim_expired() == 1

    job = clocked_coordinator.get_job(created.job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.locked_by is None
    assert job.lease_until is None
    assert job.last_error == "Lease expired"
    assert job.attempts == 0
    with pytest.raises(LeaseConflict):
        clocked_coordinator.heartbeat(created.job_id, worker_id="worker-a", lease_seconds=10)
    with pytest.raises(LeaseConflict):
        clocked_coordinator.complete(created.job_id, result={}, worker_id="worker-a")

    again = clocked_coordinator.claim_one(worker_id="worker-b", lease_seconds=10)
    assert again is not None
    assert again.job_id == created.job_id


def test_reclaim_requires_lease_strictly_in_the_past(clocked_coordinator, clock) -> None:
    clocked_coordinator.create(_spec())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=10)

    clock.advance(10)
    assert clocked_coordinator.reclaim_expired() == 0
    clock.advance(1)
    assert clocked_coordinator.reclaim_expired() == 1


def test_reclaim_of_cancel_requested_job_cancels_it(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=10)
    clocked_coordinator.request_cancel(created.job_id)

    clock.advance(11)
    clocked_coordinator.reclaim_expired()

    job = clocked_coordinator.get_job(created.job_id)
    assert job is not None
    assert job.status == JobStatus.CANCELED


def test_retry_or_fail_backs_off_then_dead_letters(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec(max_attempts=3))
    delays: list[float] = []

    for attempt in range(1, 4):
        claimed = clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
        assert claimed is not None
        decision = clocked_coordinator.retry_or_fail(
            created.job_id,
            f"attempt {attempt} failed",
            worker_id="worker-a",
        )
        assert decision.attempts == attempt
        if decision.run_at is not None:
            delays.append((decision.run_at - clock.now).total_seconds())
            clock.advance(delays[-1])

    assert delays == [5.0, 10.0]
    assert decision.status == JobStatus.DEAD
    job = clocked_coordinator.get_job(created.job_id)
    assert job is not None
    assert job.status == JobStatus.DEAD
    assert job.attempts == 3
    assert job.last_error == "attempt 3 failed"
    assert job.completed_at == clock.now
    assert clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60) is None


def test_retry_or_fail_requires_lease_owner(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    with pytest.raises(LeaseConflict):
        coordinator.retry_or_fail(created.job_id, "boom", worker_id="worker-b")


def test_retry_policy_caps_exponential_delay() -> None:
    policy = RetryPolicy(base_seconds=5, multiplier=2, cap_seconds=30, jitter_seconds=0)

    assert [policy.delay_seconds(attempts=attempt) for attempt in range(1, 6)] == [
        5.0,
        10.0,
        20.0,
        30.0,
        30.0,
    ]


def test_complete_stores_result_and_requires_owner(clocked_coordinator, clock) -> None:
    created = clocked_coordinator.create(_spec())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    clock.advance(42)

    with pytest.raises(LeaseConflict):
        clocked_coordinator.complete(created.job_id, result={}, worker_id="worker-b")

    job = clocked_coordinator.complete(
        created.job_id,
        result={"success": True, "documents": 3},
        worker_id="worker-a",
        docs_count=3,
        run_id="run_1",
    )

    assert job.status == JobStatus.COMPLETED
    assert job.result == {"success": True, "documents": 3}
    assert job.docs_count == 3
    assert job.run_id == "run_1"
    assert job.locked_by is None
    assert job.completed_at == clock.now
    with pytest.raises(LeaseConflict):
        clocked_coordinator.complete(created.job_id, result={}, worker_id="worker-a")


def test_dedupe_key_collapses_onto_active_job(coordinator: QueueCoordinator) -> None:
    first = coordinator.create(_spec("repo-1"), dedupe_key="main@abc")
    second = coordinator.create(_spec("repo-1"), dedupe_key="main@abc")
    other_repo = coordinator.create(_spec("repo-2"), dedupe_key="main@abc")

    assert second.duplicate is True
    assert second.job_id == first.job_id
    assert other_repo.duplicate is False
    assert other_repo.job_id != first.job_id

    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    while_running = coordinator.create(_spec("repo-1"), dedupe_key="main@abc")
    assert while_running.job_id == first.job_id

    coordinator.complete(first.job_id, result={}, worker_id="worker-a")
    after_completion = coordinator.create(_spec("repo-1"), dedupe_key="main@abc")
    assert after_completion.duplicate is False
    assert after_completion.job_id != first.job_id


def test_request_cancel_of_pending_job_is_immediate(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())

    job = coordinator.request_cancel(created.job_id)

    assert job.status == JobStatus.CANCELED
    assert job.last_error == "Canceled by request"
    assert coordinator.claim_one(worker_id="worker-a", lease_seconds=60) is None


def test_request_cancel_of_running_job_is_cooperative(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)

    job = coordinator.request_cancel(created.job_id)
    assert job.status == JobStatus.CLAIMED
    assert job.cancel_requested is True

    ack = coordinator.heartbeat(created.job_id, worker_id="worker-a", lease_seconds=60)
    assert ack.cancel_requested is True

    with pytest.raises(LeaseConflict):
        coordinator.acknowledge_cancel(created.job_id, worker_id="worker-b")
    coordinator.acknowledge_cancel(created.job_id, worker_id="worker-a")

    canceled = coordinator.get_job(created.job_id)
    assert canceled is not None
    assert canceled.status == JobStatus.CANCELED
    assert canceled.locked_by is None


def test_request_cancel_of_terminal_job_is_rejected(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    coordinator.complete(created.job_id, result={}, worker_id="worker-a")

    with pytest.raises(InvalidTransitionError):
        coordinator.request_cancel(created.job_id)


def test_unknown_job_raises_not_found(coordinator: QueueCoordinator) -> None:
    assert coordinator.get_job("missing") is None
    assert coordinator.get_job_details("missing") is None
    with pytest.raises(JobNotFoundError):
        coordinator.request_cancel("missing")


def test_manual_retry_requeues_dead_job_with_fresh_budget(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec(max_attempts=1))
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    coordinator.retry_or_fail(created.job_id, "fatal", worker_id="worker-a")

    job = coordinator.retry_job(created.job_id)

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.last_error is None
    assert coordinator.claim_one(worker_id="worker-a", lease_seconds=60) is not None


def test_manual_retry_rejects_active_job(coordinator: QueueCoordinator) -> None:
    created = coordinator.create(_spec())

    with pytest.raises(InvalidTransitionError):
        coordinator.retry_job(created.job_id)


def test_list_jobs_filters_by_status(coordinator: QueueCoordinator) -> None:
    pending = coordinator.create(_spec("repo-1"))
    canceled = coordinator.create(_spec("repo-2"))
    coordinator.request_cancel(canceled.job_id)

    assert [job.job_id for job in coordinator.list_jobs(status=JobStatus.PENDING)] == [
        pending.job_id,
    ]
    assert len(coordinator.list_jobs()) == 2
    assert len(coordinator.list_jobs(limit=1)) == 1


def test_metrics_report_queue_depth_and_failures(clocked_coordinator, clock) -> None:
    done = clocked_coordinator.create(_spec("repo-1"))
    for attempt in range(1, 4):
        clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
        decision = clocked_coordinator.retry_or_fail(
            done.job_id,
            f"attempt {attempt} failed",
            worker_id="worker-a",
        )
        assert decision.run_at is not None
        clock.advance((decision.run_at - clock.now).total_seconds())
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    clock.advance(20)
    clocked_coordinator.complete(done.job_id, result={}, worker_id="worker-a")

    dead = clocked_coordinator.create(_spec("repo-2", max_attempts=1))
    clocked_coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    clocked_coordinator.retry_or_fail(dead.job_id, "fatal", worker_id="worker-a")

    clock.advance(1)
    running = clocked_coordinator.create(_spec("repo-3"))
    clock.advance(1)
    clocked_coordinator.create(_spec("repo-4"))
    claimed = clocked_coordinator.claim_one(worker_id="worker-b", lease_seconds=60)
    assert claimed is not None
    assert claimed.job_id == running.job_id

    metrics = clocked_coordinator.get_metrics()

    assert metrics.pending == 1
    assert metrics.running == 1
    assert metrics.completed_in_window == 1
    # Retried attempts of the completed job are not failed jobs.
    assert metrics.failed_in_window == 1
    assert metrics.retries_in_window == 3
    assert metrics.dead == 1
    assert metrics.avg_duration_seconds == pytest.approx(20.0)

    lines = render_metrics_lines(metrics=metrics)
    assert lines[0] == "Job queue health (window=1h)"
    assert "Pending: 1" in lines
    assert "Failed in window: 1" in lines
    assert "Retries in window: 3" in lines
    assert "Dead: 1" in lines


def test_every_recorded_status_change_is_a_lifecycle_edge(coordinator: QueueCoordinator) -> None:
    flaky = coordinator.create(_spec("repo-1", max_attempts=1))
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    coordinator.retry_or_fail(flaky.job_id, "fatal", worker_id="worker-a")
    coordinator.retry_job(flaky.job_id)
    coordinator.claim_one(worker_id="worker-a", lease_seconds=60)
    for phase in (JobStatus.CLONING, JobStatus.ANALYZING, JobStatus.GATHERING):
        coordinator.heartbeat(flaky.job_id, worker_id="worker-a", lease_seconds=60, status=phase)
    coordinator.complete(flaky.job_id, result={}, worker_id="worker-a")

    stopped = coordinator.create(_spec("repo-2"))
    coordinator.request_cancel(stopped.job_id)
    coordinator.retry_job(stopped.job_id)
    coordinator.claim_one(worker_id="worker-b", lease_seconds=60)
    coordinator.request_cancel(stopped.job_id)
    coordinator.acknowledge_cancel(stopped.job_id, worker_id="worker-b")

    pairs = set()
    for job_id in (flaky.job_id, stopped.job_id):
        details = coordinator.get_job_details(job_id)
        assert details is not None
        pairs.update(
            (event.status_from, event.status_to)
            for event in details.events
            if event.status_from is not None and event.status_to is not None
        )

    for previous, next_status in pairs:
        assert is_allowed_transition(previous, next_status), (previous, next_status)
    assert (JobStatus.DEAD, JobStatus.PENDING) in pairs
    assert (JobStatus.CANCELED, JobStatus.PENDING) in pairs
    assert (JobStatus.GATHERING, JobStatus.COMPLETED) in pairs


def test_lifecycle_table_only_reopens_jobs_through_operator_retry() -> None:
    assert ALLOWED_TRANSITIONS[JobStatus.COMPLETED] == frozenset()
    for status in (JobStatus.DEAD, JobStatus.FAILED, JobStatus.CANCELED):
        assert ALLOWED_TRANSITIONS[status] == frozenset({JobStatus.PENDING})
    assert is_allowed_transition(JobStatus.PENDING, JobStatus.PENDING)
    assert not is_allowed_transition(JobStatus.COMPLETED, JobStatus.PENDING)
    assert not is_allowed_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not is_allowed_transition(JobStatus.DEAD, JobStatus.CLAIMED)
