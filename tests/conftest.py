"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from docjobs.executor.strategies import ExecutorConfig
from docjobs.queue.coordinator import QueueCoordinator
from docjobs.queue.models import RetryPolicy

ECHO_TOOL_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m docjobs.executor.echo_tool "
    "analyze {repo_path} --profile {profile}"
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "docjobs.db"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def coordinator(db_path: Path) -> Iterator[QueueCoordinator]:
    queue = QueueCoordinator(db_path, retry_policy=RetryPolicy(jitter_seconds=0))
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()


@pytest.fixture()
def clocked_coordinator(db_path: Path, clock: FakeClock) -> Iterator[QueueCoordinator]:
    queue = QueueCoordinator(
        db_path,
        retry_policy=RetryPolicy(base_seconds=5, multiplier=2, cap_seconds=600, jitter_seconds=0),
        clock=clock,
    )
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()


@pytest.fixture()
def source_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "source-repo"
    (repo / "src").mkdir(parents=True)
    (repo / "README.md").write_text("# Sample\n", "utf-8")
    (repo / "src" / "app.py").write_text("print('hello')\n", "utf-8")
    return repo


@pytest.fixture()
def echo_config() -> ExecutorConfig:
    """Executor config that runs the bundled echo tool with the current interpreter."""

    return ExecutorConfig(
        name="echo",
        tool_path=sys.executable,
        command_template=ECHO_TOOL_COMMAND_TEMPLATE,
        profile="test",
        timeout_seconds=60,
        kill_grace_seconds=0.5,
    )


@pytest.fixture()
def echo_tool_env(monkeypatch, tmp_path: Path) -> None:
    """Point Settings.from_env at the echo tool with fast worker timings."""

    monkeypatch.setenv("DOCJOBS_EXECUTOR_MODE", "development")
    monkeypatch.setenv("DOCJOBS_TOOL_PATH", sys.executable)
    monkeypatch.setenv("DOCJOBS_TOOL_COMMAND_TEMPLATE", ECHO_TOOL_COMMAND_TEMPLATE)
    monkeypatch.setenv("DOCJOBS_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("DOCJOBS_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("DOCJOBS_HEARTBEAT_SECONDS", "1")
    monkeypatch.setenv("DOCJOBS_LEASE_SECONDS", "30")
    monkeypatch.setenv("DOCJOBS_BACKOFF_JITTER_SECONDS", "0")
    monkeypatch.setenv("DOCJOBS_WORKER_ID", "cli-worker")
    monkeypatch.delenv("ECHO_TOOL_MODE", raising=False)
