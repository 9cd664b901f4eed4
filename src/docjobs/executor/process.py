"""Supervised execution of the external analysis tool."""

from __future__ import annotations

import logging
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from docjobs.documents.collector import OutputCollector
from docjobs.documents.models import DocumentWrite
from docjobs.errors import ExecutionError, ValidationError
from docjobs.executor.diagnostics import troubleshooting_hint
from docjobs.executor.progress import TOTAL_PHASES, ProgressEvent, parse_progress_line
from docjobs.executor.strategies import ExecutorConfig, build_env, build_run_args

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

_TAIL_LINES = 200
_TAIL_CHARS = 4000
_ERROR_EXCERPT_CHARS = 1000
_READER_JOIN_SECONDS = 5.0


class ExecutionState(str, Enum):
    """Lifecycle of one execution."""

    VALIDATING = "validating"
    SPAWNING = "spawning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


class AbortSignal:
    """Thread-safe request to stop a running execution."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: str | None = None
        self.grace_seconds = 0.0

    def abort(self, *, reason: str, grace_seconds: float = 0.0) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self.grace_seconds = max(0.0, grace_seconds)
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class ExecutionResult:
    """Successful execution outcome."""

    success: bool
    documents: list[DocumentWrite]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _Execution:
    """Per-call state; never shared between executions."""

    state: ExecutionState = ExecutionState.VALIDATING
    stdout_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_TAIL_LINES))
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_TAIL_LINES))
    events: queue.Queue[ProgressEvent] = field(default_factory=queue.Queue)
    last_message: str | None = None
    real_progress_seen: bool = False
    progress_lock: threading.Lock = field(default_factory=threading.Lock)
    progress_count: int = 0


class ProcessExecutor:
    """Runs `<tool> analyze <repo>` and turns its output into documents."""

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        collector: OutputCollector | None = None,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.config = config
        self.collector = collector or OutputCollector(config.output_dir_name)
        self.poll_interval_seconds = poll_interval_seconds

    def execute(
        self,
        repo_path: Path,
        on_progress: ProgressCallback | None = None,
        abort: AbortSignal | None = None,
        *,
        profile: str | None = None,
    ) -> ExecutionResult:
        """Run the analysis tool on `repo_path`.

        Raises ValidationError when prerequisites are missing (nothing spawned)
        and ExecutionError on nonzero exit, timeout, signal or abort. Exceptions
        raised by `on_progress` kill the subprocess and propagate unchanged.
        """

        run = _Execution()
        argv = build_run_args(self.config, repo_path=repo_path, profile=profile)
        env = build_env(self.config)
        self._validate(argv=argv, env=env, repo_path=repo_path)

        run.state = ExecutionState.SPAWNING
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=repo_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as error:
            run.state = ExecutionState.FAILED
            raise ExecutionError(
                f"{self.config.name} analysis failed to spawn: {error}",
                state=run.state.value,
            ) from error

        run.state = ExecutionState.RUNNING
        logger.info("Analysis started: pid=%s argv=%s", process.pid, argv[:3])
        readers = [
            _start_reader(process.stdout, lambda line: self._on_stdout_line(run, line)),
            _start_reader(process.stderr, run.stderr_tail.append),
        ]
        try:
            exit_code = self._supervise(
                process=process,
                run=run,
                started=started,
                on_progress=on_progress,
                abort=abort,
            )
        except BaseException:
            _terminate_process_group(process, grace_seconds=0)
            _join_readers(readers)
            raise
        _join_readers(readers)
        self._drain_events(run, on_progress)
        duration = time.monotonic() - started

        if run.state == ExecutionState.RUNNING and exit_code == 0:
            run.state = ExecutionState.SUCCEEDED
            return self._collect(repo_path=repo_path, run=run, duration=duration)
        raise self._failure(run=run, exit_code=exit_code, abort=abort, duration=duration)

    def _validate(self, *, argv: list[str], env: dict[str, str], repo_path: Path) -> None:
        errors: list[str] = []
        if not repo_path.is_dir():
            errors.append(f"repository path does not exist: {repo_path}")
        command = argv[0]
        if os.sep in command:
            if not Path(command).exists():
                errors.append(f"analysis tool not found: {command}")
        elif shutil.which(command, path=env.get("PATH")) is None:
            errors.append(f"analysis tool not found on PATH: {command}")
        errors.extend(
            f"required binary not available: {binary}"
            for binary in self.config.required_binaries
            if shutil.which(binary, path=env.get("PATH")) is None
        )
        errors.extend(
            f"required environment variable not set: {name}"
            for name in self.config.required_env
            if not env.get(name)
        )
        if errors:
            raise ValidationError(
                f"{self.config.name} executor validation failed: {'; '.join(errors)}",
            )

    def _supervise(
        self,
        *,
        process: subprocess.Popen[str],
        run: _Execution,
        started: float,
        on_progress: ProgressCallback | None,
        abort: AbortSignal | None,
    ) -> int:
        timeout = self.config.timeout_seconds
        heartbeat = self.config.heartbeat_seconds
        deadline = started + timeout if timeout else None
        next_heartbeat = started + heartbeat if heartbeat else None

        while True:
            self._drain_events(run, on_progress)
            returncode = process.poll()
            if returncode is not None:
                return returncode

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                run.state = ExecutionState.TIMED_OUT
                logger.warning("Analysis timed out after %.0fs; terminating", timeout)
                return _terminate_process_group(
                    process,
                    grace_seconds=self.config.kill_grace_seconds,
                )

            if abort is not None and abort.is_set():
                run.state = ExecutionState.KILLED
                logger.warning("Analysis aborted: %s", abort.reason)
                return _terminate_process_group(process, grace_seconds=abort.grace_seconds)

            if next_heartbeat is not None and heartbeat and now >= next_heartbeat:
                next_heartbeat = now + heartbeat
                with run.progress_lock:
                    if not run.real_progress_seen:
                        run.events.put(
                            ProgressEvent(
                                message=f"Analysis in progress... ({int(now - started)}s elapsed)",
                                step=1,
                                total_steps=TOTAL_PHASES,
                            ),
                        )

            time.sleep(self.poll_interval_seconds)

    def _on_stdout_line(self, run: _Execution, line: str) -> None:
        run.stdout_tail.append(line)
        event = parse_progress_line(line)
        if event is None:
            return
        with run.progress_lock:
            run.real_progress_seen = True
            run.events.put(event)

    def _drain_events(self, run: _Execution, on_progress: ProgressCallback | None) -> None:
        while True:
            try:
                event = run.events.get_nowait()
            except queue.Empty:
                return
            message = event.format()
            if message == run.last_message:
                continue
            run.last_message = message
            run.progress_count += 1
            if on_progress is not None:
                on_progress(event)

    def _collect(self, *, repo_path: Path, run: _Execution, duration: float) -> ExecutionResult:
        metadata: dict[str, Any] = {
            "executor": self.config.name,
            "state": run.state.value,
            "exit_code": 0,
            "duration_seconds": round(duration, 3),
            "progress_events": run.progress_count,
        }
        try:
            collected = self.collector.collect(repo_path)
        except (OSError, ValueError) as error:
            logger.warning("Output collection failed: %s", error)
            metadata["parse_warning"] = str(error)
            metadata["document_count"] = 0
            return ExecutionResult(success=True, documents=[], metadata=metadata)

        metadata["document_count"] = len(collected.documents)
        if collected.warnings:
            metadata["warnings"] = [str(warning) for warning in collected.warnings]
        return ExecutionResult(success=True, documents=collected.documents, metadata=metadata)

    def _failure(
        self,
        *,
        run: _Execution,
        exit_code: int,
        abort: AbortSignal | None,
        duration: float,
    ) -> ExecutionError:
        stdout_tail = _tail_text(run.stdout_tail)
        stderr_tail = _tail_text(run.stderr_tail)
        signal_name = _signal_name(exit_code)
        name = self.config.name

        if run.state == ExecutionState.TIMED_OUT:
            message = (
                f"{name} analysis timed out after {self.config.timeout_seconds:g}s "
                "and was terminated."
            )
        elif run.state == ExecutionState.KILLED:
            reason = abort.reason if abort is not None else None
            message = f"{name} analysis was aborted: {reason or 'abort requested'}."
        else:
            run.state = ExecutionState.FAILED
            if signal_name is not None:
                message = f"{name} analysis was killed by signal {signal_name}."
            else:
                message = f"{name} analysis exited with code {exit_code}."

        excerpt = (stderr_tail or stdout_tail)[-_ERROR_EXCERPT_CHARS:].strip()
        if excerpt:
            message = f"{message} Output: {excerpt}"
        hint = troubleshooting_hint(
            stdout_tail=stdout_tail,
            stderr_tail=stderr_tail,
            auth_hint=self.config.auth_hint,
            timed_out=run.state == ExecutionState.TIMED_OUT,
        )
        logger.warning(
            "Analysis failed: state=%s exit_code=%s duration=%.1fs",
            run.state.value,
            exit_code,
            duration,
        )
        return ExecutionError(
            message,
            state=run.state.value,
            exit_code=exit_code,
            signal_name=signal_name,
            stdout_tail=stdout_tail,
            stderr_tail=stderr_tail,
            hint=hint,
        )


def _start_reader(stream: IO[str] | None, sink: Callable[[str], None]) -> threading.Thread:
    def _pump() -> None:
        if stream is None:
            return
        with stream:
            for line in stream:
                sink(line)

    thread = threading.Thread(target=_pump, name="docjobs-output-reader", daemon=True)
    thread.start()
    return thread


def _join_readers(readers: list[threading.Thread]) -> None:
    for reader in readers:
        reader.join(timeout=_READER_JOIN_SECONDS)


def _terminate_process_group(process: subprocess.Popen[str], *, grace_seconds: float) -> int:
    """SIGTERM the process group, then SIGKILL once the grace period ends."""

    if process.poll() is not None:
        return process.returncode
    if grace_seconds > 0:
        _signal_group(process, signal.SIGTERM)
        try:
            return process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            pass
    _signal_group(process, signal.SIGKILL)
    return process.wait()


def _signal_group(process: subprocess.Popen[str], sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        process.send_signal(sig)


def _signal_name(exit_code: int) -> str | None:
    if exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return str(-exit_code)


def _tail_text(lines: deque[str]) -> str:
    return "".join(lines)[-_TAIL_CHARS:]
