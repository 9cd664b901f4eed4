"""Supervised execution of the external analysis tool."""

from docjobs.executor.process import AbortSignal, ExecutionResult, ExecutionState, ProcessExecutor
from docjobs.executor.strategies import ExecutorConfig, build_executor_config

__all__ = [
    "AbortSignal",
    "ExecutionResult",
    "ExecutionState",
    "ExecutorConfig",
    "ProcessExecutor",
    "build_executor_config",
]
