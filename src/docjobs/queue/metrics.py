"""Operator-facing rendering of queue metrics."""

from __future__ import annotations

from docjobs.queue.models import TERMINAL_STATUSES, QueueMetrics

_TERMINAL_KEYS = frozenset(status.value for status in TERMINAL_STATUSES)


def render_metrics_lines(*, metrics: QueueMetrics) -> list[str]:
    """Render queue health lines for CLI output."""

    hours = metrics.window_seconds / 3600
    active = {
        key: value
        for key, value in metrics.status_counts.items()
        if value and key not in _TERMINAL_KEYS
    }
    terminal = {
        key: value
        for key, value in metrics.status_counts.items()
        if value and key in _TERMINAL_KEYS
    }
    return [
        f"Job queue health (window={hours:g}h)",
        f"Pending: {metrics.pending}",
        f"Running: {metrics.running}",
        f"Completed in window: {metrics.completed_in_window}",
        f"Failed in window: {metrics.failed_in_window}",
        f"Retries in window: {metrics.retries_in_window}",
        f"Dead: {metrics.dead}",
        f"Avg duration: {_fmt_seconds(metrics.avg_duration_seconds)}",
        "Active status: " + (_fmt_key_value(active) or "none"),
        "Terminal status: " + (_fmt_key_value(terminal) or "none"),
    ]


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "-"
    return f"{value:.1f}s"
