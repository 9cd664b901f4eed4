"""Troubleshooting hints attached to failed analysis runs."""

from __future__ import annotations

import re


def _any_of(*patterns: str) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{pattern})" for pattern in patterns))


_AUTH_PATTERNS = _any_of(
    r"\bauth(?:entication|orization)?\b",
    r"\bunauthori[sz]ed\b",
    r"\bforbidden\b",
    r"\binvalid api key\b",
    r"\btoken expired\b",
)
_QUOTA_PATTERNS = _any_of(
    r"\bquota\b",
    r"\brate limit",
    r"\btoo many requests\b",
    r"\busage limit\b",
    r"\b429\b",
)
_NETWORK_PATTERNS = _any_of(
    r"could not resolve host",
    r"connection reset",
    r"connection refused",
    r"network error",
    r"temporarily unavailable",
)
_RESOURCE_PATTERNS = _any_of(
    r"out of memory",
    r"\benomem\b",
    r"no space left on device",
    r"\bkilled\b",
)

QUOTA_HINT = "The analysis tool hit a usage or rate limit; the job will be retried with backoff."
NETWORK_HINT = "Network access from the worker looks broken; check DNS and outbound connectivity."
RESOURCE_HINT = "The worker ran out of memory or disk; lower DOCJOBS_MAX_CONCURRENT_JOBS."
TIMEOUT_HINT = (
    "The run exceeded its time limit. Very large repositories or a tool waiting on "
    "authentication are the usual causes."
)


def troubleshooting_hint(
    *,
    stdout_tail: str,
    stderr_tail: str,
    auth_hint: str,
    timed_out: bool = False,
) -> str | None:
    """Pick the first matching hint for the captured output, if any."""

    if timed_out:
        return TIMEOUT_HINT
    haystack = f"{stderr_tail}\n{stdout_tail}".lower()
    if _AUTH_PATTERNS.search(haystack):
        return auth_hint
    if _QUOTA_PATTERNS.search(haystack):
        return QUOTA_HINT
    if _NETWORK_PATTERNS.search(haystack):
        return NETWORK_HINT
    if _RESOURCE_PATTERNS.search(haystack):
        return RESOURCE_HINT
    return None
