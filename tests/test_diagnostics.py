from __future__ import annotations

import allure
import pytest

from docjobs.executor.diagnostics import (
    NETWORK_HINT,
    QUOTA_HINT,
    RESOURCE_HINT,
    TIMEOUT_HINT,
    troubleshooting_hint,
)

pytestmark = [
    allure.epic("Process Executor"),
    allure.feature("Failure Diagnostics"),
]

AUTH = "check credentials"


@pytest.mark.parametrize(
    ("stderr_tail", "expected"),
    [
        ("Error: authentication failed (invalid token)", AUTH),
        ("HTTP 401 Unauthorized", AUTH),
        ("auth: session expired", AUTH),
        ("429 Too Many Requests", QUOTA_HINT),
        ("fatal: could not resolve host: github.com", NETWORK_HINT),
        ("Killed", RESOURCE_HINT),
        ("Fatal: analysis crashed", None),
    ],
)
def test_hint_is_picked_from_output(stderr_tail: str, expected: str | None) -> None:
    hint = troubleshooting_hint(stdout_tail="", stderr_tail=stderr_tail, auth_hint=AUTH)

    assert hint == expected


@pytest.mark.parametrize(
    "stdout_tail",
    [
        "Step 2/6: Analyzing the authors module",
        "Reading OAuthClient and unskilled_worker helpers",
    ],
)
def test_words_containing_keywords_do_not_match(stdout_tail: str) -> None:
    assert troubleshooting_hint(stdout_tail=stdout_tail, stderr_tail="", auth_hint=AUTH) is None


def test_timeout_hint_wins_over_output_keywords() -> None:
    hint = troubleshooting_hint(
        stdout_tail="Step 2/6: Analyzing the authors module",
        stderr_tail="warning: auth token refresh skipped",
        auth_hint=AUTH,
        timed_out=True,
    )

    assert hint == TIMEOUT_HINT
