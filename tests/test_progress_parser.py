from __future__ import annotations

import allure
import pytest

from docjobs.executor.progress import ProgressEvent, parse_progress_line

pytestmark = [
    allure.epic("Analysis Execution"),
    allure.feature("Progress Parsing"),
]


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        (
            '{"level": "info", "msg": "Extracting core abstractions from 42 files"}',
            ProgressEvent("Extracting abstractions", 1, 6),
        ),
        (
            '{"message": "Determining optimal chapter order"}',
            ProgressEvent("Ordering chapters", 3, 6),
        ),
        ('{"msg": "Loaded cache"}', ProgressEvent("Loaded cache")),
        ("[STEP 3/6] Ordering", ProgressEvent("Ordering", 3, 6)),
        ("[DEV_STEP_2/6] Relationships", ProgressEvent("Relationships", 2, 6)),
        ("[PROGRESS] Cloning done", ProgressEvent("Cloning done")),
        ("[DEV-PROGRESS] Warming up", ProgressEvent("Warming up")),
        ("Step 3:", ProgressEvent("Ordering chapters", 3, 6)),
        ("Step 2/6: Analyzing relationships", ProgressEvent("Analyzing relationships", 2, 6)),
        ("Step 2 of 5: Analyzing", ProgressEvent("Analyzing", 2, 5)),
        ("Processing 4 of 6", ProgressEvent("Generating chapters", 4, 6)),
        ("3/6 done", ProgressEvent("Ordering chapters", 3, 6)),
        ("5. Reviewing", ProgressEvent("Reviewing", 5, 6)),
        ("Writing chapter 2", ProgressEvent("Generating chapters", 4, 6)),
    ],
)
def test_recognized_lines(line: str, expected: ProgressEvent) -> None:
    assert parse_progress_line(line) == expected


@pytest.mark.parametrize(
    "line",
    ["", "   ", "hello world", "{not json", "7. Something else", "9/4 items", "[1, 2]"],
)
def test_unrecognized_lines_yield_none(line: str) -> None:
    assert parse_progress_line(line) is None


def test_structured_rule_wins_over_keywords() -> None:
    event = parse_progress_line('{"msg": "Reviewing and enhancing chapter 3"}')

    assert event == ProgressEvent("Reviewing chapters", 5, 6)


def test_format_includes_step_when_known() -> None:
    assert ProgressEvent("Ordering chapters", 3, 6).format() == "Step 3/6: Ordering chapters"
    assert ProgressEvent("Ordering chapters", 3).format() == "Step 3/6: Ordering chapters"
    assert ProgressEvent("Cloning").format() == "Cloning"
