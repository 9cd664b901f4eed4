"""Best-effort extraction of pipeline progress from analysis tool output lines.

Parsing is a UI signal only: a job's outcome is decided by the exit code and the
collected output files, never by what was (or was not) recognized here.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

TOTAL_PHASES = 6

PHASE_NAMES: tuple[str, ...] = (
    "Extracting abstractions",
    "Analyzing relationships",
    "Ordering chapters",
    "Generating chapters",
    "Reviewing chapters",
    "Creating tutorials",
)

# Substring of a structured log message -> (phase, description).
STRUCTURED_MESSAGE_PHASES: tuple[tuple[str, int, str], ...] = (
    ("Starting codebase analysis", 1, "Initializing analysis"),
    ("Extracting core abstractions", 1, "Extracting abstractions"),
    ("Analyzing relationships", 2, "Analyzing relationships"),
    ("Determining optimal chapter order", 3, "Ordering chapters"),
    ("Generating chapter content", 4, "Generating chapters"),
    ("Reviewing and enhancing", 5, "Reviewing chapters"),
    ("Analysis complete", 6, "Finalizing analysis"),
)

PHASE_KEYWORDS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("extracting", "extraction"), 1),
    (("analyzing", "analysis"), 2),
    (("ordering", "organizing", "determining"), 3),
    (("generating", "writing", "creating"), 4),
    (("reviewing", "enhancing"), 5),
    (("building", "tutorial"), 6),
)

_STEP_TAG_RE = re.compile(r"^\[(?:[A-Z]+_)?STEP[_ ](\d+)/(\d+)\]\s*(.*)$", re.IGNORECASE)
_PROGRESS_TAG_RE = re.compile(r"^\[(?:DEV-)?PROGRESS\]\s*(.*)$", re.IGNORECASE)
_STEP_HEADER_RE = re.compile(r"^Step\s+(\d+)(?:\s*/\s*(\d+)|\s+of\s+(\d+))?\s*[:.-]?\s*(.*)$", re.I)
_RATIO_RE = re.compile(r"^(?:Processing\s+)?(\d+)\s*(?:/|\s+of\s+)\s*(\d+)\b", re.IGNORECASE)
_NUMBERED_RE = re.compile(r"^(\d+)[:.]\s*(.*)$")


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Normalized progress update."""

    message: str
    step: int | None = None
    total_steps: int | None = None

    def format(self) -> str:
        if self.step is None:
            return self.message
        return f"Step {self.step}/{self.total_steps or TOTAL_PHASES}: {self.message}"


def phase_name(step: int) -> str:
    if 1 <= step <= len(PHASE_NAMES):
        return PHASE_NAMES[step - 1]
    return f"Step {step}"


def parse_progress_line(line: str) -> ProgressEvent | None:
    """Map one stdout line to a progress event; unrecognized lines yield None."""

    text = line.strip()
    if not text:
        return None
    for rule in (_parse_structured, _parse_tag, _parse_step_header, _parse_phase_keyword):
        event = rule(text)
        if event is not None:
            return event
    return None


def _parse_structured(text: str) -> ProgressEvent | None:
    if not text.startswith("{"):
        return None
    try:
        record = json.loads(text)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    message = record.get("msg") or record.get("message")
    if not isinstance(message, str) or not message.strip():
        return None
    for keyword, step, description in STRUCTURED_MESSAGE_PHASES:
        if keyword in message:
            return ProgressEvent(message=description, step=step, total_steps=TOTAL_PHASES)
    return ProgressEvent(message=message.strip())


def _parse_tag(text: str) -> ProgressEvent | None:
    match = _STEP_TAG_RE.match(text)
    if match:
        step, total = int(match.group(1)), int(match.group(2))
        return ProgressEvent(
            message=match.group(3).strip() or phase_name(step),
            step=step,
            total_steps=total,
        )
    match = _PROGRESS_TAG_RE.match(text)
    if match and match.group(1).strip():
        return ProgressEvent(message=match.group(1).strip())
    return None


def _parse_step_header(text: str) -> ProgressEvent | None:
    match = _STEP_HEADER_RE.match(text)
    if match:
        step = int(match.group(1))
        total = int(match.group(2) or match.group(3) or TOTAL_PHASES)
        return ProgressEvent(
            message=match.group(4).strip() or phase_name(step),
            step=step,
            total_steps=total,
        )
    match = _RATIO_RE.match(text)
    if match:
        step, total = int(match.group(1)), int(match.group(2))
        if total <= 0 or step > total:
            return None
        return ProgressEvent(message=phase_name(step), step=step, total_steps=total)
    match = _NUMBERED_RE.match(text)
    if match:
        step = int(match.group(1))
        if 1 <= step <= TOTAL_PHASES:
            return ProgressEvent(
                message=match.group(2).strip() or phase_name(step),
                step=step,
                total_steps=TOTAL_PHASES,
            )
    return None


def _parse_phase_keyword(text: str) -> ProgressEvent | None:
    lowered = text.lower()
    for words, step in PHASE_KEYWORDS:
        if any(word in lowered for word in words):
            return ProgressEvent(message=phase_name(step), step=step, total_steps=TOTAL_PHASES)
    return None
