"""Document models and normalization helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from docjobs.errors import ParseWarning

_SLUG_PREFIX_RE = re.compile(r"^(?:chapters|reviewed-chapters)/")
_HEADING_SPACING_RE = re.compile(r"\n(#{1,6}\s)")
_EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")


class DocumentKind(str, Enum):
    """Kinds of generated documents."""

    DATA = "data"
    ARTICLE = "article"
    TUTORIAL = "tutorial"
    INDEX = "index"


CONTENT_KINDS = frozenset({DocumentKind.ARTICLE, DocumentKind.TUTORIAL})


@dataclass(slots=True)
class DocumentWrite:
    """One generated document as collected from the output directory."""

    slug: str
    title: str
    kind: DocumentKind
    content: str
    chapter_index: int = 0


@dataclass(slots=True)
class DocumentView:
    """Stored document."""

    document_id: int
    job_id: str
    repository_id: str
    source_key: str
    slug: str
    title: str
    kind: DocumentKind
    content: str
    chapter_index: int
    run_id: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CollectedOutput:
    """Documents found after a run plus per-file problems that were skipped."""

    documents: list[DocumentWrite] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)


@dataclass(slots=True)
class ReconcileStats:
    """Counters recorded for one reconciliation pass."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    rejected: int = 0
    deleted: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "deleted": self.deleted,
        }


def derive_source_key(*, repository_id: str, slug: str, title: str) -> str:
    """Stable document identity that survives regeneration."""

    normalized_slug = _SLUG_PREFIX_RE.sub("", slug)
    return f"{repository_id}:{normalized_slug}:{title}"


def normalize_markdown(content: str) -> str:
    """Normalize line endings, close a dangling code fence and tidy blank lines."""

    text = content.replace("\r\n", "\n").replace("\r", "\n")
    if text.count("```") % 2 == 1:
        if not text.endswith("\n"):
            text += "\n"
        text += "```"
    if not text.endswith("\n"):
        text += "\n"
    text = _HEADING_SPACING_RE.sub(r"\n\n\1", text)
    return _EXTRA_BLANK_LINES_RE.sub("\n\n", text)
