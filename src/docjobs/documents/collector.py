"""Build documents from the analysis tool's output directory."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from docjobs.documents.models import CollectedOutput, DocumentKind, DocumentWrite
from docjobs.errors import ParseWarning

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR_NAME = ".tutorial-output"
INDEX_FILE_NAME = "index.md"

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class DataFileSpec:
    file_name: str
    title: str


@dataclass(frozen=True, slots=True)
class ContentDirSpec:
    dir_name: str
    kind: DocumentKind
    title_prefix: str = ""


DATA_FILES: tuple[DataFileSpec, ...] = (
    DataFileSpec("step1_abstractions.yaml", "Abstractions"),
    DataFileSpec("step2_relationships.yaml", "Relationships"),
    DataFileSpec("step3_order.yaml", "Chapter Order"),
)

# Raw, reviewed and final content, in that order.
CONTENT_DIRS: tuple[ContentDirSpec, ...] = (
    ContentDirSpec("chapters", DocumentKind.ARTICLE),
    ContentDirSpec("reviewed-chapters", DocumentKind.ARTICLE, "Reviewed: "),
    ContentDirSpec("tutorials", DocumentKind.TUTORIAL, "Tutorial: "),
)


class OutputCollector:
    """Scans `<repo>/<output_dir_name>` and turns its files into documents."""

    def __init__(self, output_dir_name: str = DEFAULT_OUTPUT_DIR_NAME) -> None:
        self.output_dir_name = output_dir_name

    def output_dir(self, repo_path: Path) -> Path:
        return repo_path / self.output_dir_name

    def collect(self, repo_path: Path) -> CollectedOutput:
        output = CollectedOutput()
        output_dir = self.output_dir(repo_path)
        if not output_dir.is_dir():
            logger.info("No output directory found: %s", output_dir)
            return output

        for spec in DATA_FILES:
            self._collect_data_file(output_dir / spec.file_name, spec=spec, output=output)
        for spec in CONTENT_DIRS:
            self._collect_content_dir(output_dir / spec.dir_name, spec=spec, output=output)
        self._collect_index(output_dir / INDEX_FILE_NAME, output=output)

        logger.info(
            "Collected %d document(s) from %s (%d warning(s))",
            len(output.documents),
            output_dir,
            len(output.warnings),
        )
        return output

    def _collect_data_file(
        self,
        path: Path,
        *,
        spec: DataFileSpec,
        output: CollectedOutput,
    ) -> None:
        if not path.is_file():
            return
        try:
            parsed = yaml.safe_load(path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            _warn(output, f"Failed to parse data file {spec.file_name}: {error}")
            return
        output.documents.append(
            DocumentWrite(
                slug=spec.file_name,
                title=spec.title,
                kind=DocumentKind.DATA,
                content=json.dumps(parsed, indent=2, ensure_ascii=False, default=str),
                chapter_index=-1,
            ),
        )

    def _collect_content_dir(
        self,
        directory: Path,
        *,
        spec: ContentDirSpec,
        output: CollectedOutput,
    ) -> None:
        if not directory.is_dir():
            return
        files = sorted(path for path in directory.iterdir() if path.suffix == ".md")
        for index, path in enumerate(files):
            try:
                content = path.read_text("utf-8")
            except (OSError, UnicodeDecodeError) as error:
                _warn(output, f"Failed to read {spec.dir_name}/{path.name}: {error}")
                continue
            output.documents.append(
                DocumentWrite(
                    slug=f"{spec.dir_name}/{path.name}",
                    title=f"{spec.title_prefix}{extract_title(content, path)}",
                    kind=spec.kind,
                    content=content,
                    chapter_index=index,
                ),
            )

    def _collect_index(self, path: Path, *, output: CollectedOutput) -> None:
        if not path.is_file():
            return
        try:
            content = path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            _warn(output, f"Failed to read {INDEX_FILE_NAME}: {error}")
            return
        output.documents.append(
            DocumentWrite(
                slug=INDEX_FILE_NAME,
                title=extract_title(content, path),
                kind=DocumentKind.INDEX,
                content=content,
                chapter_index=-1,
            ),
        )


def extract_title(content: str, path: Path) -> str:
    """First `# ` heading, else a title derived from the file name."""

    match = _TITLE_RE.search(content)
    if match:
        return match.group(1).strip()
    return path.stem.replace("_", " ").replace("-", " ").strip()


def _warn(output: CollectedOutput, message: str) -> None:
    logger.warning(message)
    output.warnings.append(ParseWarning(message))
