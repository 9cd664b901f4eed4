"""Local deterministic analysis tool for executor and worker integration tests.

Behaviour is selected with environment variables:

* ``ECHO_TOOL_MODE``: ``success`` (default), ``fail``, ``auth``, ``hang`` or ``bad-yaml``.
* ``ECHO_TOOL_CHAPTERS``: number of chapters to write (default 2).
* ``ECHO_TOOL_STEP_SECONDS``: pause after each progress line.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

import yaml

_PROGRESS_LINES = (
    json.dumps({"level": "info", "msg": "Extracting core abstractions"}),
    "Step 2/6: Analyzing relationships",
    "[PROGRESS] Determining chapter order",
    "Step 4/6: Generating chapters",
    "Reviewing and enhancing chapters",
    "[STEP 6/6] Creating tutorials",
)


def main(argv: list[str] | None = None) -> int:
    """Pretend to analyze a repository and write the documentation output tree."""

    parser = argparse.ArgumentParser(prog="echo-tool")
    subcommands = parser.add_subparsers(dest="command", required=True)
    analyze = subcommands.add_parser("analyze")
    analyze.add_argument("repo_path")
    analyze.add_argument("--profile", default=None)
    analyze.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    mode = os.getenv("ECHO_TOOL_MODE", "success")
    step_seconds = float(os.getenv("ECHO_TOOL_STEP_SECONDS", "0"))
    chapters = int(os.getenv("ECHO_TOOL_CHAPTERS", "2"))
    output_dir = Path(args.repo_path) / os.getenv("DOCJOBS_OUTPUT_DIR_NAME", ".tutorial-output")

    print("echo-tool starting", flush=True)
    if mode == "hang":
        print("[PROGRESS] Waiting forever", flush=True)
        while True:
            time.sleep(1)
    if mode == "auth":
        print("Error: authentication failed (invalid token)", file=sys.stderr, flush=True)
        return 1
    if mode == "fail":
        print(_PROGRESS_LINES[0], flush=True)
        print("Fatal: analysis crashed", file=sys.stderr, flush=True)
        return 3

    for line in _PROGRESS_LINES:
        print(line, flush=True)
        if step_seconds:
            time.sleep(step_seconds)

    _write_output(output_dir, chapters=chapters, profile=args.profile, bad_yaml=mode == "bad-yaml")
    print(json.dumps({"level": "info", "msg": "Analysis complete"}), flush=True)
    return 0


def _write_output(output_dir: Path, *, chapters: int, profile: str | None, bad_yaml: bool) -> None:
    names = [f"Concept {index}" for index in range(1, chapters + 1)]
    output_dir.mkdir(parents=True, exist_ok=True)
    abstractions = output_dir / "step1_abstractions.yaml"
    if bad_yaml:
        abstractions.write_text("abstractions: [unclosed\n", "utf-8")
    else:
        abstractions.write_text(
            yaml.safe_dump({"abstractions": names, "profile": profile}),
            "utf-8",
        )
    (output_dir / "step2_relationships.yaml").write_text(
        yaml.safe_dump({"relationships": [[a, b] for a, b in zip(names, names[1:])]}),
        "utf-8",
    )
    (output_dir / "step3_order.yaml").write_text(yaml.safe_dump({"order": names}), "utf-8")

    for dir_name in ("chapters", "reviewed-chapters", "tutorials"):
        (output_dir / dir_name).mkdir(exist_ok=True)
    for index, name in enumerate(names, start=1):
        file_name = f"{index:02d}_{name.lower().replace(' ', '_')}.md"
        body = f"# {name}\n\nGenerated notes about {name.lower()}.\n"
        (output_dir / "chapters" / file_name).write_text(body, "utf-8")
        (output_dir / "reviewed-chapters" / file_name).write_text(
            body + "\nReviewed for accuracy.\n",
            "utf-8",
        )
    (output_dir / "tutorials" / "01_getting_started.md").write_text(
        "# Getting Started\n\n```bash\nmake install\n```\n",
        "utf-8",
    )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
