"""Per-job repository checkouts."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from docjobs.errors import WorkspaceError

logger = logging.getLogger(__name__)


class RepoWorkspaceManager:
    """Prepares `<root>/job-<id>` from a git URL (shallow clone) or a local directory."""

    def __init__(
        self,
        root: Path,
        *,
        git_token: str | None = None,
        git_binary: str = "git",
        clone_timeout_seconds: float = 600.0,
        ignore_names: tuple[str, ...] = (".git",),
    ) -> None:
        self.root = root
        self.git_token = git_token
        self.git_binary = git_binary
        self.clone_timeout_seconds = clone_timeout_seconds
        self.ignore_names = ignore_names

    def path_for(self, job_id: str) -> Path:
        return self.root / f"job-{job_id}"

    def prepare(self, *, job_id: str, source: str, branch: str = "main") -> Path:
        target = self.path_for(job_id)
        self.cleanup(target)
        self.root.mkdir(parents=True, exist_ok=True)

        local = Path(source).expanduser()
        if local.is_dir():
            try:
                shutil.copytree(local, target, ignore=shutil.ignore_patterns(*self.ignore_names))
            except OSError as error:
                raise WorkspaceError(f"Failed to copy {local} into workspace: {error}") from error
            logger.info("Workspace copied from local path: %s -> %s", local, target)
            return target

        self._clone(source=source, branch=branch, target=target)
        return target

    def cleanup(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def _clone(self, *, source: str, branch: str, target: Path) -> None:
        args = [
            self.git_binary,
            "clone",
            "--depth",
            "1",
            "--branch",
            branch,
            self._authenticated_url(source),
            str(target),
        ]
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                timeout=self.clone_timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise WorkspaceError(f"git executable not found: {self.git_binary}") from error
        except subprocess.TimeoutExpired as error:
            self.cleanup(target)
            raise WorkspaceError(
                f"git clone timed out after {self.clone_timeout_seconds:g}s: {self.mask(source)}",
            ) from error

        if completed.returncode != 0:
            self.cleanup(target)
            detail = self.mask((completed.stderr or completed.stdout or "").strip())
            raise WorkspaceError(
                f"git clone failed (exit {completed.returncode}) for {self.mask(source)}: {detail}",
            )
        logger.info("Workspace cloned: %s@%s -> %s", self.mask(source), branch, target)

    def _authenticated_url(self, source: str) -> str:
        if not self.git_token:
            return source
        parts = urlsplit(source)
        if parts.scheme != "https" or "@" in parts.netloc:
            return source
        netloc = f"x-access-token:{self.git_token}@{parts.netloc}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def mask(self, text: str) -> str:
        """Hide the git token in messages."""

        if self.git_token:
            return text.replace(self.git_token, "***")
        return text
