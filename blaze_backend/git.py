from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from .config import Settings

logger = logging.getLogger(__name__)


class GitError(Exception):
    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit code {returncode}"
        super().__init__(f"git {' '.join(args)} failed: {detail}")


class GitClient:
    """Blocking git wrapper. Callers on the event loop go through ``asyncio.to_thread``."""

    def __init__(self, settings: Settings):
        self.git_bin = settings.git_bin
        self.author_name = settings.git_author_name
        self.author_email = settings.git_author_email
        self.timeout_seconds = settings.git_timeout_seconds

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "GIT_AUTHOR_NAME": self.author_name,
                "GIT_AUTHOR_EMAIL": self.author_email,
                "GIT_COMMITTER_NAME": self.author_name,
                "GIT_COMMITTER_EMAIL": self.author_email,
                "GIT_TERMINAL_PROMPT": "0",
            }
        )
        return env

    def run(self, root: Path, args: list[str]) -> str:
        try:
            proc = subprocess.run(
                [self.git_bin, *args],
                cwd=str(root),
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(args, -1, f"git command timed out after {exc.timeout}s") from exc
        if proc.returncode != 0:
            raise GitError(args, proc.returncode, proc.stderr or proc.stdout)
        return proc.stdout

    def is_repo(self, root: Path) -> bool:
        return (root / ".git").exists()

    def init(self, root: Path) -> None:
        if self.is_repo(root):
            return
        self.run(root, ["init"])
        logger.info("Initialized git repository root=%s", root)

    def add(self, root: Path, paths: list[str]) -> None:
        if paths:
            self.run(root, ["add", "--", *paths])

    def add_all(self, root: Path) -> None:
        self.run(root, ["add", "-A"])

    def remove_cached(self, root: Path, path: str) -> None:
        # Best effort: the file may never have been tracked.
        try:
            self.run(root, ["rm", "-r", "--cached", "--ignore-unmatch", "--quiet", "--", path])
        except GitError as exc:
            logger.warning("Could not unregister path from git path=%s detail=%s", path, exc.stderr)

    def status_paths(self, root: Path) -> list[str]:
        output = self.run(root, ["status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            paths.append(entry.strip().strip('"'))
        return paths

    def staged_paths(self, root: Path) -> list[str]:
        output = self.run(root, ["diff", "--cached", "--name-only"])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def commit(self, root: Path, message: str, *, amend: bool = False) -> str:
        args = ["commit", "--no-verify", "-m", message]
        if amend:
            args.insert(1, "--amend")
        self.run(root, args)
        return self.run(root, ["rev-parse", "HEAD"]).strip()
