"""
Read-only access to task files on git branches.

GitBranchSource answers the handful of questions the cross-branch
aggregator asks (which branches exist, what is in a directory on a branch,
what does a file contain, when did it last change) using git plumbing
commands. Nothing here touches the working tree or needs a checkout.

Failures resolve to empty results: a missing branch, a missing path or a
non-repository all look like "nothing there". Only a git binary that cannot
be run at all surfaces, as VcsUnavailableError.
"""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from .models import BranchRecord

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 10

_LOCAL_PREFIX = "refs/heads/"
_REMOTE_PREFIX = "refs/remotes/"
# Emitted by %x00 ahead of each commit in `git log --name-only` output
_COMMIT_MARK = "\x00"


class GitError(Exception):
    """Exception raised when a git command fails."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class VcsUnavailableError(Exception):
    """Raised when git cannot be run at all (binary missing or unusable)."""

    pass


@runtime_checkable
class BranchSource(Protocol):
    """
    Protocol for read-only branch access.

    The aggregator only talks to this interface, so it can be driven by an
    in-memory fake in tests.
    """

    def is_repository(self) -> bool:
        """True if the project directory is inside a repository."""
        ...

    def current_branch(self) -> str | None:
        """Checked-out branch, or None when detached or unknown."""
        ...

    def list_branches(self, since_days: int | None = None) -> list[BranchRecord]:
        """Branches whose tip is newer than since_days (all when None)."""
        ...

    def main_branch(self) -> str | None:
        """The main/default branch name."""
        ...

    def path_exists(self, branch: str, path: str) -> bool:
        """True if a file or directory exists at path on branch."""
        ...

    def list_files(self, branch: str, directory: str) -> list[str]:
        """File names directly inside directory on branch."""
        ...

    def read_file(self, branch: str, path: str) -> bytes | None:
        """File content on branch, None if absent."""
        ...

    def file_last_changed(self, branch: str, path: str) -> datetime | None:
        """Commit time of the last commit on branch touching path."""
        ...

    def file_modified_map(self, branch: str, directory: str) -> dict[str, datetime]:
        """File name -> last-changed time for every file under directory."""
        ...


def _timestamp(value: str) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def _normalize(path: str) -> str:
    return path.replace("\\", "/").strip("/")


class GitBranchSource:
    """
    BranchSource backed by the git command line.

    Example:
        >>> source = GitBranchSource(Path("."))
        >>> [b.name for b in source.list_branches(since_days=30)]
        ['main', 'feature/login']
        >>> source.read_file("feature/login", "backlog/tasks/task-3 - Login.md")
        b'---\\nid: TASK-3\\n...'
    """

    def __init__(self, project_dir: Path | None = None, timeout: int = GIT_TIMEOUT) -> None:
        """
        Initialize the source.

        Args:
            project_dir: Directory inside the repository (defaults to cwd)
            timeout: Seconds before a single git command is abandoned
        """
        self.project_dir = (project_dir or Path.cwd()).resolve()
        self.timeout = timeout

    def _run_git_bytes(self, args: list[str]) -> bytes:
        """
        Run a git command and return its raw stdout.

        Raises:
            GitError: If the command fails or times out
            VcsUnavailableError: If git cannot be executed
        """
        cmd = ["git", "-c", "core.quotePath=false"] + args
        logger.debug("Running git command: %s", " ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                cwd=self.project_dir,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git command timed out: {' '.join(cmd)}", command=cmd) from e
        except FileNotFoundError as e:
            raise VcsUnavailableError("git not found in PATH") from e
        except (PermissionError, NotADirectoryError) as e:
            raise VcsUnavailableError(f"cannot run git in {self.project_dir}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise GitError(f"Git command failed: {' '.join(cmd)}", command=cmd, stderr=stderr)

        return result.stdout

    def _run_git(self, args: list[str]) -> str:
        """Run a git command and return its stdout as stripped text."""
        return self._run_git_bytes(args).decode("utf-8", errors="replace").strip()

    # ------------------------------------------------------------------
    # Repository and branches
    # ------------------------------------------------------------------

    def is_repository(self) -> bool:
        try:
            self._run_git(["rev-parse", "--git-dir"])
            return True
        except GitError:
            return False

    def current_branch(self) -> str | None:
        try:
            name = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        except GitError as e:
            logger.debug("Could not determine current branch: %s", e.stderr or e)
            return None
        return name if name and name != "HEAD" else None

    def _list_refs(self, namespace: str) -> list[BranchRecord]:
        try:
            output = self._run_git(
                ["for-each-ref", "--format=%(refname)%09%(committerdate:unix)", namespace]
            )
        except GitError as e:
            logger.debug("Could not list %s: %s", namespace, e.stderr or e)
            return []

        records = []
        for line in output.splitlines():
            refname, _, raw_time = line.rpartition("\t")
            if not refname or refname.endswith("/HEAD"):
                continue
            committed = _timestamp(raw_time)
            if committed is None:
                continue
            records.append(
                BranchRecord(
                    name=refname[len(namespace):],
                    last_commit=committed,
                    is_remote=namespace == _REMOTE_PREFIX,
                )
            )
        return records

    def list_local_branches(self) -> list[BranchRecord]:
        """All local branches with their tip commit time."""
        return self._list_refs(_LOCAL_PREFIX)

    def list_remote_branches(self) -> list[BranchRecord]:
        """Remote-tracking branches (e.g. origin/feature), skipping */HEAD."""
        return self._list_refs(_REMOTE_PREFIX)

    def list_branches(
        self, since_days: int | None = None, include_remote: bool = False
    ) -> list[BranchRecord]:
        """
        Branches with a tip commit inside the recency window.

        Args:
            since_days: Window in days; None returns every branch
            include_remote: Also list remote-tracking branches

        Returns:
            Matching branches in ref order
        """
        branches = self.list_local_branches()
        if include_remote:
            branches.extend(self.list_remote_branches())
        if since_days is None:
            return branches
        cutoff = datetime.now(timezone.utc) - timedelta(days=since_days)
        return [branch for branch in branches if branch.last_commit > cutoff]

    def main_branch(self) -> str | None:
        """main, else master, else the first local branch."""
        names = [branch.name for branch in self.list_local_branches()]
        for candidate in ("main", "master"):
            if candidate in names:
                return candidate
        return names[0] if names else None

    # ------------------------------------------------------------------
    # Files on a branch
    # ------------------------------------------------------------------

    def path_exists(self, branch: str, path: str) -> bool:
        try:
            self._run_git(["cat-file", "-e", f"{branch}:{_normalize(path)}"])
            return True
        except GitError:
            return False

    def list_files(self, branch: str, directory: str) -> list[str]:
        directory = _normalize(directory)
        try:
            output = self._run_git(["ls-tree", "--name-only", branch, f"{directory}/"])
        except GitError:
            return []
        return [line.rsplit("/", 1)[-1] for line in output.splitlines() if line.strip()]

    def read_file(self, branch: str, path: str) -> bytes | None:
        try:
            return self._run_git_bytes(["show", f"{branch}:{_normalize(path)}"])
        except GitError:
            return None

    def file_last_changed(self, branch: str, path: str) -> datetime | None:
        try:
            output = self._run_git(["log", "-1", "--format=%ct", branch, "--", _normalize(path)])
        except GitError:
            return None
        return _timestamp(output) if output else None

    def file_modified_map(self, branch: str, directory: str) -> dict[str, datetime]:
        """
        Last-changed time of every file under a directory, in one git call.

        Walks the branch history newest first; the first commit that names a
        file is the last one that changed it.

        Returns:
            File name (without directory) -> commit time
        """
        directory = _normalize(directory)
        try:
            output = self._run_git(
                [
                    "log",
                    "--format=%x00%ct",
                    "--name-only",
                    branch,
                    "--",
                    f"{directory}/",
                ]
            )
        except GitError:
            return {}

        modified: dict[str, datetime] = {}
        current: datetime | None = None
        for line in output.splitlines():
            if line.startswith(_COMMIT_MARK):
                current = _timestamp(line[len(_COMMIT_MARK):])
                continue
            line = line.strip()
            if not line or current is None:
                continue
            name = line.rsplit("/", 1)[-1]
            modified.setdefault(name, current)
        return modified
