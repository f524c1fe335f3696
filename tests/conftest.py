"""
Pytest configuration and shared fixtures.

Provides fixtures for temporary backlog folders, sample task documents,
throwaway git repositories and other test utilities used across the test
suite.
"""

import os
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from mdboard.core.config.models import BoardConfig
from mdboard.core.tasks.models import TaskFolder
from mdboard.core.tasks.store import TaskStore

# ==============================================================================
# Sample Documents
# ==============================================================================

SAMPLE_TASK = """\
---
id: TASK-1
title: Fix login redirect
status: In Progress
priority: high
labels: [auth, web]
assignee: ['@alice']
created_date: '2024-01-15 10:30'
dependencies: [TASK-2]
ordinal: 1000
epic: E-7
---

## Description

<!-- SECTION:DESCRIPTION:BEGIN -->
Users land on /home instead of the page they asked for.
<!-- SECTION:DESCRIPTION:END -->

## Acceptance Criteria
<!-- AC:BEGIN -->
- [ ] #1 Redirect honours ?next=
- [x] #2 Covered by a test
<!-- AC:END -->

## Definition of Done
<!-- DOD:BEGIN -->
- [ ] #1 Docs updated
<!-- DOD:END -->
"""

MINIMAL_TASK = """\
---
id: TASK-2
title: Add session store
status: To Do
---

Plain body text.
"""

HEADING_ONLY_TASK = """\
# TASK-3 - Write release notes

## Description

Collect the changes since the last tag.
"""


@pytest.fixture
def sample_task_text() -> str:
    """The full sample task document."""
    return SAMPLE_TASK


@pytest.fixture
def minimal_task_text() -> str:
    """A task with frontmatter and a plain body."""
    return MINIMAL_TASK


@pytest.fixture
def heading_only_task_text() -> str:
    """A task without frontmatter, titled by its heading."""
    return HEADING_ONLY_TASK


# ==============================================================================
# Backlog Fixtures
# ==============================================================================


@pytest.fixture
def backlog_dir(tmp_path: Path) -> Path:
    """
    Provide an empty backlog folder with the standard layout.

    Creates:
    - backlog/config.yml
    - backlog/tasks, drafts, completed, archive/tasks, archive/drafts
    """
    backlog = tmp_path / "backlog"
    for folder in TaskFolder:
        (backlog / folder.value).mkdir(parents=True, exist_ok=True)
    (backlog / "config.yml").write_text(
        "project_name: Demo\n"
        "statuses: [To Do, In Progress, Done]\n"
        "labels: [ops]\n"
        "task_prefix: task\n"
    )
    return backlog


@pytest.fixture
def write_task(backlog_dir: Path) -> Callable[..., Path]:
    """Write a task file into a backlog folder and return its path."""

    def _write(
        filename: str, content: str, folder: TaskFolder = TaskFolder.TASKS
    ) -> Path:
        path = backlog_dir / folder.value / filename
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def populated_backlog(backlog_dir: Path, write_task: Callable[..., Path]) -> Path:
    """A backlog holding the three sample tasks in tasks/."""
    write_task("task-1 - Fix-login-redirect.md", SAMPLE_TASK)
    write_task("task-2 - Add-session-store.md", MINIMAL_TASK)
    write_task("task-3 - Write-release-notes.md", HEADING_ONLY_TASK)
    return backlog_dir


@pytest.fixture
def store(backlog_dir: Path) -> TaskStore:
    """TaskStore over the (initially empty) backlog."""
    return TaskStore(backlog_dir, config=BoardConfig(statuses=["To Do", "In Progress", "Done"]))


@pytest.fixture
def populated_store(populated_backlog: Path) -> TaskStore:
    """TaskStore over the populated backlog."""
    return TaskStore(populated_backlog)


# ==============================================================================
# Git Fixtures
# ==============================================================================


class GitRepo:
    """A throwaway repository with helpers for committing at fixed dates."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def run(self, *args: str, date: str | None = None) -> str:
        env = dict(os.environ)
        if date is not None:
            env["GIT_AUTHOR_DATE"] = date
            env["GIT_COMMITTER_DATE"] = date
        result = subprocess.run(
            ["git", *args],
            cwd=self.path,
            check=True,
            capture_output=True,
            text=True,
            env=env,
        )
        return result.stdout.strip()

    def write(self, relative: str, content: str) -> Path:
        target = self.path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def commit(self, message: str, date: str = "2024-01-01T12:00:00+00:00") -> None:
        """Stage everything and commit with the given author/committer date."""
        self.run("add", "-A")
        self.run("commit", "-q", "-m", message, date=date)

    def checkout(self, branch: str, create: bool = False) -> None:
        if create:
            self.run("checkout", "-q", "-b", branch)
        else:
            self.run("checkout", "-q", branch)


@pytest.fixture
def git_repo(tmp_path: Path) -> GitRepo:
    """
    Provide an initialized git repository on branch main.

    The repository has no commits; tests add their own. Skips the test when
    git is not installed.
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = GitRepo(tmp_path / "repo")
    repo.path.mkdir()
    repo.run("init", "-q")
    repo.run("symbolic-ref", "HEAD", "refs/heads/main")
    repo.run("config", "user.email", "test@example.com")
    repo.run("config", "user.name", "Test User")
    repo.run("config", "commit.gpgsign", "false")
    return repo
