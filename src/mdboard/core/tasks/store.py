"""
Task store facade.

TaskStore reads the backlog folders on disk and is the single entry point
for the layer above: listing, lookup, derived queries, cross-branch loading,
ordinal batches and every write operation (delegated to TaskWriter).

Backlog layout:

    backlog/
    ├── config.yml
    ├── tasks/
    ├── drafts/
    ├── completed/
    └── archive/
        ├── tasks/
        └── drafts/
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from mdboard.core.config.loader import load_config
from mdboard.core.config.models import DRAFT_STATUS, BoardConfig, Milestone

from .codec import parse_task, task_id_from_filename
from .models import (
    ChecklistItem,
    ChecklistKind,
    CreateTaskOptions,
    OrdinalUpdate,
    Task,
    TaskFolder,
    TaskSource,
    TaskUpdate,
)
from .ordinal import CardData, calculate_ordinals_for_drop
from .writer import OrdinalBatchResult, TaskWriter

if TYPE_CHECKING:
    from mdboard.core.branches.source import BranchSource

logger = logging.getLogger(__name__)

# Lookup order for get_task()
SEARCH_ORDER = (
    TaskFolder.TASKS,
    TaskFolder.DRAFTS,
    TaskFolder.COMPLETED,
    TaskFolder.ARCHIVE,
    TaskFolder.ARCHIVE_DRAFTS,
)


def compute_subtasks(tasks: Iterable[Task]) -> None:
    """
    Fill each parent's `subtasks` from its children's `parent_task_id`.

    Parents with children get a sorted list of child ids, replacing whatever
    the file declared. Tasks are updated in place.
    """
    tasks = list(tasks)
    children: dict[str, list[str]] = {}
    for task in tasks:
        if task.parent_task_id:
            children.setdefault(task.parent_task_id.upper(), []).append(task.id)

    for task in tasks:
        if task.id in children:
            task.subtasks = sorted(children[task.id])


class TaskStore:
    """
    Markdown task store for one backlog folder.

    Reads go straight to the files on every call; the store keeps no cache.
    Files that cannot be read or parsed are logged and skipped.

    Example:
        >>> store = TaskStore(Path("backlog"))
        >>> tasks = store.get_tasks()
        >>> task = store.get_task("TASK-1")
        >>> store.update_task("TASK-1", {"status": "Done"}, task.content_hash)
    """

    def __init__(
        self,
        backlog_path: Path | None = None,
        config: BoardConfig | None = None,
        project_dir: Path | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            backlog_path: Backlog root (defaults to ./backlog)
            config: Board configuration (defaults to the backlog's config.yml)
            project_dir: Repository root for cross-branch loading
                (defaults to the backlog's parent directory)
        """
        self.backlog_path = (backlog_path or Path.cwd() / "backlog").resolve()
        self.config = config if config is not None else load_config(self.backlog_path)
        self.project_dir = (project_dir or self.backlog_path.parent).resolve()
        self.writer = TaskWriter(self)

    def reload_config(self) -> BoardConfig:
        """Re-read config.yml (e.g. after the file changed)."""
        self.config = load_config(self.backlog_path)
        return self.config

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def folder_path(self, folder: TaskFolder) -> Path:
        return self.backlog_path / folder.value

    def task_files(self, folder: TaskFolder) -> list[Path]:
        """Markdown files directly inside a backlog folder, sorted by name."""
        path = self.folder_path(folder)
        if not path.is_dir():
            return []
        return sorted(
            entry
            for entry in path.iterdir()
            if entry.suffix == ".md" and entry.is_file() and not entry.name.startswith(".")
        )

    def load_task_file(self, file_path: Path, folder: TaskFolder = TaskFolder.TASKS) -> Task | None:
        """
        Parse one task file.

        Returns:
            The task, or None if the file has no title or cannot be read
        """
        try:
            return parse_task(file_path.read_bytes(), file_path, folder)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("Skipping unreadable task file %s: %s", file_path, e)
            return None

    def _load_folder(self, folder: TaskFolder) -> list[Task]:
        tasks = []
        for file_path in self.task_files(folder):
            task = self.load_task_file(file_path, folder)
            if task is not None:
                tasks.append(task)
        logger.debug("Loaded %d tasks from %s", len(tasks), folder.value)
        return tasks

    def get_tasks(self) -> list[Task]:
        """All tasks in tasks/, with parents' subtasks derived from their children."""
        tasks = self._load_folder(TaskFolder.TASKS)
        compute_subtasks(tasks)
        return tasks

    def get_drafts(self) -> list[Task]:
        """All drafts; their status is always reported as Draft."""
        return [
            task.model_copy(update={"status": DRAFT_STATUS})
            for task in self._load_folder(TaskFolder.DRAFTS)
        ]

    def get_completed_tasks(self) -> list[Task]:
        """Tasks in completed/, marked with the completed source."""
        return [
            task.model_copy(update={"source": TaskSource.COMPLETED})
            for task in self._load_folder(TaskFolder.COMPLETED)
        ]

    def get_archived_tasks(self) -> list[Task]:
        """Tasks in archive/tasks/."""
        return self._load_folder(TaskFolder.ARCHIVE)

    def get_task(self, task_id: str) -> Task | None:
        """
        Find a task by id.

        Searches tasks/, drafts/, completed/ and the archive in that order.
        Files whose name carries the id are tried first; a full scan of the
        folder catches files whose frontmatter id differs from their name.

        Args:
            task_id: Task id (case-insensitive)

        Returns:
            The task, or None if no folder has it
        """
        wanted = task_id.strip().upper()
        for folder in SEARCH_ORDER:
            files = self.task_files(folder)
            named = [f for f in files if task_id_from_filename(f) == wanted]
            others = [f for f in files if f not in named]
            for file_path in named + others:
                task = self.load_task_file(file_path, folder)
                if task is not None and task.id == wanted:
                    if folder is TaskFolder.DRAFTS:
                        return task.model_copy(update={"status": DRAFT_STATUS})
                    return task
        return None

    # ------------------------------------------------------------------
    # Derived queries
    # ------------------------------------------------------------------

    def get_statuses(self) -> list[str]:
        return list(self.config.statuses)

    def get_milestones(self) -> list[Milestone]:
        return list(self.config.milestones)

    def get_unique_labels(self) -> list[str]:
        """Configured labels plus every label used by a task, sorted."""
        labels = set(self.config.labels)
        for task in self.get_tasks():
            labels.update(task.labels)
        return sorted(labels)

    def get_unique_assignees(self) -> list[str]:
        assignees: set[str] = set()
        for task in self.get_tasks():
            assignees.update(task.assignees)
        return sorted(assignees)

    def get_blocked_by(self, task_id: str) -> list[str]:
        """Ids of tasks that list task_id among their dependencies."""
        wanted = task_id.upper()
        return [
            task.id
            for task in self.get_tasks()
            if wanted in (dep.upper() for dep in task.dependencies)
        ]

    # ------------------------------------------------------------------
    # Cross-branch
    # ------------------------------------------------------------------

    def get_tasks_across_branches(
        self,
        source: BranchSource | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[Task]:
        """
        Tasks merged from every active branch.

        Falls back to local tasks when cross-branch loading is disabled in
        config, when the project is not a git repository, or when git is not
        usable at all.

        Args:
            source: Branch source (defaults to git in project_dir)
            cancel_event: Set to stop scanning further branches

        Returns:
            One task per id
        """
        if not self.config.check_active_branches:
            return self.get_tasks()

        from mdboard.core.branches.aggregator import CrossBranchAggregator
        from mdboard.core.branches.source import GitBranchSource, VcsUnavailableError

        if source is None:
            source = GitBranchSource(self.project_dir)

        try:
            if not source.is_repository():
                logger.debug("%s is not a git repository, loading local tasks", self.project_dir)
                return self.get_tasks()
            aggregator = CrossBranchAggregator(self, source)
            return aggregator.load_tasks_across_branches(cancel_event=cancel_event)
        except VcsUnavailableError as e:
            logger.warning("Git unavailable, loading local tasks only: %s", e)
            return self.get_tasks()

    # ------------------------------------------------------------------
    # Ordinals
    # ------------------------------------------------------------------

    def compute_ordinal_updates_for_drop(
        self,
        column: Sequence[Task | CardData],
        dropped: Task | CardData,
        drop_index: int,
    ) -> list[OrdinalUpdate]:
        """Ordinal updates for dropping a card into a column (see ordinal engine)."""
        cards = [c if isinstance(c, CardData) else CardData.from_task(c) for c in column]
        card = dropped if isinstance(dropped, CardData) else CardData.from_task(dropped)
        return calculate_ordinals_for_drop(cards, card, drop_index)

    def apply_ordinal_updates(self, updates: list[OrdinalUpdate]) -> OrdinalBatchResult:
        return self.writer.apply_ordinal_updates(updates)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_task(
        self,
        task_id: str,
        updates: TaskUpdate | dict[str, Any],
        expected_hash: str | None = None,
    ) -> Task:
        return self.writer.update_task(task_id, updates, expected_hash)

    def create_task(self, options: CreateTaskOptions | dict[str, Any]) -> Task:
        return self.writer.create_task(options)

    def move_task(self, task_id: str, dest_folder: TaskFolder | str) -> Task:
        return self.writer.move_task(task_id, dest_folder)

    def archive_task(self, task_id: str) -> Task:
        return self.writer.archive_task(task_id)

    def complete_task(self, task_id: str) -> Task:
        return self.writer.complete_task(task_id)

    def promote_draft(self, task_id: str) -> Task:
        return self.writer.promote_draft(task_id)

    def toggle_checklist_item(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        item_id: int,
        expected_hash: str | None = None,
    ) -> Task:
        return self.writer.toggle_checklist_item(task_id, kind, item_id, expected_hash)

    def set_checklist(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        items: list[ChecklistItem] | list[str],
        expected_hash: str | None = None,
    ) -> Task:
        return self.writer.set_checklist(task_id, kind, items, expected_hash)

    def remove_checklist_item(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        item_id: int,
        expected_hash: str | None = None,
    ) -> Task:
        return self.writer.remove_checklist_item(task_id, kind, item_id, expected_hash)
