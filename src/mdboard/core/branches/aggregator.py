"""
Cross-branch task aggregation.

Produces one task collection from every active branch:

    select branches -> index each branch -> hydrate what matters
        -> group by id -> resolve conflicts -> merged collection

Indexing only lists file names and last-changed times. A branch copy is
read and parsed ("hydrated") only when it could win: the task is missing
locally, the branch copy is newer, or the strategy needs the status.

Branch indexing and hydration run on thread pools. Merging waits for all
of it and walks the results in branch order, never completion order, so
the outcome is the same on every run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from mdboard.core.config.models import BoardConfig, ResolutionStrategy
from mdboard.core.tasks.codec import match_task_id, parse_task
from mdboard.core.tasks.models import Task, TaskFolder, TaskSource
from mdboard.core.tasks.store import compute_subtasks

from .models import BranchRecord, TaskFileIndexEntry
from .source import BranchSource

if TYPE_CHECKING:
    from mdboard.core.tasks.store import TaskStore

logger = logging.getLogger(__name__)

BRANCH_WORKERS = 5
HYDRATE_WORKERS = 8


def _time(value: datetime | None) -> float:
    return value.timestamp() if value is not None else 0.0


def resolve_task_conflict(
    tasks: Sequence[Task],
    strategy: ResolutionStrategy | str,
    config: BoardConfig | None = None,
) -> Task:
    """
    Pick one task out of copies of the same task from different branches.

    Reduces left to right with a strict comparison, so on a tie the copy
    seen first (local, then branches in scan order) wins.

    Args:
        tasks: Copies of one task, in scan order
        strategy: most_recent compares last_modified; most_progressed
            compares status rank in the configured status order
        config: Supplies the status order (defaults to BoardConfig())

    Returns:
        The winning copy

    Raises:
        ValueError: If tasks is empty

    Example:
        >>> main = Task(id="X", title="X", status="Done", file_path="x.md",
        ...             last_modified=datetime(2024, 1, 1))
        >>> feature = Task(id="X", title="X", status="To Do", file_path="x.md",
        ...                last_modified=datetime(2024, 1, 15))
        >>> resolve_task_conflict([main, feature], "most_recent").status
        'To Do'
        >>> resolve_task_conflict([main, feature], "most_progressed").status
        'Done'
    """
    if not tasks:
        raise ValueError("No tasks to resolve")

    strategy = ResolutionStrategy(strategy)
    config = config or BoardConfig()

    winner = tasks[0]
    for task in tasks[1:]:
        if strategy is ResolutionStrategy.MOST_RECENT:
            better = _time(task.last_modified) > _time(winner.last_modified)
        else:
            better = config.status_rank(task.status) > config.status_rank(winner.status)
        if better:
            winner = task
    return winner


def merge_task_groups(
    tasks: Iterable[Task],
    strategy: ResolutionStrategy | str,
    config: BoardConfig | None = None,
) -> list[Task]:
    """
    Collapse tasks to one per id.

    Groups keep the order in which ids were first seen; groups of one pass
    through unchanged.
    """
    groups: dict[str, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.id, []).append(task)

    return [
        group[0] if len(group) == 1 else resolve_task_conflict(group, strategy, config)
        for group in groups.values()
    ]


def order_branches(
    branches: Iterable[BranchRecord],
    current: str | None,
    main: str | None,
) -> list[BranchRecord]:
    """Current branch first, then main, then most recent commit first."""

    def sort_key(branch: BranchRecord) -> tuple[int, float]:
        if branch.name == current:
            rank = 0
        elif branch.name == main:
            rank = 1
        else:
            rank = 2
        return rank, -_time(branch.last_commit)

    return sorted(branches, key=sort_key)


class CrossBranchAggregator:
    """
    Loads and merges tasks across git branches.

    Tasks of the checked-out branch come from the working tree through the
    store; every other branch is read through the BranchSource without a
    checkout.

    Example:
        >>> aggregator = CrossBranchAggregator(store, GitBranchSource(project_dir))
        >>> tasks = aggregator.load_tasks_across_branches()
        >>> {t.branch for t in tasks}
        {'main', 'feature/login'}
    """

    def __init__(
        self,
        store: TaskStore,
        source: BranchSource,
        branch_workers: int = BRANCH_WORKERS,
        hydrate_workers: int = HYDRATE_WORKERS,
    ) -> None:
        self.store = store
        self.source = source
        self.branch_workers = branch_workers
        self.hydrate_workers = hydrate_workers

    @property
    def config(self) -> BoardConfig:
        return self.store.config

    @property
    def strategy(self) -> ResolutionStrategy:
        return self.config.task_resolution_strategy

    def _repo_path(self, folder: TaskFolder | None = None) -> str:
        """Repository-relative path of the backlog (or one of its folders)."""
        try:
            backlog = str(self.store.backlog_path.relative_to(self.store.project_dir))
        except ValueError:
            backlog = self.store.backlog_path.name
        path = backlog.replace("\\", "/")
        if folder is not None:
            path = f"{path}/{folder.value}"
        return path

    # ------------------------------------------------------------------
    # Branch selection
    # ------------------------------------------------------------------

    def select_branches(self) -> tuple[str | None, list[BranchRecord]]:
        """
        Branches to scan, in merge order.

        Branches outside the recency window are dropped, except the current
        and main branches, which are always kept.

        Returns:
            (current branch name, ordered branches)
        """
        current = self.source.current_branch()
        main = self.source.main_branch()

        branches = self.source.list_branches(self.config.active_branch_days)
        names = {branch.name for branch in branches}

        missing = {name for name in (current, main) if name and name not in names}
        if missing:
            for branch in self.source.list_branches(None):
                if branch.name in missing:
                    branches.append(branch)
                    missing.discard(branch.name)

        return current, order_branches(branches, current, main)

    # ------------------------------------------------------------------
    # Index and hydrate
    # ------------------------------------------------------------------

    def build_branch_index(
        self, branch: str, cancel_event: threading.Event | None = None
    ) -> list[TaskFileIndexEntry]:
        """
        List a branch's task files without reading them.

        A branch without the backlog folder yields no entries.
        """
        if cancel_event is not None and cancel_event.is_set():
            return []
        if not self.source.path_exists(branch, self._repo_path()):
            logger.debug("Branch %s has no backlog, skipping", branch)
            return []

        tasks_dir = self._repo_path(TaskFolder.TASKS)
        filenames = self.source.list_files(branch, tasks_dir)
        modified = self.source.file_modified_map(branch, tasks_dir)

        entries = []
        for filename in filenames:
            if not filename.endswith(".md"):
                continue
            task_id = match_task_id(filename)
            if task_id is None:
                continue
            entries.append(
                TaskFileIndexEntry(
                    branch=branch,
                    path=f"{tasks_dir}/{filename}",
                    task_id=task_id,
                    last_modified=modified.get(filename),
                )
            )
        return entries

    def should_hydrate(self, entry: TaskFileIndexEntry, local: dict[str, Task]) -> bool:
        """
        True if a branch copy could change the merge result.

        Copies of tasks missing locally are always read; so is everything
        under most_progressed, which needs the status. Under most_recent a
        copy is read only when it changed after the local one.
        """
        local_task = local.get(entry.task_id)
        if local_task is None:
            return True
        if self.strategy is ResolutionStrategy.MOST_PROGRESSED:
            return True
        return _time(entry.last_modified) > _time(local_task.last_modified)

    def hydrate(
        self, entry: TaskFileIndexEntry, cancel_event: threading.Event | None = None
    ) -> Task | None:
        """Read and parse one branch copy, stamping its provenance."""
        if cancel_event is not None and cancel_event.is_set():
            return None

        content = self.source.read_file(entry.branch, entry.path)
        if content is None:
            return None

        file_path = self.store.project_dir / entry.path
        try:
            task = parse_task(content, file_path, TaskFolder.TASKS)
        except (UnicodeDecodeError, ValidationError) as e:
            logger.warning("Skipping %s on %s: %s", entry.path, entry.branch, e)
            return None
        if task is None:
            return None

        return task.model_copy(
            update={
                "source": TaskSource.LOCAL_BRANCH,
                "branch": entry.branch,
                "last_modified": entry.last_modified,
            }
        )

    def load_local_tasks(self, current: str | None) -> list[Task]:
        """Working-tree tasks stamped as local, with git timestamps when known."""
        modified: dict[str, datetime] = {}
        if current is not None:
            modified = self.source.file_modified_map(current, self._repo_path(TaskFolder.TASKS))

        return [
            task.model_copy(
                update={
                    "source": TaskSource.LOCAL,
                    "branch": current,
                    "last_modified": modified.get(task.file_path.name),
                }
            )
            for task in self.store.get_tasks()
        ]

    def _index_branches(
        self, branches: list[BranchRecord], cancel_event: threading.Event | None
    ) -> list[TaskFileIndexEntry]:
        results: dict[str, list[TaskFileIndexEntry]] = {}
        with ThreadPoolExecutor(max_workers=self.branch_workers) as executor:
            futures: dict[Future[list[TaskFileIndexEntry]], str] = {
                executor.submit(self.build_branch_index, branch.name, cancel_event): branch.name
                for branch in branches
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        entries: list[TaskFileIndexEntry] = []
        for branch in branches:
            entries.extend(results.get(branch.name, []))
        return entries

    def _hydrate_entries(
        self, entries: list[TaskFileIndexEntry], cancel_event: threading.Event | None
    ) -> list[Task]:
        results: dict[int, Task | None] = {}
        with ThreadPoolExecutor(max_workers=self.hydrate_workers) as executor:
            futures: dict[Future[Task | None], int] = {
                executor.submit(self.hydrate, entry, cancel_event): index
                for index, entry in enumerate(entries)
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        return [task for _, task in sorted(results.items()) if task is not None]

    def load_tasks_across_branches(
        self, cancel_event: threading.Event | None = None
    ) -> list[Task]:
        """
        Load every active branch and merge to one task per id.

        Args:
            cancel_event: When set, branches and files not yet started are
                skipped and the merge runs over what was loaded

        Returns:
            Merged tasks: local ids first in file order, then ids only
            found on other branches in branch order

        Raises:
            VcsUnavailableError: If git cannot be run at all
        """
        current, branches = self.select_branches()
        local_tasks = self.load_local_tasks(current)

        others = [branch for branch in branches if branch.name != current]
        if not others:
            return local_tasks

        entries = self._index_branches(others, cancel_event)
        local_by_id = {task.id: task for task in local_tasks}
        wanted = [entry for entry in entries if self.should_hydrate(entry, local_by_id)]
        logger.debug(
            "Indexed %d task files on %d branches, hydrating %d",
            len(entries),
            len(others),
            len(wanted),
        )

        hydrated = self._hydrate_entries(wanted, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cross-branch load cancelled, merging partial results")

        merged = merge_task_groups([*local_tasks, *hydrated], self.strategy, self.config)
        compute_subtasks(merged)
        logger.debug("Merged %d tasks from %d branches", len(merged), len(branches))
        return merged
