"""
Tests for cross-branch task aggregation.

Drives CrossBranchAggregator with an in-memory branch source so branch
selection, lazy hydration and conflict resolution can be checked without
a git binary.
"""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mdboard.core.branches.aggregator import (
    CrossBranchAggregator,
    merge_task_groups,
    order_branches,
    resolve_task_conflict,
)
from mdboard.core.branches.models import BranchRecord
from mdboard.core.branches.source import BranchSource
from mdboard.core.config.models import BoardConfig, ResolutionStrategy
from mdboard.core.tasks.models import Task, TaskSource
from mdboard.core.tasks.store import TaskStore

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
JAN_15 = datetime(2024, 1, 15, tzinfo=timezone.utc)


def days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def task_text(task_id: str, status: str = "To Do", title: str | None = None) -> str:
    return f"---\nid: {task_id}\ntitle: {title or task_id}\nstatus: {status}\n---\n"


class FakeBranchSource:
    """In-memory branch source recording every file read."""

    def __init__(self, current: str | None = "main", main: str | None = "main") -> None:
        self.current = current
        self.main = main
        self.branches: dict[str, datetime] = {}
        self.files: dict[str, dict[str, tuple[bytes, datetime]]] = {}
        self.reads: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def add_branch(self, name: str, last_commit: datetime) -> None:
        self.branches[name] = last_commit
        self.files.setdefault(name, {})

    def add_file(
        self, branch: str, path: str, content: str | bytes, modified: datetime = JAN_1
    ) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.files[branch][path] = (content, modified)

    def is_repository(self) -> bool:
        return True

    def current_branch(self) -> str | None:
        return self.current

    def list_branches(self, since_days: int | None = None) -> list[BranchRecord]:
        cutoff = days_ago(since_days) if since_days is not None else None
        return [
            BranchRecord(name=name, last_commit=last_commit)
            for name, last_commit in self.branches.items()
            if cutoff is None or last_commit > cutoff
        ]

    def main_branch(self) -> str | None:
        return self.main

    def path_exists(self, branch: str, path: str) -> bool:
        return any(p == path or p.startswith(path + "/") for p in self.files.get(branch, {}))

    def _children(self, branch: str, directory: str) -> dict[str, tuple[bytes, datetime]]:
        prefix = directory + "/"
        return {
            p[len(prefix):]: entry
            for p, entry in self.files.get(branch, {}).items()
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        }

    def list_files(self, branch: str, directory: str) -> list[str]:
        return sorted(self._children(branch, directory))

    def read_file(self, branch: str, path: str) -> bytes | None:
        with self._lock:
            self.reads.append((branch, path))
        entry = self.files.get(branch, {}).get(path)
        return entry[0] if entry else None

    def file_last_changed(self, branch: str, path: str) -> datetime | None:
        entry = self.files.get(branch, {}).get(path)
        return entry[1] if entry else None

    def file_modified_map(self, branch: str, directory: str) -> dict[str, datetime]:
        return {name: entry[1] for name, entry in self._children(branch, directory).items()}

    def branch_reads(self, branch: str) -> list[str]:
        return [path for name, path in self.reads if name == branch]


class Board:
    """A backlog on disk plus the branches around it."""

    def __init__(self, backlog_dir: Path, source: FakeBranchSource) -> None:
        self.backlog_dir = backlog_dir
        self.source = source
        self.store = TaskStore(
            backlog_dir,
            config=BoardConfig(
                statuses=["To Do", "In Progress", "Done"], check_active_branches=True
            ),
        )

    def local(self, filename: str, text: str, modified: datetime | None = JAN_1) -> None:
        """A working-tree task, committed on the current branch when modified is set."""
        (self.backlog_dir / "tasks" / filename).write_text(text, encoding="utf-8")
        if modified is not None:
            self.source.add_file(self.source.current, f"backlog/tasks/{filename}", text, modified)

    def remote(
        self, branch: str, filename: str, content: str | bytes, modified: datetime = JAN_1
    ) -> None:
        if branch not in self.source.branches:
            self.source.add_branch(branch, days_ago(1))
        self.source.add_file(branch, f"backlog/tasks/{filename}", content, modified)

    def use_strategy(self, strategy: ResolutionStrategy) -> None:
        self.store.config = self.store.config.model_copy(
            update={"task_resolution_strategy": strategy}
        )

    def load(self, **kwargs) -> list[Task]:
        return CrossBranchAggregator(self.store, self.source).load_tasks_across_branches(**kwargs)


@pytest.fixture
def board(backlog_dir: Path) -> Board:
    """Backlog checked out on main, with main committed today."""
    source = FakeBranchSource(current="main", main="main")
    source.add_branch("main", days_ago(0))
    return Board(backlog_dir, source)


def test_fake_satisfies_protocol():
    assert isinstance(FakeBranchSource(), BranchSource)


# ==============================================================================
# Conflict Resolution
# ==============================================================================


def _copy(status: str, modified: datetime | None, branch: str) -> Task:
    return Task(
        id="TASK-1",
        title="Shared",
        status=status,
        file_path=Path("task-1.md"),
        last_modified=modified,
        branch=branch,
    )


class TestResolveTaskConflict:
    """Test the pure conflict reduction."""

    def test_most_recent_picks_latest(self):
        main = _copy("Done", JAN_1, "main")
        feature = _copy("To Do", JAN_15, "feature")
        assert resolve_task_conflict([main, feature], "most_recent") is feature

    def test_most_progressed_picks_furthest_status(self):
        main = _copy("Done", JAN_1, "main")
        feature = _copy("To Do", JAN_15, "feature")
        assert resolve_task_conflict([main, feature], ResolutionStrategy.MOST_PROGRESSED) is main

    def test_first_seen_wins_ties(self):
        first = _copy("In Progress", JAN_1, "a")
        second = _copy("In Progress", JAN_1, "b")
        assert resolve_task_conflict([first, second], "most_recent") is first
        assert resolve_task_conflict([first, second], "most_progressed") is first

    def test_missing_timestamp_counts_as_oldest(self):
        untracked = _copy("To Do", None, "main")
        committed = _copy("To Do", JAN_1, "feature")
        assert resolve_task_conflict([untracked, committed], "most_recent") is committed

    def test_unknown_status_ranks_lowest(self):
        unknown = _copy("Blocked", JAN_15, "a")
        draft = _copy("Draft", JAN_1, "b")
        todo = _copy("to do", JAN_1, "c")
        assert resolve_task_conflict([unknown, draft], "most_progressed") is draft
        assert resolve_task_conflict([unknown, draft, todo], "most_progressed") is todo

    def test_uses_configured_order(self):
        config = BoardConfig(statuses=["Backlog", "Review", "Shipped"])
        review = _copy("Review", JAN_1, "a")
        shipped = _copy("Shipped", JAN_1, "b")
        assert resolve_task_conflict([review, shipped], "most_progressed", config) is shipped

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            resolve_task_conflict([], "most_recent")

    def test_unknown_strategy_raises(self):
        with pytest.raises(ValueError):
            resolve_task_conflict([_copy("Done", JAN_1, "a")], "newest")


class TestMergeTaskGroups:
    """Test grouping by id."""

    def test_singletons_pass_through(self):
        only = Task(id="TASK-9", title="Only", file_path=Path("t.md"))
        merged = merge_task_groups([only], "most_recent")
        assert merged == [only]
        assert merged[0] is only

    def test_first_seen_order(self):
        a = Task(id="TASK-2", title="A", file_path=Path("a.md"))
        b1 = _copy("To Do", JAN_1, "main")
        b2 = _copy("Done", JAN_15, "feature")
        merged = merge_task_groups([a, b1, b2], "most_recent")
        assert [(t.id, t.status) for t in merged] == [("TASK-2", "To Do"), ("TASK-1", "Done")]


def test_order_branches():
    branches = [
        BranchRecord(name="old", last_commit=days_ago(20)),
        BranchRecord(name="main", last_commit=days_ago(50)),
        BranchRecord(name="new", last_commit=days_ago(2)),
        BranchRecord(name="work", last_commit=days_ago(10)),
    ]
    ordered = order_branches(branches, current="work", main="main")
    assert [b.name for b in ordered] == ["work", "main", "new", "old"]


# ==============================================================================
# Aggregation
# ==============================================================================


class TestLoadTasksAcrossBranches:
    """Test the full select, index, hydrate and merge pass."""

    def test_conflict_example_most_recent(self, board):
        board.local("task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "To Do"), JAN_15)

        tasks = board.load()

        assert len(tasks) == 1
        assert tasks[0].status == "To Do"
        assert tasks[0].branch == "feature"
        assert tasks[0].source is TaskSource.LOCAL_BRANCH
        assert tasks[0].last_modified == JAN_15

    def test_conflict_example_most_progressed(self, board):
        board.use_strategy(ResolutionStrategy.MOST_PROGRESSED)
        board.local("task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "To Do"), JAN_15)

        tasks = board.load()

        assert len(tasks) == 1
        assert tasks[0].status == "Done"
        assert tasks[0].branch == "main"
        assert tasks[0].source is TaskSource.LOCAL

    def test_older_branch_copy_never_read(self, board):
        board.local("task-1 - Shared.md", task_text("TASK-1", "To Do"), JAN_15)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)

        tasks = board.load()

        assert tasks[0].status == "To Do"
        assert board.source.branch_reads("feature") == []

    def test_equally_old_copy_never_read(self, board):
        board.local("task-1 - Shared.md", task_text("TASK-1"), JAN_1)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)

        assert board.load()[0].source is TaskSource.LOCAL
        assert board.source.reads == []

    def test_most_progressed_reads_every_copy(self, board):
        board.use_strategy(ResolutionStrategy.MOST_PROGRESSED)
        board.local("task-1 - Shared.md", task_text("TASK-1", "To Do"), JAN_15)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)

        tasks = board.load()

        assert tasks[0].status == "Done"
        assert board.source.branch_reads("feature") == ["backlog/tasks/task-1 - Shared.md"]

    def test_branch_only_task_included(self, board):
        board.local("task-1 - Local.md", task_text("TASK-1"))
        board.remote("feature", "task-7 - Remote.md", task_text("TASK-7", "In Progress"), JAN_15)

        tasks = {t.id: t for t in board.load()}

        remote = tasks["TASK-7"]
        assert remote.branch == "feature"
        assert remote.source is TaskSource.LOCAL_BRANCH
        assert remote.last_modified == JAN_15
        assert remote.file_path == board.store.project_dir / "backlog/tasks/task-7 - Remote.md"
        assert tasks["TASK-1"].source is TaskSource.LOCAL

    def test_branch_without_backlog_skipped(self, board):
        board.local("task-1 - Local.md", task_text("TASK-1"))
        board.source.add_branch("docs", days_ago(1))
        board.source.add_file("docs", "README.md", "# Docs\n")

        tasks = board.load()

        assert [t.id for t in tasks] == ["TASK-1"]
        assert board.source.reads == []

    def test_non_task_files_ignored(self, board):
        board.remote("feature", "README.md", task_text("TASK-2"))
        board.remote("feature", "task-3 - Notes.txt", task_text("TASK-3"))
        board.remote("feature", "task-4 - Real.md", task_text("TASK-4"))

        assert [t.id for t in board.load()] == ["TASK-4"]

    def test_unparseable_file_skipped(self, board):
        board.remote("feature", "task-5 - Binary.md", b"---\ntitle: \xff\n---\n")
        board.remote("feature", "task-6 - Untitled.md", "No title here.\n")
        board.remote("feature", "task-7 - Good.md", task_text("TASK-7"))

        assert [t.id for t in board.load()] == ["TASK-7"]

    def test_stale_branches_filtered_but_main_kept(self, backlog_dir):
        source = FakeBranchSource(current="work", main="main")
        source.add_branch("work", days_ago(0))
        source.add_branch("main", days_ago(400))
        source.add_branch("stale", days_ago(90))
        board = Board(backlog_dir, source)
        board.remote("main", "task-8 - From-main.md", task_text("TASK-8"))
        board.remote("stale", "task-9 - Stale.md", task_text("TASK-9"))

        tasks = board.load()

        assert [t.id for t in tasks] == ["TASK-8"]
        assert source.branch_reads("stale") == []

    def test_current_branch_kept_outside_window(self, backlog_dir):
        source = FakeBranchSource(current="old-work", main="main")
        source.add_branch("old-work", days_ago(100))
        source.add_branch("main", days_ago(1))
        board = Board(backlog_dir, source)
        board.local("task-1 - Local.md", task_text("TASK-1"), JAN_15)

        aggregator = CrossBranchAggregator(board.store, source)
        current, branches = aggregator.select_branches()

        assert current == "old-work"
        assert [b.name for b in branches] == ["old-work", "main"]
        assert board.load()[0].last_modified == JAN_15

    def test_merge_order_is_deterministic(self, board):
        board.local("task-1 - Local.md", task_text("TASK-1"))
        board.source.add_branch("feature-b", days_ago(5))
        board.source.add_branch("feature-a", days_ago(1))
        board.remote("feature-b", "task-2 - B.md", task_text("TASK-2"))
        board.remote("feature-a", "task-3 - A.md", task_text("TASK-3"))

        first = [t.id for t in board.load()]
        second = [t.id for t in board.load()]

        assert first == ["TASK-1", "TASK-3", "TASK-2"]
        assert second == first

    def test_tie_goes_to_first_branch_in_order(self, board):
        """Many identical timestamps resolve by branch order, not completion order."""
        board.local("task-1 - Shared.md", task_text("TASK-1"), modified=None)
        for n in range(1, 13):
            name = f"b{n:02d}"
            board.source.add_branch(name, days_ago(n))
            board.remote(name, "task-1 - Shared.md", task_text("TASK-1", title=name), JAN_1)

        tasks = board.load()

        assert len(tasks) == 1
        assert tasks[0].branch == "b01"
        assert tasks[0].title == "b01"

    def test_no_other_branches(self, board):
        board.local("task-1 - Local.md", task_text("TASK-1"), JAN_15)

        tasks = board.load()

        assert [(t.id, t.source, t.branch) for t in tasks] == [
            ("TASK-1", TaskSource.LOCAL, "main")
        ]
        assert tasks[0].last_modified == JAN_15

    def test_untracked_local_file_has_no_timestamp(self, board):
        board.local("task-1 - New.md", task_text("TASK-1"), modified=None)
        assert board.load()[0].last_modified is None

    def test_cancelled_before_start(self, board):
        board.local("task-1 - Local.md", task_text("TASK-1"))
        board.remote("feature", "task-7 - Remote.md", task_text("TASK-7"))
        cancel = threading.Event()
        cancel.set()

        tasks = board.load(cancel_event=cancel)

        assert [t.id for t in tasks] == ["TASK-1"]
        assert board.source.reads == []

    def test_subtasks_computed_across_branches(self, board):
        board.local("task-1 - Parent.md", task_text("TASK-1"))
        board.remote(
            "feature",
            "task-2 - Child.md",
            "---\nid: TASK-2\ntitle: Child\nparent: TASK-1\n---\n",
        )

        tasks = {t.id: t for t in board.load()}
        assert tasks["TASK-1"].subtasks == ["TASK-2"]

    def test_through_store(self, board):
        board.local("task-1 - Shared.md", task_text("TASK-1", "Done"), JAN_1)
        board.remote("feature", "task-1 - Shared.md", task_text("TASK-1", "To Do"), JAN_15)

        tasks = board.store.get_tasks_across_branches(source=board.source)

        assert [(t.id, t.branch) for t in tasks] == [("TASK-1", "feature")]


class TestBuildBranchIndex:
    """Test indexing without reads."""

    def test_entries_carry_timestamps(self, board):
        board.remote("feature", "task-4 - Real.md", task_text("TASK-4"), JAN_15)
        aggregator = CrossBranchAggregator(board.store, board.source)

        entries = aggregator.build_branch_index("feature")

        assert [(e.task_id, e.path, e.last_modified) for e in entries] == [
            ("TASK-4", "backlog/tasks/task-4 - Real.md", JAN_15)
        ]
        assert entries[0].filename == "task-4 - Real.md"
        assert board.source.reads == []

    def test_missing_branch(self, board):
        aggregator = CrossBranchAggregator(board.store, board.source)
        assert aggregator.build_branch_index("nope") == []
