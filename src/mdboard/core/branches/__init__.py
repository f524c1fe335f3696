"""
Cross-branch task loading.

Provides read-only access to task files on git branches and the
aggregator that merges them into one collection.
"""

from mdboard.core.branches.aggregator import (
    CrossBranchAggregator,
    merge_task_groups,
    order_branches,
    resolve_task_conflict,
)
from mdboard.core.branches.models import BranchRecord, TaskFileIndexEntry
from mdboard.core.branches.source import (
    BranchSource,
    GitBranchSource,
    GitError,
    VcsUnavailableError,
)

__all__ = [
    "BranchRecord",
    "BranchSource",
    "CrossBranchAggregator",
    "GitBranchSource",
    "GitError",
    "TaskFileIndexEntry",
    "VcsUnavailableError",
    "merge_task_groups",
    "order_branches",
    "resolve_task_conflict",
]
