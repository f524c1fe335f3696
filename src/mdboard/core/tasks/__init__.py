"""
Markdown task files: models, codec, ordinals and the write path.

This module provides the Task model parsed from a markdown file, the codec
that reads and writes those files losslessly, the ordinal engine used for
drag-and-drop ordering, and the TaskStore facade over a backlog folder.
"""

from .codec import compute_content_hash, parse_task, serialize_task, split_document
from .metadata import Frontmatter
from .models import (
    ChecklistItem,
    ChecklistKind,
    CreateTaskOptions,
    OrdinalUpdate,
    Task,
    TaskFolder,
    TaskPriority,
    TaskSource,
    TaskUpdate,
)
from .ordinal import (
    CardData,
    calculate_ordinals_for_drop,
    compare_by_ordinal,
    has_ordinal_conflicts,
    resolve_ordinal_conflicts,
    sort_tasks_by_ordinal,
)
from .store import TaskStore, compute_subtasks
from .writer import (
    ChecklistItemNotFoundError,
    FileConflictError,
    InvalidTaskPrefixError,
    OrdinalBatchResult,
    TaskNotFoundError,
    TaskParseError,
    TaskStoreError,
    TaskWriter,
)

__all__ = [
    # Models
    "Task",
    "TaskPriority",
    "TaskSource",
    "TaskFolder",
    "ChecklistItem",
    "ChecklistKind",
    "TaskUpdate",
    "CreateTaskOptions",
    "OrdinalUpdate",
    # Codec
    "Frontmatter",
    "compute_content_hash",
    "parse_task",
    "serialize_task",
    "split_document",
    # Ordinals
    "CardData",
    "calculate_ordinals_for_drop",
    "compare_by_ordinal",
    "has_ordinal_conflicts",
    "resolve_ordinal_conflicts",
    "sort_tasks_by_ordinal",
    # Store and write path
    "TaskStore",
    "TaskWriter",
    "OrdinalBatchResult",
    "compute_subtasks",
    # Errors
    "TaskStoreError",
    "TaskNotFoundError",
    "FileConflictError",
    "ChecklistItemNotFoundError",
    "TaskParseError",
    "InvalidTaskPrefixError",
]
