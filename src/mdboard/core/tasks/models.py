"""
Task data models for mdboard.

Defines the Task model parsed from a markdown task file, its checklist
items and the request models consumed by the write path.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskPriority(str, Enum):
    """Task priority levels."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "TaskPriority | None":
        """Lenient parse: any text containing high/medium/low."""
        if value is None:
            return None
        lower = str(value).lower()
        for priority in cls:
            if priority.value in lower:
                return priority
        return None


class TaskSource(str, Enum):
    """Where a task record was observed."""

    LOCAL = "local"
    LOCAL_BRANCH = "local-branch"
    COMPLETED = "completed"


class TaskFolder(str, Enum):
    """Folders of a backlog, relative to its root."""

    TASKS = "tasks"
    DRAFTS = "drafts"
    COMPLETED = "completed"
    ARCHIVE = "archive/tasks"
    ARCHIVE_DRAFTS = "archive/drafts"


class ChecklistKind(str, Enum):
    """The two checklists a task carries."""

    ACCEPTANCE_CRITERIA = "acceptance_criteria"
    DEFINITION_OF_DONE = "definition_of_done"

    @classmethod
    def parse(cls, value: "ChecklistKind | str") -> "ChecklistKind":
        """Accept the enum, its value, or the camelCase names the UI sends."""
        if isinstance(value, ChecklistKind):
            return value
        aliases = {
            "acceptanceCriteria": cls.ACCEPTANCE_CRITERIA,
            "definitionOfDone": cls.DEFINITION_OF_DONE,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)


class ChecklistItem(BaseModel):
    """A single acceptance criterion or definition-of-done entry."""

    id: int = Field(..., ge=0, description="Dense 1..N anchor used for in-place toggling")
    text: str = Field(..., description="Item text (markdown)")
    checked: bool = Field(default=False, description="Whether the box is ticked")


class Task(BaseModel):
    """
    A task parsed from one markdown file.

    Task records are projections of files on disk. They are never the system
    of record: every change goes through the write path, which re-reads and
    rewrites the backing file.

    Example:
        >>> task = Task(id="TASK-1", title="Fix login", file_path=Path("t.md"))
        >>> task.has_ordinal
        False
        >>> task.status
        'To Do'
    """

    # Identity
    id: str = Field(..., min_length=1, description="Task id, upper-cased (e.g. 'TASK-12')")
    title: str = Field(..., min_length=1, description="Task title")

    # Descriptive
    status: str = Field(default="To Do", description="Status from the open vocabulary")
    priority: TaskPriority | None = Field(default=None, description="Optional priority")
    description: str | None = Field(default=None, description="Description section (markdown)")
    type: str | None = Field(default=None, description="Free-form task type")

    # Relational
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    reporter: str | None = None
    milestone: str | None = None
    dependencies: list[str] = Field(
        default_factory=list, description="Ids of tasks this task is blocked by"
    )
    references: list[str] = Field(default_factory=list)
    documentation: list[str] = Field(default_factory=list)
    parent_task_id: str | None = None
    subtasks: list[str] = Field(default_factory=list)

    # Checklists
    acceptance_criteria: list[ChecklistItem] = Field(default_factory=list)
    definition_of_done: list[ChecklistItem] = Field(default_factory=list)

    # Other body sections
    implementation_plan: str | None = None
    implementation_notes: str | None = None
    final_summary: str | None = None

    # Dates stay as the strings found in the file
    created_at: str | None = None
    updated_at: str | None = None

    # Ordering
    ordinal: float | None = Field(default=None, description="Sparse sort key within a column")

    # Storage
    file_path: Path
    folder: TaskFolder = TaskFolder.TASKS
    content_hash: str | None = Field(
        default=None, description="Digest of the file content this record was parsed from"
    )
    extra: dict[str, Any] = Field(
        default_factory=dict, description="Frontmatter keys the store does not model"
    )

    # Provenance (set by the cross-branch aggregator)
    source: TaskSource | None = None
    branch: str | None = None
    last_modified: datetime | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("file_path", mode="before")
    @classmethod
    def validate_path(cls, v: Path | str) -> Path:
        """Convert string path to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v

    @property
    def has_ordinal(self) -> bool:
        """True when an ordinal is set (zero counts)."""
        return self.ordinal is not None

    def checklist(self, kind: "ChecklistKind | str") -> list[ChecklistItem]:
        """Return the checklist of the given kind."""
        if ChecklistKind.parse(kind) is ChecklistKind.ACCEPTANCE_CRITERIA:
            return self.acceptance_criteria
        return self.definition_of_done


class TaskUpdate(BaseModel):
    """
    Partial update for a task.

    Only fields explicitly set are applied. Setting an optional scalar to None
    removes it from the file.

    Example:
        >>> update = TaskUpdate(status="Done")
        >>> update.model_fields_set
        {'status'}
    """

    title: str | None = None
    status: str | None = None
    priority: TaskPriority | None = None
    description: str | None = None
    type: str | None = None
    labels: list[str] | None = None
    assignees: list[str] | None = Field(default=None, alias="assignee")
    reporter: str | None = None
    milestone: str | None = None
    dependencies: list[str] | None = None
    references: list[str] | None = None
    documentation: list[str] | None = None
    parent_task_id: str | None = None
    ordinal: float | None = None
    implementation_plan: str | None = None
    implementation_notes: str | None = None
    final_summary: str | None = None
    acceptance_criteria: list[str | ChecklistItem] | None = None
    definition_of_done: list[str | ChecklistItem] | None = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Accept any spelling the parser would accept."""
        if v is None or isinstance(v, TaskPriority):
            return v
        return TaskPriority.parse(v)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str | None) -> str | None:
        """Titles may be changed but never blanked."""
        if v is not None and not v.strip():
            raise ValueError("title must not be empty")
        return v.strip() if v is not None else v


class CreateTaskOptions(BaseModel):
    """Request for creating a new task file."""

    title: str = Field(..., min_length=1)
    description: str | None = None
    status: str | None = Field(default=None, description="Defaults to the configured status")
    priority: TaskPriority | None = None
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    milestone: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    parent_task_id: str | None = None
    ordinal: float | None = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    definition_of_done: list[str] = Field(default_factory=list)
    draft: bool = Field(default=False, description="Create in drafts/ instead of tasks/")

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        """Reject whitespace-only titles."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("title must not be empty")
        return stripped

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Accept any spelling the parser would accept."""
        if v is None or isinstance(v, TaskPriority):
            return v
        return TaskPriority.parse(v)


class OrdinalUpdate(BaseModel):
    """Instruction to set one task's ordinal; produced by the ordinal engine."""

    task_id: str
    ordinal: float

    model_config = ConfigDict(frozen=True)
