"""
Configuration data models for mdboard.

These models define the structure of the backlog's config.yml file,
with validation and type safety via Pydantic.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_STATUSES = ["To Do", "In Progress", "Done"]
DRAFT_STATUS = "Draft"


class ResolutionStrategy(str, Enum):
    """How to pick a winner when one task differs across branches.

    - MOST_RECENT: the copy with the latest last-changed timestamp wins
    - MOST_PROGRESSED: the copy whose status is furthest along wins
    """

    MOST_RECENT = "most_recent"
    MOST_PROGRESSED = "most_progressed"


class Milestone(BaseModel):
    """A milestone declared in config.yml."""

    id: str
    name: str
    description: Optional[str] = None

    @field_validator("id", "name", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Any:
        """YAML may hand us numbers for short ids."""
        if isinstance(v, (int, float)):
            return str(v)
        return v


class BoardConfig(BaseModel):
    """
    Project configuration for a backlog folder.

    Only the fields the store layer consumes are modelled; anything else in
    config.yml is ignored.

    Example:
        >>> config = BoardConfig(statuses=["To Do", "Doing", "Done"])
        >>> config.status_rank("doing")
        2
        >>> config.status_rank("Blocked")
        -1
    """

    project_name: Optional[str] = Field(
        default=None,
        description="Human readable project name"
    )
    default_status: Optional[str] = Field(
        default=None,
        description="Status given to new tasks (falls back to the first status)"
    )
    statuses: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STATUSES),
        description="Ordered status vocabulary, least to most complete"
    )
    labels: list[str] = Field(
        default_factory=list,
        description="Labels offered for autocomplete"
    )
    milestones: list[Milestone] = Field(
        default_factory=list,
        description="Declared milestones"
    )
    date_format: str = Field(
        default="yyyy-mm-dd",
        description="Display date format"
    )
    remote_operations: bool = Field(
        default=True,
        description="Whether remote branches may be consulted"
    )
    auto_commit: bool = Field(
        default=False,
        description="Commit task changes automatically"
    )
    check_active_branches: bool = Field(
        default=False,
        description="Merge tasks from other active branches"
    )
    active_branch_days: int = Field(
        default=30,
        ge=0,
        description="Branches with commits in this many days count as active"
    )
    task_prefix: str = Field(
        default="task",
        pattern="^[A-Za-z]+$",
        description="Prefix for new task ids (letters only)"
    )
    task_resolution_strategy: ResolutionStrategy = Field(
        default=ResolutionStrategy.MOST_RECENT,
        description="Cross-branch conflict resolution strategy"
    )

    model_config = ConfigDict(extra="ignore")

    @field_validator("statuses", "labels", mode="before")
    @classmethod
    def coerce_string_list(cls, v: Any) -> Any:
        """Accept a single string or a list of scalars."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [str(item) for item in v if item is not None]
        return v

    @field_validator("statuses")
    @classmethod
    def ensure_statuses(cls, v: list[str]) -> list[str]:
        """An empty vocabulary is treated as unset."""
        return v or list(DEFAULT_STATUSES)

    @field_validator("milestones", mode="before")
    @classmethod
    def coerce_milestones(cls, v: Any) -> Any:
        """Bare milestone names become {id, name} pairs."""
        if v is None:
            return []
        if isinstance(v, list):
            return [
                {"id": str(item), "name": str(item)} if not isinstance(item, dict) else item
                for item in v
            ]
        return v

    @property
    def initial_status(self) -> str:
        """Status assigned to freshly created tasks."""
        return self.default_status or self.statuses[0]

    def status_rank(self, status: str | None) -> int:
        """
        Position of a status in the progression order.

        Draft sits before every configured status. Unknown statuses rank
        lowest of all.

        Args:
            status: Status string as found in a task file

        Returns:
            Rank (higher is more progressed), -1 for unknown statuses
        """
        if not status:
            return -1
        wanted = status.strip().lower()
        for index, name in enumerate(self.statuses):
            if name.lower() == wanted:
                return index + 1
        if wanted == DRAFT_STATUS.lower():
            return 0
        return -1
