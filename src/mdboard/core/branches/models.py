"""
Models for cross-branch task loading.

BranchRecord and TaskFileIndexEntry are produced fresh on every
aggregation pass and never persisted.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BranchRecord(BaseModel):
    """
    A branch tip as seen by the branch source.

    Example:
        >>> BranchRecord(name="main", last_commit=datetime(2024, 1, 15))
        BranchRecord(name='main', last_commit=datetime.datetime(2024, 1, 15, 0, 0), is_remote=False)
    """

    name: str = Field(..., description="Short branch name (e.g. 'main', 'origin/feature')")
    last_commit: datetime = Field(..., description="Committer date of the branch tip")
    is_remote: bool = Field(default=False, description="Whether this is a remote-tracking branch")

    model_config = ConfigDict(frozen=True)


class TaskFileIndexEntry(BaseModel):
    """
    One task file on one branch, known without reading it.

    Built from a directory listing plus last-changed timestamps, so the
    aggregator can decide whether the file is worth reading at all.
    """

    branch: str
    path: str = Field(..., description="Repository-relative path of the file")
    task_id: str = Field(..., description="Id derived from the file name")
    last_modified: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]
