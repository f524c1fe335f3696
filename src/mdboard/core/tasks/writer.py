"""
Write path for task files.

Every write re-reads the backing file, patches frontmatter and/or the
targeted body region, and replaces the file atomically. Callers may pass
the content hash they saw when they loaded the task; if the file has
changed since, the write is refused with FileConflictError and nothing is
written.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .codec import (
    DESCRIPTION,
    FINAL_SUMMARY,
    IMPLEMENTATION_NOTES,
    IMPLEMENTATION_PLAN,
    TaskDocument,
    compute_content_hash,
    parse_checklist_in_body,
    parse_task,
    replace_section_in_body,
    serialize_task,
    set_checklist_in_body,
    split_document,
    toggle_checklist_in_body,
)
from .metadata import Frontmatter
from .models import (
    ChecklistItem,
    ChecklistKind,
    CreateTaskOptions,
    OrdinalUpdate,
    Task,
    TaskFolder,
    TaskUpdate,
)

if TYPE_CHECKING:
    from .store import TaskStore

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M"
DRAFT_PREFIX = "draft"
_PREFIX_RE = re.compile(r"^[A-Za-z]+$")

# TaskUpdate fields stored in frontmatter
FRONTMATTER_FIELDS = (
    "title",
    "status",
    "priority",
    "type",
    "labels",
    "assignees",
    "reporter",
    "milestone",
    "dependencies",
    "references",
    "documentation",
    "parent_task_id",
    "ordinal",
)

# TaskUpdate fields stored as body sections
BODY_SECTIONS = {
    "description": DESCRIPTION,
    "implementation_plan": IMPLEMENTATION_PLAN,
    "implementation_notes": IMPLEMENTATION_NOTES,
    "final_summary": FINAL_SUMMARY,
}


class TaskStoreError(Exception):
    """Base exception for task store errors."""

    pass


class TaskNotFoundError(TaskStoreError):
    """Raised when a task id does not resolve to a file."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class FileConflictError(TaskStoreError):
    """
    Raised when a file changed on disk since the caller read it.

    Carries the current on-disk bytes so the caller can offer a reload,
    a diff, or an explicit overwrite. `current_content` is the same bytes
    decoded for display; undecodable sequences are replaced there but kept
    intact in `current_bytes`.
    """

    def __init__(
        self,
        file_path: Path,
        current_bytes: bytes,
        expected_hash: str,
        actual_hash: str,
    ) -> None:
        super().__init__(f"{file_path} was modified externally")
        self.file_path = file_path
        self.current_bytes = current_bytes
        self.current_content = current_bytes.decode("utf-8", errors="replace")
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class ChecklistItemNotFoundError(TaskStoreError):
    """Raised when a checklist has no item with the requested anchor."""

    def __init__(self, task_id: str, kind: ChecklistKind, item_id: int) -> None:
        super().__init__(f"Task {task_id} has no {kind.value} item #{item_id}")
        self.task_id = task_id
        self.kind = kind
        self.item_id = item_id


class TaskParseError(TaskStoreError):
    """Raised when a file cannot be rewritten without destroying its frontmatter."""

    pass


class InvalidTaskPrefixError(TaskStoreError):
    """Raised when a task id prefix is not made of letters only."""

    def __init__(self, prefix: str) -> None:
        super().__init__(f"Invalid task prefix: {prefix!r}")
        self.prefix = prefix


@dataclass
class OrdinalBatchResult:
    """Outcome of applying a batch of ordinal updates."""

    written: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _now() -> str:
    return datetime.now().strftime(DATE_FORMAT)


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


def atomic_write(path: Path, data: bytes) -> None:
    """
    Write bytes to path atomically.

    Uses a temporary file in the target directory and an atomic rename so a
    failed write never leaves a truncated task file behind. An existing
    file keeps its permission bits; a new one gets the umask default.
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = 0o666 & ~_current_umask()

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".md.tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        # mkstemp creates the file 0600
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def slugify_title(title: str) -> str:
    """Filename-safe form of a title ('Fix: login!' -> 'Fix-login')."""
    cleaned = re.sub(r"[^\w\s-]", "", title, flags=re.UNICODE).strip()
    return re.sub(r"[\s_]+", "-", cleaned)


class TaskWriter:
    """
    Applies changes to task files.

    The writer never trusts an in-memory Task as the system of record: it
    uses the store only to locate the backing file, then works from the
    bytes on disk.

    Example:
        >>> writer = TaskWriter(store)
        >>> task = store.get_task("TASK-3")
        >>> writer.update_task("TASK-3", {"status": "Done"}, task.content_hash)
    """

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    @property
    def backlog_path(self) -> Path:
        return self.store.backlog_path

    # ------------------------------------------------------------------
    # Read / check / write helpers
    # ------------------------------------------------------------------

    def _locate(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _read(self, path: Path, expected_hash: str | None) -> tuple[bytes, str]:
        content = path.read_bytes()
        actual = compute_content_hash(content)
        if expected_hash is not None and expected_hash != actual:
            logger.info("Refusing write to %s: content hash changed", path)
            raise FileConflictError(path, content, expected_hash, actual)
        return content, actual

    def _write(self, path: Path, data: bytes, read_hash: str) -> None:
        # Catch writers that got in between our read and this write
        current = path.read_bytes()
        current_hash = compute_content_hash(current)
        if current_hash != read_hash:
            raise FileConflictError(path, current, read_hash, current_hash)
        atomic_write(path, data)

    def _document(self, task_id: str, path: Path, content: bytes) -> TaskDocument:
        doc = split_document(content)
        if doc.yaml_error:
            raise TaskParseError(
                f"Cannot update {task_id}: frontmatter in {path} is invalid ({doc.yaml_error})"
            )
        return doc

    def _reparse(self, path: Path, data: bytes, folder: TaskFolder) -> Task:
        task = parse_task(data, path, folder)
        if task is None:
            raise TaskParseError(f"{path} has no title")
        return task

    def _check_output(self, path: Path, data: bytes, folder: TaskFolder) -> Task:
        """Parse bytes about to be written; refuse them if they would not load back."""
        doc = split_document(data)
        if doc.yaml_error:
            raise TaskParseError(
                f"Refusing to write {path}: frontmatter would not load back ({doc.yaml_error})"
            )
        task = parse_task(data, path, folder)
        if task is None:
            raise TaskParseError(f"Refusing to write {path}: the result would have no title")
        return task

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_task(
        self,
        task_id: str,
        updates: TaskUpdate | dict[str, Any],
        expected_hash: str | None = None,
    ) -> Task:
        """
        Apply a partial update to a task file.

        Args:
            task_id: Task to update
            updates: Fields to change; only fields explicitly set are applied
            expected_hash: Content hash the caller last saw, if any

        Returns:
            The task as parsed from the rewritten file

        Raises:
            TaskNotFoundError: If the task does not exist
            FileConflictError: If the file changed since expected_hash
            TaskParseError: If the existing frontmatter cannot be decoded, or
                the rewritten file would not parse back; the file is left as it was
        """
        if not isinstance(updates, TaskUpdate):
            updates = TaskUpdate.model_validate(updates)

        task = self._locate(task_id)
        path = task.file_path
        content, read_hash = self._read(path, expected_hash)
        doc = self._document(task_id, path, content)

        fm = doc.frontmatter
        body = doc.body
        changed = updates.model_fields_set

        for name in FRONTMATTER_FIELDS:
            if name in changed:
                fm.set_field(name, getattr(updates, name))

        for name, section in BODY_SECTIONS.items():
            if name in changed:
                body = replace_section_in_body(body, section, getattr(updates, name) or "")

        for kind in ChecklistKind:
            if kind.value in changed:
                raw_items = getattr(updates, kind.value) or []
                items = [
                    item if isinstance(item, ChecklistItem)
                    else ChecklistItem(id=index, text=item)
                    for index, item in enumerate(raw_items, start=1)
                ]
                body = set_checklist_in_body(body, kind, items)

        fm.set_field("updated_at", _now())

        data = serialize_task(fm, body)
        updated = self._check_output(path, data, task.folder)
        self._write(path, data, read_hash)
        logger.debug("Updated %s (%s)", task_id, ", ".join(sorted(changed)) or "touch")
        return updated

    def toggle_checklist_item(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        item_id: int,
        expected_hash: str | None = None,
    ) -> Task:
        """
        Flip one checklist item's check mark in place.

        Only the single check-mark character changes; the rest of the file,
        updated date included, is left byte-identical. Toggling twice
        restores the original bytes.

        Raises:
            TaskNotFoundError: If the task does not exist
            ChecklistItemNotFoundError: If the list has no such item
            FileConflictError: If the file changed since expected_hash
        """
        kind = ChecklistKind.parse(kind)
        task = self._locate(task_id)
        path = task.file_path
        content, read_hash = self._read(path, expected_hash)

        text = content.decode("utf-8")
        body = split_document(text).body
        head = text[: len(text) - len(body)]
        toggled = toggle_checklist_in_body(body, kind, item_id)
        if toggled is None:
            raise ChecklistItemNotFoundError(task_id, kind, item_id)

        data = (head + toggled).encode("utf-8")
        updated = self._reparse(path, data, task.folder)
        self._write(path, data, read_hash)
        return updated

    def set_checklist(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        items: list[ChecklistItem] | list[str],
        expected_hash: str | None = None,
    ) -> Task:
        """Replace a checklist; items are renumbered 1..N."""
        field_name = ChecklistKind.parse(kind).value
        return self.update_task(task_id, {field_name: items}, expected_hash)

    def remove_checklist_item(
        self,
        task_id: str,
        kind: ChecklistKind | str,
        item_id: int,
        expected_hash: str | None = None,
    ) -> Task:
        """
        Delete one checklist item and renumber the rest densely.

        Raises:
            ChecklistItemNotFoundError: If the list has no such item
        """
        kind = ChecklistKind.parse(kind)
        task = self._locate(task_id)
        content, _ = self._read(task.file_path, expected_hash)
        doc = self._document(task_id, task.file_path, content)

        items = parse_checklist_in_body(doc.body, kind)
        remaining = [item for item in items if item.id != item_id]
        if len(remaining) == len(items):
            raise ChecklistItemNotFoundError(task_id, kind, item_id)

        return self.update_task(
            task_id,
            {kind.value: remaining},
            compute_content_hash(content),
        )

    def apply_ordinal_updates(self, updates: list[OrdinalUpdate]) -> OrdinalBatchResult:
        """
        Write a batch of ordinal updates.

        A failure on one task is recorded and the batch continues.
        """
        result = OrdinalBatchResult()
        for update in updates:
            try:
                self.update_task(update.task_id, TaskUpdate(ordinal=update.ordinal))
            except (TaskStoreError, OSError) as e:
                logger.warning("Failed to set ordinal on %s: %s", update.task_id, e)
                result.failed[update.task_id] = str(e)
            else:
                result.written.append(update.task_id)
        return result

    # ------------------------------------------------------------------
    # Create / move
    # ------------------------------------------------------------------

    def next_task_number(self, prefix: str) -> int:
        """Next free number for a prefix, across every backlog folder."""
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)", re.IGNORECASE)
        highest = 0
        for folder in TaskFolder:
            folder_path = self.backlog_path / folder.value
            if not folder_path.is_dir():
                continue
            for entry in folder_path.glob("*.md"):
                match = pattern.match(entry.name)
                if match:
                    highest = max(highest, int(match.group(1)))
        return highest + 1

    def _filename(self, prefix: str, number: int, title: str) -> str:
        slug = slugify_title(title)
        return f"{prefix}-{number} - {slug}.md" if slug else f"{prefix}-{number}.md"

    def create_task(self, options: CreateTaskOptions | dict[str, Any]) -> Task:
        """
        Create a new task file with the next free id.

        Args:
            options: Title and optional initial fields

        Returns:
            The created task
        """
        if not isinstance(options, CreateTaskOptions):
            options = CreateTaskOptions.model_validate(options)

        config = self.store.config
        if options.draft:
            prefix, folder = DRAFT_PREFIX, TaskFolder.DRAFTS
            status = "Draft"
        else:
            prefix, folder = config.task_prefix.lower(), TaskFolder.TASKS
            status = options.status or config.initial_status

        if not _PREFIX_RE.match(prefix):
            raise InvalidTaskPrefixError(prefix)

        folder_path = self.backlog_path / folder.value
        folder_path.mkdir(parents=True, exist_ok=True)

        number = self.next_task_number(prefix)
        path = folder_path / self._filename(prefix, number, options.title)
        if path.exists():
            raise TaskStoreError(f"Refusing to overwrite existing file {path}")

        fm = Frontmatter()
        fm.set_field("id", f"{prefix.upper()}-{number}")
        fm.set_field("title", options.title)
        fm.set_field("status", status)
        fm.set_field("priority", options.priority)
        fm.set_field("milestone", options.milestone)
        fm.set_field("labels", options.labels)
        fm.set_field("assignees", options.assignees)
        fm.set_field("created_at", _now())
        fm.set_field("dependencies", options.dependencies)
        fm.set_field("parent_task_id", options.parent_task_id)
        fm.set_field("ordinal", options.ordinal)

        body = replace_section_in_body("", DESCRIPTION, options.description or "")
        for kind, texts in (
            (ChecklistKind.ACCEPTANCE_CRITERIA, options.acceptance_criteria),
            (ChecklistKind.DEFINITION_OF_DONE, options.definition_of_done),
        ):
            if texts:
                items = [ChecklistItem(id=i, text=t) for i, t in enumerate(texts, start=1)]
                body = set_checklist_in_body(body, kind, items)

        data = serialize_task(fm, body)
        created = self._check_output(path, data, folder)
        atomic_write(path, data)
        logger.info("Created %s at %s", fm.id, path)
        return created

    def move_task(self, task_id: str, dest_folder: TaskFolder | str) -> Task:
        """
        Move a task file into another backlog folder.

        Raises:
            TaskNotFoundError: If the task does not exist
            TaskStoreError: If a file with the same name already exists there
        """
        folder = TaskFolder(dest_folder)
        task = self._locate(task_id)
        if task.folder is folder:
            return task

        dest_dir = self.backlog_path / folder.value
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / task.file_path.name
        if target.exists():
            raise TaskStoreError(f"Cannot move {task_id}: {target} already exists")

        task.file_path.rename(target)
        logger.info("Moved %s to %s", task_id, folder.value)
        return self._reparse(target, target.read_bytes(), folder)

    def archive_task(self, task_id: str) -> Task:
        """Move a task (or draft) into the archive."""
        task = self._locate(task_id)
        if task.folder is TaskFolder.DRAFTS:
            return self.move_task(task_id, TaskFolder.ARCHIVE_DRAFTS)
        return self.move_task(task_id, TaskFolder.ARCHIVE)

    def complete_task(self, task_id: str) -> Task:
        """Move a task into completed/."""
        return self.move_task(task_id, TaskFolder.COMPLETED)

    def promote_draft(self, task_id: str) -> Task:
        """
        Turn a draft into a regular task.

        The draft gets a fresh task id and file name in tasks/. A `Draft`
        status is replaced with the configured initial status.

        Raises:
            TaskStoreError: If the task is not a draft
        """
        task = self._locate(task_id)
        if task.folder is not TaskFolder.DRAFTS:
            raise TaskStoreError(f"{task_id} is not a draft")

        content, read_hash = self._read(task.file_path, None)
        doc = self._document(task_id, task.file_path, content)

        config = self.store.config
        prefix = config.task_prefix.lower()
        number = self.next_task_number(prefix)

        fm = doc.frontmatter
        fm.set_field("id", f"{prefix.upper()}-{number}")
        if (fm.status or "Draft").lower() == "draft":
            fm.set_field("status", config.initial_status)
        fm.set_field("updated_at", _now())

        tasks_dir = self.backlog_path / TaskFolder.TASKS.value
        tasks_dir.mkdir(parents=True, exist_ok=True)
        target = tasks_dir / self._filename(prefix, number, task.title)
        if target.exists():
            raise TaskStoreError(f"Cannot promote {task_id}: {target} already exists")

        data = serialize_task(fm, doc.body)
        promoted = self._check_output(target, data, TaskFolder.TASKS)
        atomic_write(target, data)
        task.file_path.unlink()
        logger.info("Promoted %s to %s", task_id, fm.id)
        return promoted
