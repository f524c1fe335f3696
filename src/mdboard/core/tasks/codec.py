"""
Task file codec.

Parses one markdown task file (optional YAML frontmatter followed by a
markdown body) into a Task, serializes frontmatter + body back into file
bytes, and performs targeted edits on the body.

File layout:

    ---
    id: TASK-12
    title: Fix login redirect
    status: In Progress
    labels: [auth, web]
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

Body edits (description, checklists, notes) only touch the region they
target. Every other byte of the file is left as it was.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .metadata import Frontmatter, TaskYAMLHandler
from .models import ChecklistItem, ChecklistKind, Task, TaskFolder, TaskPriority

logger = logging.getLogger(__name__)

DESCRIPTION = "description"
ACCEPTANCE_CRITERIA = ChecklistKind.ACCEPTANCE_CRITERIA.value
DEFINITION_OF_DONE = ChecklistKind.DEFINITION_OF_DONE.value
IMPLEMENTATION_PLAN = "implementation_plan"
IMPLEMENTATION_NOTES = "implementation_notes"
FINAL_SUMMARY = "final_summary"

SECTION_MARKERS: dict[str, tuple[str, str]] = {
    DESCRIPTION: ("<!-- SECTION:DESCRIPTION:BEGIN -->", "<!-- SECTION:DESCRIPTION:END -->"),
    ACCEPTANCE_CRITERIA: ("<!-- AC:BEGIN -->", "<!-- AC:END -->"),
    DEFINITION_OF_DONE: ("<!-- DOD:BEGIN -->", "<!-- DOD:END -->"),
    IMPLEMENTATION_PLAN: ("<!-- SECTION:PLAN:BEGIN -->", "<!-- SECTION:PLAN:END -->"),
    IMPLEMENTATION_NOTES: ("<!-- SECTION:NOTES:BEGIN -->", "<!-- SECTION:NOTES:END -->"),
    FINAL_SUMMARY: ("<!-- SECTION:FINAL_SUMMARY:BEGIN -->", "<!-- SECTION:FINAL_SUMMARY:END -->"),
}

SECTION_HEADINGS: dict[str, str] = {
    DESCRIPTION: "Description",
    ACCEPTANCE_CRITERIA: "Acceptance Criteria",
    DEFINITION_OF_DONE: "Definition of Done",
    IMPLEMENTATION_PLAN: "Implementation Plan",
    IMPLEMENTATION_NOTES: "Implementation Notes",
    FINAL_SUMMARY: "Final Summary",
}

# marker line -> (section, is_begin)
_MARKER_LOOKUP: dict[str, tuple[str, bool]] = {}
for _section, (_begin, _end) in SECTION_MARKERS.items():
    _MARKER_LOOKUP[_begin] = (_section, True)
    _MARKER_LOOKUP[_end] = (_section, False)

_FILENAME_ID_RE = re.compile(r"^([A-Za-z]+-\d+(?:\.\d+)*)")
_TITLE_HEADING_RE = re.compile(r"^#\s+(?:[A-Za-z]+-\d+(?:\.\d+)*\s*-\s*)?(.+)$")
_SECTION_HEADING_RE = re.compile(r"^##[ \t]+(.+?)[ \t]*\r?$", re.MULTILINE)
_CHECKLIST_RE = re.compile(r"^-\s*\[([ xX])\]\s*(?:#(\d+)\s+)?(.+)$")
_STATUS_GLYPH_RE = re.compile(r"^[○◒●◑]\s*")


@dataclass
class TaskDocument:
    """A task file split into its decoded frontmatter and raw body."""

    frontmatter: Frontmatter = field(default_factory=Frontmatter)
    body: str = ""
    has_frontmatter: bool = False
    yaml_error: str | None = None


def compute_content_hash(content: bytes | str) -> str:
    """
    Digest of file content used for optimistic concurrency checks.

    Args:
        content: File bytes (text is encoded as UTF-8)

    Returns:
        Hex SHA-256 digest
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def _decode(content: bytes | str) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8")
    return content


def split_document(content: bytes | str) -> TaskDocument:
    """
    Split file content into frontmatter and body.

    A missing or unterminated block means the whole file is body. A block
    whose YAML cannot be decoded yields empty frontmatter and records the
    error; the body after the block is still returned.
    """
    text = _decode(content)
    handler = TaskYAMLHandler()

    if not handler.detect(text):
        return TaskDocument(body=text)

    try:
        fm_text, body = handler.split(text)
    except ValueError:
        return TaskDocument(body=text)

    try:
        data = handler.load(fm_text)
    except yaml.YAMLError as e:
        return TaskDocument(body=body, has_frontmatter=True, yaml_error=str(e))

    if data is None:
        data = {}
    if not isinstance(data, dict):
        return TaskDocument(
            body=body,
            has_frontmatter=True,
            yaml_error=f"frontmatter is a {type(data).__name__}, not a mapping",
        )

    return TaskDocument(frontmatter=Frontmatter(data), body=body, has_frontmatter=True)


def serialize_task(frontmatter: Frontmatter | dict, body: str) -> bytes:
    """
    Rebuild file bytes from frontmatter and body.

    The body is emitted exactly as given.
    """
    if not isinstance(frontmatter, Frontmatter):
        frontmatter = Frontmatter(frontmatter)
    return f"---\n{frontmatter.to_yaml()}---\n{body}".encode("utf-8")


def classify_heading(heading: str) -> str | None:
    """Map a `## ` heading's text to a known section name."""
    name = heading.strip().lower()
    if "description" in name:
        return DESCRIPTION
    if "acceptance criteria" in name:
        return ACCEPTANCE_CRITERIA
    if "definition of done" in name:
        return DEFINITION_OF_DONE
    if "implementation notes" in name or name == "notes":
        return IMPLEMENTATION_NOTES
    if "plan" in name:
        return IMPLEMENTATION_PLAN
    if "summary" in name:
        return FINAL_SUMMARY
    return None


def match_task_id(filename: str) -> str | None:
    """TASK-12 from 'task-12 - Fix login.md'; None if the name carries no id."""
    match = _FILENAME_ID_RE.match(filename)
    return match.group(1).upper() if match else None


def task_id_from_filename(file_path: Path | str) -> str:
    """Id carried by the file name; the bare stem otherwise."""
    stem = Path(file_path).stem
    return match_task_id(stem) or stem


def parse_checklist_line(line: str, fallback_id: int) -> ChecklistItem | None:
    """Parse `- [ ] #3 text` / `- [x] text`; None if the line is not an item."""
    match = _CHECKLIST_RE.match(line.strip())
    if not match:
        return None
    return ChecklistItem(
        id=int(match.group(2)) if match.group(2) else fallback_id,
        checked=match.group(1).lower() == "x",
        text=match.group(3).strip(),
    )


@dataclass
class _BodyScan:
    title: str | None = None
    loose: dict[str, list[str]] = field(default_factory=dict)
    marked: dict[str, list[str]] = field(default_factory=dict)

    def lines_for(self, section: str) -> list[str]:
        """Marker content wins over loose lines under the heading."""
        if section in self.marked:
            return self.marked[section]
        return [
            line for line in self.loose.get(section, []) if not line.strip().startswith("<!--")
        ]

    def text_for(self, section: str) -> str | None:
        return "\n".join(self.lines_for(section)).strip() or None

    def checklist_for(self, section: str) -> list[ChecklistItem]:
        items: list[ChecklistItem] = []
        for line in self.lines_for(section):
            next_id = max((item.id for item in items), default=0) + 1
            item = parse_checklist_line(line, next_id)
            if item:
                items.append(item)
        return items


def _scan_body(body: str, find_title: bool = True) -> _BodyScan:
    """
    Collect section lines from a body.

    A begin marker with no end marker after it is ignored, and the lines
    that follow it belong to whatever heading they sit under. With
    find_title, the first `# ` heading is taken as the title; otherwise it
    is ordinary content.
    """
    scan = _BodyScan()
    current: str | None = None
    in_marker: str | None = None

    lines = body.split("\n")
    last_end: dict[str, int] = {}
    for index, line in enumerate(lines):
        marker = _MARKER_LOOKUP.get(line.strip())
        if marker is not None and not marker[1]:
            last_end[marker[0]] = index

    for index, line in enumerate(lines):
        stripped = line.strip()

        marker = _MARKER_LOOKUP.get(stripped)
        if marker is not None:
            section, is_begin = marker
            if is_begin and last_end.get(section, -1) < index:
                # unterminated block
                continue
            if is_begin:
                in_marker = section
                scan.marked.setdefault(section, [])
            else:
                in_marker = None
            continue

        if in_marker is not None:
            scan.marked[in_marker].append(line.rstrip("\r"))
            continue

        if find_title and stripped.startswith("# ") and scan.title is None:
            match = _TITLE_HEADING_RE.match(stripped)
            if match:
                scan.title = match.group(1).strip()
            continue

        if stripped.startswith("## "):
            current = classify_heading(stripped[3:])
            continue

        if current is not None:
            scan.loose.setdefault(current, []).append(line.rstrip("\r"))

    return scan


def parse_task(
    content: bytes | str,
    file_path: Path | str,
    folder: TaskFolder = TaskFolder.TASKS,
) -> Task | None:
    """
    Parse a task file.

    Never fails on malformed frontmatter: the file is treated as having
    none. Returns None when no non-empty title can be found (neither a
    frontmatter title nor a leading `# ` heading).

    Args:
        content: Raw file content
        file_path: Path of the backing file (used for the fallback id)
        folder: Backlog folder the file lives in

    Returns:
        Parsed Task, or None if the file has no title
    """
    doc = split_document(content)
    if doc.yaml_error:
        logger.warning("Ignoring unreadable frontmatter in %s: %s", file_path, doc.yaml_error)

    fm = doc.frontmatter
    scan = _scan_body(doc.body, find_title=not fm.title)

    title = fm.title or scan.title
    if not title:
        return None

    status = fm.status
    if status:
        status = _STATUS_GLYPH_RE.sub("", status) or None

    return Task(
        id=fm.id or task_id_from_filename(file_path),
        title=title,
        status=status or "To Do",
        priority=TaskPriority.parse(fm.priority),
        description=scan.text_for(DESCRIPTION),
        type=fm.type,
        labels=fm.labels,
        assignees=fm.assignees,
        reporter=fm.reporter,
        milestone=fm.milestone,
        dependencies=fm.dependencies,
        references=fm.references,
        documentation=fm.documentation,
        parent_task_id=fm.parent_task_id,
        subtasks=fm.subtasks,
        acceptance_criteria=scan.checklist_for(ACCEPTANCE_CRITERIA),
        definition_of_done=scan.checklist_for(DEFINITION_OF_DONE),
        implementation_plan=scan.text_for(IMPLEMENTATION_PLAN),
        implementation_notes=scan.text_for(IMPLEMENTATION_NOTES),
        final_summary=scan.text_for(FINAL_SUMMARY),
        created_at=fm.created,
        updated_at=fm.updated,
        ordinal=fm.ordinal,
        file_path=Path(file_path),
        folder=folder,
        content_hash=compute_content_hash(content),
        extra=fm.extra,
    )


# ==============================================================================
# Targeted body edits
# ==============================================================================


def _heading_span(body: str, section: str) -> tuple[int, int, int] | None:
    """(heading_start, content_start, content_end) of a section, or None."""
    headings = list(_SECTION_HEADING_RE.finditer(body))
    for index, match in enumerate(headings):
        if classify_heading(match.group(1)) == section:
            end = headings[index + 1].start() if index + 1 < len(headings) else len(body)
            return match.start(), match.end(), end
    return None


def _marker_span(body: str, section: str) -> tuple[int, int] | None:
    """(after_begin_marker, at_end_marker) of a section, or None."""
    begin, end = SECTION_MARKERS[section]
    begin_index = body.find(begin)
    if begin_index == -1:
        return None
    end_index = body.find(end, begin_index + len(begin))
    if end_index == -1:
        return None
    return begin_index + len(begin), end_index


def replace_section_in_body(body: str, section: str, content: str) -> str:
    """
    Replace one section's content, leaving the rest of the body untouched.

    Content between the section's begin/end markers is replaced when they
    exist. Otherwise the content under the section heading is replaced by a
    marked block. Without a heading, a new section is added: description at
    the top of the body, anything else at the end.
    """
    begin, end = SECTION_MARKERS[section]

    span = _marker_span(body, section)
    if span is not None:
        start, stop = span
        return f"{body[:start]}\n{content}\n{body[stop:]}"

    block = f"{begin}\n{content}\n{end}\n"

    heading = _heading_span(body, section)
    if heading is not None:
        _, content_start, content_end = heading
        after = body[content_end:]
        separator = "\n" if after else ""
        return f"{body[:content_start]}\n\n{block}{separator}{after}"

    title = SECTION_HEADINGS[section]
    if section == DESCRIPTION:
        separator = "\n" if body and not body.startswith("\n") else ""
        return f"\n## {title}\n\n{block}{separator}{body}"
    prefix = body.rstrip("\n")
    return f"{prefix}\n\n## {title}\n\n{block}" if prefix else f"\n## {title}\n\n{block}"


def update_description_in_body(body: str, description: str) -> str:
    """Replace the description section's content."""
    return replace_section_in_body(body, DESCRIPTION, description)


def _checklist_span(body: str, kind: str) -> tuple[int, int] | None:
    span = _marker_span(body, kind)
    if span is not None:
        return span
    heading = _heading_span(body, kind)
    if heading is not None:
        return heading[1], heading[2]
    return None


def toggle_checklist_in_body(
    body: str, kind: ChecklistKind | str, item_id: int
) -> str | None:
    """
    Flip the check mark of one checklist item.

    Only the single check-mark character changes. The search is confined to
    the given list so that `#1` in acceptance criteria and `#1` in the
    definition of done are told apart.

    Returns:
        New body, or None if the list has no item with that anchor
    """
    section = ChecklistKind.parse(kind).value
    span = _checklist_span(body, section)
    if span is None:
        return None

    start, stop = span
    pattern = re.compile(
        rf"^([ \t]*-[ \t]*\[)([ xX])(\][ \t]*#{int(item_id)}[ \t]+.*)$", re.MULTILINE
    )
    match = pattern.search(body, start, stop)
    if match is None:
        return None

    mark_index = match.start(2)
    new_mark = "x" if body[mark_index] == " " else " "
    return body[:mark_index] + new_mark + body[mark_index + 1 :]


def render_checklist(items: list[ChecklistItem]) -> str:
    """Checklist lines numbered densely from 1."""
    return "\n".join(
        f"- [{'x' if item.checked else ' '}] #{index} {item.text}"
        for index, item in enumerate(items, start=1)
    )


def set_checklist_in_body(
    body: str, kind: ChecklistKind | str, items: list[ChecklistItem]
) -> str:
    """Rewrite one checklist, renumbering its items 1..N."""
    section = ChecklistKind.parse(kind).value
    return replace_section_in_body(body, section, render_checklist(items))


def parse_checklist_in_body(body: str, kind: ChecklistKind | str) -> list[ChecklistItem]:
    """Current items of one checklist, as parse_task would see them."""
    section = ChecklistKind.parse(kind).value
    return _scan_body(body).checklist_for(section)
