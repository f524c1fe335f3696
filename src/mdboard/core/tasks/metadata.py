"""
Frontmatter decoding and canonical re-encoding for task files.

The YAML block at the top of a task file is decoded into a Frontmatter
object: typed accessors for the keys the store understands, plus the raw
mapping so that keys it does not understand survive a rewrite untouched.

Decoding never turns date-like scalars into date objects. `2024-01-15`
stays the string "2024-01-15"; the store does not interpret dates.

Encoding is deterministic. Known keys come first in a fixed order, unknown
keys follow in their original order, arrays are written inline and scalars
are quoted only when leaving them bare would change their meaning.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any

import frontmatter  # type: ignore[import-untyped]
import yaml

TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"
FRONTMATTER_DELIMITER = "---"

# Known keys, in the order they are written back.
CANONICAL_KEY_ORDER: tuple[str, ...] = (
    "id",
    "title",
    "status",
    "priority",
    "milestone",
    "labels",
    "assignee",
    "assignees",
    "reporter",
    "created_date",
    "created",
    "updated_date",
    "updated",
    "dependencies",
    "references",
    "documentation",
    "parent_task_id",
    "parent",
    "subtasks",
    "ordinal",
    "type",
)

# Task field -> accepted frontmatter spellings. The first spelling is used
# when a field is written to a file that has none of them yet.
FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "id": ("id",),
    "title": ("title",),
    "status": ("status",),
    "priority": ("priority",),
    "milestone": ("milestone",),
    "labels": ("labels",),
    "assignees": ("assignee", "assignees"),
    "reporter": ("reporter",),
    "created_at": ("created_date", "created"),
    "updated_at": ("updated_date", "updated"),
    "dependencies": ("dependencies",),
    "references": ("references",),
    "documentation": ("documentation",),
    "parent_task_id": ("parent_task_id", "parent"),
    "subtasks": ("subtasks",),
    "ordinal": ("ordinal",),
    "type": ("type",),
}

ARRAY_FIELDS = frozenset(
    {"labels", "assignees", "dependencies", "references", "documentation", "subtasks"}
)

_KNOWN_KEYS = frozenset(CANONICAL_KEY_ORDER)

_STRUCTURAL_CHARS = frozenset(":#[]{},'\"\n")
_QUOTE_LEADERS = frozenset("@*&!|>%`")
_RESERVED_WORDS = frozenset({"", "~", "true", "false", "null", "yes", "no", "on", "off"})


class FrontmatterLoader(yaml.SafeLoader):
    """SafeLoader that leaves date-like scalars as strings."""


FrontmatterLoader.yaml_implicit_resolvers = {
    first_char: [(tag, regexp) for tag, regexp in resolvers if tag != TIMESTAMP_TAG]
    for first_char, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class TaskYAMLHandler(frontmatter.YAMLHandler):  # type: ignore[misc]
    """
    python-frontmatter handler tuned for task files.

    Boundaries are matched line by line so that the body is returned with
    every byte intact (the stock handler's regex swallows surrounding
    whitespace), and YAML is decoded with FrontmatterLoader.
    """

    def detect(self, text: str) -> bool:
        first_line = text.split("\n", 1)[0]
        return first_line.strip() == self.START_DELIMITER

    def split(self, text: str) -> tuple[str, str]:
        """
        Split text into (frontmatter, body).

        Raises:
            ValueError: If the block is not opened or never closed
        """
        lines = text.split("\n")
        if not lines or lines[0].strip() != self.START_DELIMITER:
            raise ValueError("no frontmatter block")
        for index in range(1, len(lines)):
            if lines[index].strip() == self.END_DELIMITER:
                return "\n".join(lines[1:index]), "\n".join(lines[index + 1 :])
        raise ValueError("unterminated frontmatter block")

    def load(self, fm: str, **kwargs: Any) -> Any:
        kwargs.setdefault("Loader", FrontmatterLoader)
        return super().load(fm, **kwargs)

    def export(self, metadata: Mapping[str, Any], **kwargs: Any) -> str:
        """Encode metadata as canonical YAML lines (trailing newline included)."""
        lines = [
            f"{format_scalar(str(key))}: {format_value(value)}"
            for key, value in canonical_items(metadata)
        ]
        return "".join(line + "\n" for line in lines)


def canonical_items(metadata: Mapping[str, Any]) -> list[tuple[str, Any]]:
    """Known keys in canonical order, then the rest in their existing order."""
    items = [(key, metadata[key]) for key in CANONICAL_KEY_ORDER if key in metadata]
    items.extend((key, value) for key, value in metadata.items() if key not in _KNOWN_KEYS)
    return items


def _resolves_to_string(value: str) -> bool:
    """True if YAML would read the bare text back as the same string."""
    resolvers = FrontmatterLoader.yaml_implicit_resolvers
    candidates = list(resolvers.get(value[0] if value else "", []))
    candidates.extend(resolvers.get(None, []))
    return not any(regexp.match(value) for _, regexp in candidates)


def _loads_back(value: str) -> bool:
    """True if `key: value` loads back as exactly this string."""
    try:
        loaded = yaml.load(f"key: {value}\n", Loader=FrontmatterLoader)
    except yaml.YAMLError:
        return False
    return loaded == {"key": value}


def needs_quotes(value: str) -> bool:
    """
    Decide whether a string scalar must be quoted.

    Quote only when bare text would be misread: structural characters,
    indicator characters at the start, reserved words, surrounding
    whitespace, or text YAML would resolve to a number or boolean. Anything
    left is loaded back once and quoted if it does not survive.
    """
    if value.lower() in _RESERVED_WORDS:
        return True
    if any(ch in _STRUCTURAL_CHARS for ch in value):
        return True
    if value[0] in _QUOTE_LEADERS:
        return True
    if value in ("-", "?") or value.startswith(("- ", "? ")):
        return True
    if value != value.strip():
        return True
    if any(ord(ch) < 0x20 for ch in value):
        return True
    if not _resolves_to_string(value):
        return True
    return not _loads_back(value)


def format_scalar(value: str) -> str:
    """Emit a string scalar, quoting only when needed."""
    if not needs_quotes(value):
        return value
    if "\n" in value or any(ord(ch) < 0x20 for ch in value):
        # JSON string escapes are valid YAML double-quoted escapes
        return json.dumps(value, ensure_ascii=False)
    return "'" + value.replace("'", "''") + "'"


def format_number(value: int | float) -> str:
    """Emit a number so that YAML reads back the same type and value."""
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return ".nan"
    if math.isinf(value):
        return ".inf" if value > 0 else "-.inf"
    text = repr(value)
    if "e" in text or "E" in text:
        mantissa, exponent = text.lower().split("e")
        if "." not in mantissa:
            mantissa += ".0"
        if exponent[0] not in "+-":
            exponent = "+" + exponent
        text = f"{mantissa}e{exponent}"
    return text


def format_value(value: Any) -> str:
    """Emit one frontmatter value on a single line."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return format_scalar(value)
    if isinstance(value, (list, tuple)) and all(_is_flat(item) for item in value):
        return "[" + ", ".join(format_value(item) for item in value) + "]"
    # Nested structures in keys we do not model: let PyYAML write flow style
    dumped: str = yaml.safe_dump(
        value,
        default_flow_style=True,
        sort_keys=False,
        allow_unicode=True,
        width=float("inf"),
    )
    return dumped.strip()


def _is_flat(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def normalize_string_list(value: Any) -> list[str]:
    """A string or a list of scalars becomes a trimmed list of non-empty strings."""
    if value is None:
        return []
    items: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
    result = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip()
    return text or None


class Frontmatter:
    """
    Typed view over a task file's frontmatter mapping.

    Reads go through typed accessors; writes go through set_field(), which
    keeps whichever key spelling the file already uses (`assignee` vs
    `assignees`, `created` vs `created_date`). Keys the store does not know
    are kept as-is in `extra`.

    Example:
        >>> fm = Frontmatter({"id": "task-1", "labels": "ui", "epic": "E1"})
        >>> fm.id, fm.labels, fm.extra
        ('TASK-1', ['ui'], {'epic': 'E1'})
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = {str(k): v for k, v in (data or {}).items()}

    def __repr__(self) -> str:
        return f"Frontmatter({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Frontmatter):
            return NotImplemented
        return self._data == other._data

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Mapping in canonical key order."""
        return dict(canonical_items(self._data))

    @property
    def extra(self) -> dict[str, Any]:
        """Keys outside the known schema, in file order."""
        return {k: v for k, v in self._data.items() if k not in _KNOWN_KEYS}

    def _first_present(self, field: str) -> str | None:
        for key in FIELD_KEYS[field]:
            if key in self._data:
                return key
        return None

    def _raw(self, field: str) -> Any:
        key = self._first_present(field)
        return self._data[key] if key is not None else None

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    @property
    def id(self) -> str | None:
        text = _as_text(self._raw("id"))
        return text.upper() if text else None

    @property
    def title(self) -> str | None:
        return _as_text(self._raw("title"))

    @property
    def status(self) -> str | None:
        return _as_text(self._raw("status"))

    @property
    def priority(self) -> str | None:
        return _as_text(self._raw("priority"))

    @property
    def milestone(self) -> str | None:
        return _as_text(self._raw("milestone"))

    @property
    def reporter(self) -> str | None:
        return _as_text(self._raw("reporter"))

    @property
    def type(self) -> str | None:
        return _as_text(self._raw("type"))

    @property
    def created(self) -> str | None:
        return _as_text(self._raw("created_at"))

    @property
    def updated(self) -> str | None:
        return _as_text(self._raw("updated_at"))

    @property
    def parent_task_id(self) -> str | None:
        return _as_text(self._raw("parent_task_id"))

    @property
    def labels(self) -> list[str]:
        return normalize_string_list(self._raw("labels"))

    @property
    def assignees(self) -> list[str]:
        return normalize_string_list(self._raw("assignees"))

    @property
    def dependencies(self) -> list[str]:
        return normalize_string_list(self._raw("dependencies"))

    @property
    def references(self) -> list[str]:
        return normalize_string_list(self._raw("references"))

    @property
    def documentation(self) -> list[str]:
        return normalize_string_list(self._raw("documentation"))

    @property
    def subtasks(self) -> list[str]:
        return normalize_string_list(self._raw("subtasks"))

    @property
    def ordinal(self) -> float | None:
        value = self._raw("ordinal")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_field(self, field: str, value: Any) -> None:
        """
        Set a task field, keeping the file's existing key spelling.

        None removes the field (every spelling of it).
        """
        keys = FIELD_KEYS[field]
        if value is None:
            for key in keys:
                self._data.pop(key, None)
            return

        if field in ARRAY_FIELDS:
            value = normalize_string_list(value)
        elif field == "ordinal":
            value = float(value)
            if value.is_integer():
                value = int(value)
        elif hasattr(value, "value") and isinstance(value.value, str):
            value = value.value  # str enums such as TaskPriority

        key = self._first_present(field) or keys[0]
        self._data[key] = value

    def set_raw(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def to_yaml(self) -> str:
        """Canonical YAML text for the block (without delimiters)."""
        return TaskYAMLHandler().export(self._data)
