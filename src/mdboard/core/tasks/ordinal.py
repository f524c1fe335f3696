"""
Ordinal calculations for drag-and-drop ordering.

An ordinal is a sparse numeric sort key. Dropping a card between two others
gives it a value inside the gap, so a reorder touches a handful of files
instead of renumbering the whole column.

Everything here is pure: functions take cards in visual order and return
OrdinalUpdate instructions for the write path.
"""

from __future__ import annotations

import functools
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import OrdinalUpdate, Task

DEFAULT_STEP = 1000


@dataclass(frozen=True)
class CardData:
    """The two facts about a card that ordering cares about."""

    task_id: str
    ordinal: float | None = None

    @classmethod
    def from_task(cls, task: Task) -> "CardData":
        return cls(task_id=task.id, ordinal=task.ordinal)


def cards_from_tasks(tasks: Iterable[Task]) -> list[CardData]:
    """Cards for a list of tasks, keeping their order."""
    return [CardData.from_task(task) for task in tasks]


def has_ordinal(card: CardData) -> bool:
    """True iff the card has an ordinal (zero counts)."""
    return card.ordinal is not None


def compare_by_ordinal(a: CardData, b: CardData) -> int:
    """
    Canonical card comparator.

    - Cards with an ordinal come before cards without one
    - Cards with ordinals sort by ordinal, then by id
    - Cards without ordinals sort by id
    """
    if has_ordinal(a) and not has_ordinal(b):
        return -1
    if not has_ordinal(a) and has_ordinal(b):
        return 1
    if has_ordinal(a) and has_ordinal(b) and a.ordinal != b.ordinal:
        return -1 if a.ordinal < b.ordinal else 1  # type: ignore[operator]
    if a.task_id == b.task_id:
        return 0
    return -1 if a.task_id < b.task_id else 1


ordinal_sort_key = functools.cmp_to_key(compare_by_ordinal)


def sort_cards_by_ordinal(cards: Iterable[CardData]) -> list[CardData]:
    """Return cards in canonical order."""
    return sorted(cards, key=ordinal_sort_key)


def sort_tasks_by_ordinal(tasks: Iterable[Task]) -> list[Task]:
    """Return tasks in canonical card order."""
    return sorted(tasks, key=lambda task: ordinal_sort_key(CardData.from_task(task)))


def calculate_ordinals_for_drop(
    existing_cards: Sequence[CardData],
    dropped_card: CardData,
    drop_index: int,
) -> list[OrdinalUpdate]:
    """
    Calculate ordinal updates for dropping a card into a column.

    The dropped card always gets a new ordinal. So does every card without
    an ordinal at or above the drop position: such cards sort to the end on
    the next load, which would silently undo the order the user sees.

    Args:
        existing_cards: Cards in the target column, in visual order. May
            contain the dropped card itself for a reorder within a column.
        dropped_card: The card being dropped
        drop_index: Insertion index in existing_cards (0 = top)

    Returns:
        Updates in visual order; ordinals are strictly increasing

    Example:
        >>> calculate_ordinals_for_drop(
        ...     [CardData("B"), CardData("C")], CardData("A", 1000), 2
        ... )  # doctest: +NORMALIZE_WHITESPACE
        [OrdinalUpdate(task_id='B', ordinal=1000.0),
         OrdinalUpdate(task_id='C', ordinal=2000.0),
         OrdinalUpdate(task_id='A', ordinal=3000.0)]
    """
    original_index = next(
        (i for i, card in enumerate(existing_cards) if card.task_id == dropped_card.task_id),
        -1,
    )
    remaining = [card for card in existing_cards if card.task_id != dropped_card.task_id]

    index = drop_index
    if original_index != -1 and original_index < drop_index:
        index -= 1
    index = max(0, min(index, len(remaining)))

    new_order = list(remaining)
    new_order.insert(index, dropped_card)

    needing = [
        position
        for position in range(index + 1)
        if not has_ordinal(new_order[position]) or position == index
    ]

    first = needing[0]
    base = 0.0
    for position in range(first - 1, -1, -1):
        ordinal = new_order[position].ordinal
        if ordinal is not None:
            base = ordinal
            break

    ceiling: float | None = None
    for card in new_order[index + 1 :]:
        if card.ordinal is not None:
            ceiling = card.ordinal
            break

    count = len(needing)
    step: float = DEFAULT_STEP
    if ceiling is not None:
        step = min(DEFAULT_STEP, (ceiling - base) / (count + 1))

    return [
        OrdinalUpdate(task_id=new_order[position].task_id, ordinal=base + step * (n + 1))
        for n, position in enumerate(needing)
    ]


def has_ordinal_conflicts(group: Sequence[CardData]) -> bool:
    """
    True if a column's ordinals need repair.

    A column needs repair when two cards share an ordinal, or when some
    cards have ordinals and others do not.
    """
    ordinals = [card.ordinal for card in group if card.ordinal is not None]
    if len(set(ordinals)) != len(ordinals):
        return True
    return 0 < len(ordinals) < len(group)


def resolve_ordinal_conflicts(
    group: Sequence[CardData], step: float = DEFAULT_STEP
) -> list[OrdinalUpdate]:
    """
    Reassign evenly spaced ordinals to a column that needs repair.

    Cards keep their current canonical order (stable sort); each receives
    step * position. Only cards whose ordinal actually changes are returned.
    A column without conflicts yields no updates.

    Args:
        group: Cards of one column
        step: Spacing between consecutive ordinals

    Returns:
        Updates in canonical order
    """
    if not has_ordinal_conflicts(group):
        return []

    updates = []
    for position, card in enumerate(sort_cards_by_ordinal(group), start=1):
        ordinal = float(step * position)
        if card.ordinal != ordinal:
            updates.append(OrdinalUpdate(task_id=card.task_id, ordinal=ordinal))
    return updates
