"""
Taskboard — Ordering Reconciler

Dense, gap-free ordering for sequences that carry an ``order_index``
(tasks within a column, checklist items within a task, columns and
categories within a board).

Every operation works on plain lists of identifiers and returns new lists;
the list position *is* the order index. Callers persist the result with
:func:`dense_indexes`, which is what keeps ``{0, 1, ..., n-1}`` true at rest.
"""

from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T", bound=Hashable)


def clamp_position(position: Optional[int], length: int) -> int:
    """Clamp a requested slot to ``[0, length]``.

    ``None`` and anything past the end mean "append".
    """
    if position is None or position > length:
        return length
    if position < 0:
        return 0
    return position


def insert(sequence: Sequence[T], item: T, position: Optional[int] = None) -> List[T]:
    """Insert ``item`` at ``position`` (clamped). An existing occurrence is moved."""
    remaining = [x for x in sequence if x != item]
    slot = clamp_position(position, len(remaining))
    remaining.insert(slot, item)
    return remaining


def remove(sequence: Sequence[T], item: T) -> List[T]:
    return [x for x in sequence if x != item]


def move(
    source: Sequence[T],
    destination: Sequence[T],
    item: T,
    position: Optional[int] = None,
    same_sequence: bool = False,
) -> Tuple[List[T], List[T]]:
    """Move ``item`` out of ``source`` into ``destination`` at ``position``.

    Returns ``(new_source, new_destination)``. When both sides are the same
    sequence pass ``same_sequence=True``; the two returned lists are then
    identical and the position is interpreted after the item is lifted out.
    """
    if same_sequence:
        reordered = insert(source, item, position)
        return reordered, reordered
    return remove(source, item), insert(destination, item, position)


def dense_indexes(sequence: Iterable[T]) -> Dict[T, int]:
    """Map each identifier to its zero-based position"""
    return {item: index for index, item in enumerate(sequence)}


def compact(ordered: Iterable[Tuple[T, int]]) -> List[T]:
    """Re-derive a dense order from ``(id, order_index)`` pairs.

    Ties and gaps are tolerated: items are sorted by their stored index and
    then by first appearance, which is how a column that drifted (concurrent
    appends, legacy rows) gets repaired.
    """
    indexed = list(ordered)
    ranked = sorted(enumerate(indexed), key=lambda pair: (pair[1][1], pair[0]))
    return [item for _, (item, _) in ranked]


def next_append_index(indexes: Iterable[int]) -> int:
    """Order index a newly appended item receives in a dense sequence"""
    return sum(1 for _ in indexes)
