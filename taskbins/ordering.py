"""
Ordering policy for tasks inside a column.

Appends take max(order) + 1 so new tasks never collide with existing ones
and the rest of the column is left alone. An in-column move rewrites the
whole column to 0..n-1, which keeps order keys small and collision-free at
the cost of one write per task in the column.
"""
from typing import List, Sequence, Tuple

from .schema import Task


def next_append_order(column_tasks: Sequence[Task]) -> float:
    """Order value for a task appended to the end of a column (0 if empty)."""
    if not column_tasks:
        return 0
    return max(t.order for t in column_tasks) + 1


def reindex(tasks: Sequence[Task]) -> List[Tuple[str, int]]:
    """Assign contiguous orders 0..n-1 following the given visual order."""
    return [(task.id, position) for position, task in enumerate(tasks)]


def move_within(column_tasks: Sequence[Task], task_id: str, index: int) -> List[Task]:
    """
    Return the column with `task_id` taken out and reinserted at `index`.

    `index` is clamped into the column. Raises KeyError if the task is not
    in the column.
    """
    remaining = [t for t in column_tasks if t.id != task_id]
    if len(remaining) == len(column_tasks):
        raise KeyError(task_id)
    moved = next(t for t in column_tasks if t.id == task_id)
    index = max(0, min(index, len(remaining)))
    remaining.insert(index, moved)
    return remaining
