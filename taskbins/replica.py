"""
Local replica of the user's tasks.

The replica is always rebuilt wholesale from the latest snapshot. It holds
confirmed store state only; pending local writes are never merged in.
"""
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .schema import COLUMNS, Column, Task


class Replica:
    """In-memory mapping of task id -> Task."""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self.version = 0

    def rebuild(self, snapshot: Iterable[Any]) -> None:
        """Replace the whole cache. Accepts Task objects or raw record dicts."""
        tasks: Dict[str, Task] = {}
        for item in snapshot:
            task = item if isinstance(item, Task) else Task.from_dict(item)
            tasks[task.id] = task
        self._tasks = tasks
        self.version += 1

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def column(self, column: Column) -> List[Task]:
        """Tasks of one column in render order."""
        return _sorted([t for t in self._tasks.values() if t.status == column])

    def index_of(self, task_id: str) -> Optional[int]:
        """Position of a task inside its own column, or None if unknown."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        for position, other in enumerate(self.column(task.status)):
            if other.id == task_id:
                return position
        return None

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(self._tasks.values())


def _sorted(tasks: List[Task]) -> List[Task]:
    # Ties on order fall back to id so rendering is deterministic.
    return sorted(tasks, key=lambda t: (t.order, t.id))


def partition_by_column(replica: "Replica | Mapping[str, Task]") -> Dict[Column, List[Task]]:
    """Group tasks by column, each column sorted by (order, id). All columns present."""
    tasks = replica.values() if isinstance(replica, Mapping) else iter(replica)
    groups: Dict[Column, List[Task]] = {column: [] for column in COLUMNS}
    for task in tasks:
        groups[task.status].append(task)
    return {column: _sorted(items) for column, items in groups.items()}
