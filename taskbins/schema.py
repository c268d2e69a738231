"""
Task record schema and column definitions.

Columns (fixed display order):
  To Do → In Progress → Done

A task's column is its `status`. `order` sequences tasks inside one column
and carries no meaning across columns.
"""
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple


class Column(Enum):
    """Board columns. The member order is the display order."""
    TODO = "todo"
    DOING = "doing"
    DONE = "done"

    @classmethod
    def from_str(cls, value: Any) -> "Column":
        """Lenient lookup: unknown or missing values fall back to the first column."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return FIRST_COLUMN

    @property
    def label(self) -> str:
        return COLUMN_LABELS[self]


FIRST_COLUMN = Column.TODO
COLUMNS: Tuple[Column, ...] = tuple(Column)

COLUMN_LABELS: Dict[Column, str] = {
    Column.TODO: "To Do",
    Column.DOING: "In Progress",
    Column.DONE: "Done",
}

# Fields a caller may write; `id` and `createdAt` belong to the store.
WRITABLE_FIELDS = frozenset({"title", "note", "status", "order"})


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def _coerce_order(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


@dataclass(frozen=True)
class Task:
    """One task as seen by the board."""

    id: str
    title: str
    note: str = ""
    status: Column = FIRST_COLUMN
    order: float = 0
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted record shape."""
        return {
            "id": self.id,
            "title": self.title,
            "note": self.note,
            "status": self.status.value,
            "order": self.order,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """
        Build a Task from a raw snapshot record.

        Never raises on bad data: a missing status becomes the first column,
        a missing or non-numeric order becomes 0, missing text becomes "".
        """
        title = data.get("title")
        note = data.get("note")
        created_at = data.get("createdAt", data.get("created_at"))
        return cls(
            id=str(data.get("id", "")),
            title=title.strip() if isinstance(title, str) else "",
            note=note.strip() if isinstance(note, str) else "",
            status=Column.from_str(data.get("status")),
            order=_coerce_order(data.get("order", 0)),
            created_at=str(created_at) if created_at is not None else None,
        )
