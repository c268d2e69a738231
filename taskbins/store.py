"""
Record store adapters.

RecordStore is the contract the sync engine talks to: single-record
create/update/delete, an atomic batch update, and a live ordered query that
pushes full snapshots. SQLiteRecordStore keeps one user's collection in a
local SQLite table; HttpRecordStore (remote.py) reaches the board server.
"""
import asyncio
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .schema import WRITABLE_FIELDS, Column, utc_now

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Snapshot = List[Record]
SnapshotCallback = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]

# Public sort key -> SQL column
SORT_KEYS: Dict[str, str] = {
    "order": "sort_order",
    "createdAt": "created_at",
    "title": "title",
}

_FIELD_COLUMNS: Dict[str, str] = {
    "title": "title",
    "note": "note",
    "status": "status",
    "order": "sort_order",
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Exceptions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StoreError(Exception):
    """Base class for record store failures."""
    pass


class NotFound(StoreError):
    """The record no longer exists."""

    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class StoreUnavailable(StoreError):
    """The store could not be reached or refused the write. No partial effect."""
    pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Field validation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def clean_fields(fields: Dict[str, Any], creating: bool = False) -> Dict[str, Any]:
    """
    Validate a caller-supplied field dict and return a normalized copy.

    Raises ValueError on unknown fields, an unknown status, a non-numeric
    order, or (when creating) a missing title.
    """
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

    result: Dict[str, Any] = {}
    if "title" in fields:
        if not isinstance(fields["title"], str):
            raise ValueError("title must be a string")
        result["title"] = fields["title"]
        if creating and not result["title"].strip():
            raise ValueError("title is required")
    elif creating:
        raise ValueError("title is required")

    if "note" in fields:
        note = fields["note"]
        if note is not None and not isinstance(note, str):
            raise ValueError("note must be a string")
        result["note"] = note or ""

    if "status" in fields:
        status = fields["status"]
        if isinstance(status, Column):
            status = status.value
        if status not in {c.value for c in Column}:
            raise ValueError(f"Invalid status: {status}")
        result["status"] = status

    if "order" in fields:
        order = fields["order"]
        if isinstance(order, bool) or not isinstance(order, (int, float)):
            raise ValueError(f"order must be a number, got: {order!r}")
        result["order"] = order

    if creating:
        result.setdefault("note", "")
        result.setdefault("status", Column.TODO.value)
        result.setdefault("order", 0)
    return result


def check_sort_key(order_by: str) -> str:
    if order_by not in SORT_KEYS:
        raise ValueError(
            f"Invalid sort key: {order_by}. Allowed: {', '.join(SORT_KEYS)}"
        )
    return order_by


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# RecordStore: adapter contract and snapshot feed
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class _Subscription:
    def __init__(self, callback: SnapshotCallback, order_by: str):
        self.callback = callback
        self.order_by = order_by
        self.active = True
        self.last: Optional[Snapshot] = None


class RecordStore:
    """
    Base class for record store adapters.

    Subclasses implement the four mutations and `_fetch_snapshot`, and call
    `_changed()` after every successful write. The base class runs the
    snapshot feed: rapid writes coalesce into one publication, and
    publications are serialized so snapshots never go backwards.
    """

    def __init__(self):
        self._subscriptions: List[_Subscription] = []
        self._publish_lock: Optional[asyncio.Lock] = None
        self._publish_scheduled = False
        self._background: set = set()
        self._publishing: set = set()

    async def create(self, fields: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, record_id: str) -> None:
        raise NotImplementedError

    async def batch_update(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        raise NotImplementedError

    async def _fetch_snapshot(self, order_by: str) -> Snapshot:
        raise NotImplementedError

    # ──────────────────────────────────────────
    # Snapshot feed
    # ──────────────────────────────────────────

    def subscribe(self, on_snapshot: SnapshotCallback, order_by: str = "order") -> Unsubscribe:
        """
        Start a live query. `on_snapshot` gets the current state right away
        (on the running loop) and again after every change.
        """
        check_sort_key(order_by)
        sub = _Subscription(on_snapshot, order_by)
        self._subscriptions.append(sub)
        self._spawn(self._publish(only=sub), publishing=True)

        def unsubscribe() -> None:
            sub.active = False
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    def _changed(self) -> None:
        if self._publish_scheduled or not self._subscriptions:
            return
        self._publish_scheduled = True
        self._spawn(self._publish(), publishing=True)

    def _spawn(self, coro, publishing: bool = False) -> "asyncio.Task":
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        if publishing:
            self._publishing.add(task)
            task.add_done_callback(self._publishing.discard)
        return task

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been delivered."""
        while self._publishing:
            await asyncio.gather(*list(self._publishing), return_exceptions=True)

    async def _publish(self, only: Optional[_Subscription] = None, changed_only: bool = False) -> None:
        if self._publish_lock is None:
            self._publish_lock = asyncio.Lock()
        async with self._publish_lock:
            if only is None:
                # Writes landing from here on schedule a fresh publication.
                self._publish_scheduled = False
            targets = [only] if only is not None else list(self._subscriptions)
            snapshots: Dict[str, Snapshot] = {}
            for sub in targets:
                if not sub.active:
                    continue
                if sub.order_by not in snapshots:
                    try:
                        snapshots[sub.order_by] = await self._fetch_snapshot(sub.order_by)
                    except StoreError as e:
                        logger.warning(f"Snapshot fetch failed: {e}")
                        return
                snapshot = snapshots[sub.order_by]
                if changed_only and sub.last == snapshot:
                    continue
                self._deliver(sub, snapshot)

    def _deliver(self, sub: _Subscription, snapshot: Snapshot) -> None:
        sub.last = snapshot
        try:
            sub.callback([dict(r) for r in snapshot])
        except Exception:
            logger.exception("Snapshot subscriber raised")

    async def close(self) -> None:
        """Drop all subscriptions and stop background work."""
        for sub in self._subscriptions:
            sub.active = False
        self._subscriptions.clear()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLiteRecordStore
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode with dict-like rows."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def _transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on any exception, always close."""
    conn = _connect(db_path)
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> Record:
    return {
        "id": row["id"],
        "title": row["title"],
        "note": row["note"] or "",
        "status": row["status"],
        "order": row["sort_order"],
        "createdAt": row["created_at"],
    }


class SQLiteRecordStore(RecordStore):
    """One user's task collection in a SQLite database."""

    def __init__(self, db_path: Optional[str] = None, user_id: str = "local"):
        super().__init__()
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskbins" / "tasks.db")
        self.db_path = str(db_path)
        self.user_id = user_id
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with _transaction(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    note TEXT DEFAULT '',
                    status TEXT DEFAULT 'todo',
                    sort_order NUMERIC DEFAULT 0,  -- integral values stay INTEGER
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_user_status ON tasks(user_id, status)"
            )

    # ──────────────────────────────────────────
    # Blocking helpers (run in a worker thread)
    # ──────────────────────────────────────────

    def _create_sync(self, fields: Dict[str, Any]) -> str:
        record_id = uuid.uuid4().hex
        now = utc_now()
        with _transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO tasks
                (user_id, id, title, note, status, sort_order, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (self.user_id, record_id, fields["title"], fields["note"],
                 fields["status"], fields["order"], now, now),
            )
        return record_id

    def _apply_update(self, conn: sqlite3.Connection, record_id: str, fields: Dict[str, Any]) -> None:
        assignments = ["updated_at = ?"]
        values: List[Any] = [utc_now()]
        for name, value in fields.items():
            assignments.append(f"{_FIELD_COLUMNS[name]} = ?")
            values.append(value)
        values.extend([self.user_id, record_id])
        cur = conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE user_id = ? AND id = ?",
            values,
        )
        if cur.rowcount == 0:
            raise NotFound(record_id)

    def _update_sync(self, record_id: str, fields: Dict[str, Any]) -> None:
        with _transaction(self.db_path) as conn:
            self._apply_update(conn, record_id, fields)

    def _batch_update_sync(self, updates: List[Tuple[str, Dict[str, Any]]]) -> None:
        # One transaction: a NotFound anywhere rolls back every row.
        with _transaction(self.db_path) as conn:
            for record_id, fields in updates:
                self._apply_update(conn, record_id, fields)

    def _delete_sync(self, record_id: str) -> bool:
        with _transaction(self.db_path) as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE user_id = ? AND id = ?",
                (self.user_id, record_id),
            )
            return cur.rowcount > 0

    def _list_sync(self, order_by: str) -> Snapshot:
        column = SORT_KEYS[check_sort_key(order_by)]
        with _transaction(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE user_id = ? ORDER BY {column} ASC, created_at ASC, id ASC",
                (self.user_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get(self, record_id: str) -> Optional[Record]:
        """Blocking single-record read."""
        with _transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? AND id = ?",
                (self.user_id, record_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    # ──────────────────────────────────────────
    # Async adapter surface
    # ──────────────────────────────────────────

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite error: {e}") from e

    async def create(self, fields: Dict[str, Any]) -> str:
        record_id = await self._run(self._create_sync, clean_fields(fields, creating=True))
        logger.debug(f"Created task {record_id} for {self.user_id}")
        self._changed()
        return record_id

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        await self._run(self._update_sync, record_id, clean_fields(fields))
        self._changed()

    async def delete(self, record_id: str) -> None:
        if await self._run(self._delete_sync, record_id):
            self._changed()

    async def batch_update(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        cleaned = [(record_id, clean_fields(fields)) for record_id, fields in updates]
        if not cleaned:
            return
        await self._run(self._batch_update_sync, cleaned)
        self._changed()

    async def _fetch_snapshot(self, order_by: str) -> Snapshot:
        return await self._run(self._list_sync, order_by)

    # Blocking variants used by the board server (Flask handlers are sync).

    def list_records(self, order_by: str = "order") -> Snapshot:
        return self._wrap(self._list_sync, order_by)

    def create_record(self, fields: Dict[str, Any]) -> str:
        return self._wrap(self._create_sync, clean_fields(fields, creating=True))

    def update_record(self, record_id: str, fields: Dict[str, Any]) -> None:
        self._wrap(self._update_sync, record_id, clean_fields(fields))

    def delete_record(self, record_id: str) -> None:
        self._wrap(self._delete_sync, record_id)

    def batch_update_records(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        cleaned = [(record_id, clean_fields(fields)) for record_id, fields in updates]
        if cleaned:
            self._wrap(self._batch_update_sync, cleaned)

    @staticmethod
    def _wrap(fn, *args):
        try:
            return fn(*args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite error: {e}") from e
