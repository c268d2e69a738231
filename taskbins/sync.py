"""
Synchronization engine: turns board intents into store mutations and keeps
the replica in step with the store's snapshot feed.

Mutation path:
  create / delete / move → ordering policy → RecordStore call (fire and forget)

Reconciliation path:
  snapshot → normalize → Replica.rebuild → replica listeners

The replica is written only by reconciliation. A failed mutation leaves it
untouched, so nothing needs rolling back; the board simply shows the last
confirmed state until the next snapshot.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from . import ordering
from .replica import Replica, partition_by_column
from .schema import FIRST_COLUMN, Column, Task
from .store import NotFound, RecordStore, StoreError, Unsubscribe

logger = logging.getLogger(__name__)

ReplicaListener = Callable[[Replica], None]
ErrorListener = Callable[["SyncError"], None]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Exceptions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ValidationError(Exception):
    """Raised before any remote call when an intent is invalid."""
    pass


class SyncError(Exception):
    """Non-fatal report of a mutation that did not reach the store."""

    def __init__(self, operation: str, task_id: Optional[str], cause: BaseException):
        target = f" {task_id}" if task_id else ""
        super().__init__(f"{operation}{target} failed: {cause}")
        self.operation = operation
        self.task_id = task_id
        self.cause = cause


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SyncEngine
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SyncEngine:
    """
    Owns the replica for one user's board.

    `store` must already be scoped to the acting user. Mutating calls return
    an asyncio.Task resolving to True (applied) or False (failed), or None
    when the intent is a no-op. Must be used from a running event loop.
    """

    def __init__(self, store: RecordStore, order_by: str = "order"):
        self.store = store
        self.order_by = order_by
        self.replica = Replica()
        self._replica_listeners: List[ReplicaListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._in_flight: set = set()
        self._closed = False

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def start(self) -> None:
        """Subscribe to the store's snapshot feed."""
        if self._closed:
            raise RuntimeError("SyncEngine is closed")
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_snapshot, order_by=self.order_by)
            logger.debug("Snapshot subscription started")

    def close(self) -> None:
        """Stop reconciling. In-flight mutations are left to finish."""
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.debug("Snapshot subscription stopped")

    async def wait_idle(self) -> None:
        """Wait for every mutation issued so far to settle."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    # ──────────────────────────────────────────
    # Listeners
    # ──────────────────────────────────────────

    def subscribe_replica(self, on_change: ReplicaListener) -> Callable[[], None]:
        """Call `on_change(replica)` after every reconciliation."""
        self._replica_listeners.append(on_change)
        return lambda: _discard(self._replica_listeners, on_change)

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        """Call `listener(SyncError)` whenever a mutation fails."""
        self._error_listeners.append(listener)
        return lambda: _discard(self._error_listeners, listener)

    def columns(self) -> Dict[Column, List[Task]]:
        return partition_by_column(self.replica)

    # ──────────────────────────────────────────
    # Mutation path
    # ──────────────────────────────────────────

    def create_task(self, title: str, note: str = "") -> "asyncio.Task":
        """Append a new task to the first column."""
        title = (title or "").strip()
        note = (note or "").strip()
        if not title:
            raise ValidationError("Task title must not be empty")

        fields = {
            "title": title,
            "note": note,
            "status": FIRST_COLUMN.value,
            "order": ordering.next_append_order(self.replica.column(FIRST_COLUMN)),
        }
        logger.info(f"Creating task '{title}' at order {fields['order']}")
        return self._issue("create", None, self.store.create(fields))

    def delete_task(self, task_id: str) -> "asyncio.Task":
        """Delete unconditionally; unknown ids are fine."""
        logger.info(f"Deleting task {task_id}")
        return self._issue("delete", task_id, self.store.delete(task_id))

    def move_task(
        self,
        task_id: str,
        target_column: Union[Column, str],
        target_index: Optional[int] = None,
    ) -> Optional["asyncio.Task"]:
        """
        Apply a drop of `task_id` over `target_column` at `target_index`.

        Same column: reorder and rewrite the whole column in one batch.
        Other column: append at the end of the target; `target_index` is
        ignored and the source column keeps its order values.
        """
        column = _resolve_column(target_column)
        task = self.replica.get(task_id)
        if task is None:
            logger.debug(f"Move ignored: task {task_id} is not on the board")
            return None

        if task.status == column:
            return self._reorder(task, target_index)

        new_order = ordering.next_append_order(self.replica.column(column))
        logger.info(
            f"Moving task {task_id}: {task.status.value} → {column.value} at order {new_order}"
        )
        return self._issue(
            "move",
            task_id,
            self.store.update(task_id, {"status": column.value, "order": new_order}),
        )

    def _reorder(self, task: Task, target_index: Optional[int]) -> Optional["asyncio.Task"]:
        column_tasks = self.replica.column(task.status)
        current = next(i for i, t in enumerate(column_tasks) if t.id == task.id)
        if target_index is None:
            return None
        target_index = max(0, min(target_index, len(column_tasks) - 1))
        if target_index == current:
            return None

        reordered = ordering.move_within(column_tasks, task.id, target_index)
        updates = [(task_id, {"order": order}) for task_id, order in ordering.reindex(reordered)]
        logger.info(
            f"Reordering {task.status.value}: task {task.id} {current} → {target_index} "
            f"({len(updates)} records)"
        )
        return self._issue("reorder", task.id, self.store.batch_update(updates))

    def _issue(self, operation: str, task_id: Optional[str], call) -> "asyncio.Task":
        task = asyncio.get_running_loop().create_task(self._guard(operation, task_id, call))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _guard(self, operation: str, task_id: Optional[str], call) -> bool:
        try:
            await call
            return True
        except NotFound as e:
            # The next snapshot will drop the vanished record.
            logger.info(f"{operation} skipped: {e}")
            return False
        except (StoreError, ValueError) as e:
            error = SyncError(operation, task_id, e)
            logger.warning(str(error))
            self._report(error)
            return False
        except Exception as e:
            error = SyncError(operation, task_id, e)
            logger.exception(f"Unexpected adapter failure: {error}")
            self._report(error)
            return False

    def _report(self, error: SyncError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener raised")

    # ──────────────────────────────────────────
    # Reconciliation path
    # ──────────────────────────────────────────

    def _on_snapshot(self, snapshot: Sequence[Dict[str, Any]]) -> None:
        if self._closed:
            logger.debug("Snapshot after close ignored")
            return
        self.replica.rebuild(Task.from_dict(record) for record in snapshot)
        logger.debug(f"Replica rebuilt: {len(self.replica)} tasks (v{self.replica.version})")
        for listener in list(self._replica_listeners):
            try:
                listener(self.replica)
            except Exception:
                logger.exception("Replica listener raised")


def _resolve_column(value: Union[Column, str]) -> Column:
    if isinstance(value, Column):
        return value
    try:
        return Column(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown column: '{value}'. Allowed: {', '.join(c.value for c in Column)}"
        )


def _discard(items: list, item) -> None:
    if item in items:
        items.remove(item)
