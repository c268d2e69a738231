"""In-memory RecordStore used by engine tests."""
import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple

from taskbins.schema import utc_now
from taskbins.store import NotFound, RecordStore, SORT_KEYS, Snapshot, clean_fields


class FakeRecordStore(RecordStore):
    """
    Deterministic store for unit tests.

    - Records every mutation in `calls` for assertions
    - `fail_with` makes the next mutations raise the given exception
    - Snapshots flow through the real RecordStore feed
    """

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self._ids = itertools.count(1)
        for record in records or []:
            self.records[record["id"]] = dict(record)

    def _check_failure(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create(self, fields: Dict[str, Any]) -> str:
        self.calls.append(("create", dict(fields)))
        self._check_failure()
        record_id = f"new-{next(self._ids)}"
        record = clean_fields(fields, creating=True)
        record.update(id=record_id, createdAt=utc_now())
        self.records[record_id] = record
        self._changed()
        return record_id

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        self.calls.append(("update", (record_id, dict(fields))))
        self._check_failure()
        if record_id not in self.records:
            raise NotFound(record_id)
        self.records[record_id].update(clean_fields(fields))
        self._changed()

    async def delete(self, record_id: str) -> None:
        self.calls.append(("delete", record_id))
        self._check_failure()
        if self.records.pop(record_id, None) is not None:
            self._changed()

    async def batch_update(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        self.calls.append(("batch_update", [(i, dict(f)) for i, f in updates]))
        self._check_failure()
        for record_id, _ in updates:
            if record_id not in self.records:
                raise NotFound(record_id)
        for record_id, fields in updates:
            self.records[record_id].update(clean_fields(fields))
        self._changed()

    async def _fetch_snapshot(self, order_by: str) -> Snapshot:
        assert order_by in SORT_KEYS
        return sorted(
            (dict(r) for r in self.records.values()),
            key=lambda r: (r.get(order_by, 0), r["id"]),
        )

    def mutations(self, kind: str) -> List[Any]:
        return [args for name, args in self.calls if name == kind]


def record(record_id: str, status: str, order, title: str = None, note: str = "") -> dict:
    """Raw snapshot record."""
    return {
        "id": record_id,
        "title": title or f"Task {record_id}",
        "note": note,
        "status": status,
        "order": order,
        "createdAt": "2026-01-01T00:00:00+00:00",
    }


async def settle(engine) -> None:
    """Let in-flight mutations land and their snapshots reach the replica."""
    await engine.wait_idle()
    await engine.store.flush()
