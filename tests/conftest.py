"""Shared fixtures for Task Bins tests."""
from pathlib import Path

import pytest
import pytest_asyncio

from taskbins.store import SQLiteRecordStore
from taskbins.sync import SyncEngine

from .fakes import FakeRecordStore, record


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "tasks.db")


@pytest.fixture()
def sqlite_store(db_path: str) -> SQLiteRecordStore:
    return SQLiteRecordStore(db_path, user_id="alice")


@pytest.fixture()
def board_records() -> list:
    """todo: A(0) B(1) C(2); doing: empty; done: D(3)."""
    return [
        record("A", "todo", 0),
        record("B", "todo", 1),
        record("C", "todo", 2),
        record("D", "done", 3),
    ]


@pytest.fixture()
def fake_store(board_records) -> FakeRecordStore:
    return FakeRecordStore(board_records)


@pytest_asyncio.fixture()
async def engine(fake_store: FakeRecordStore):
    """Started engine whose replica already holds the first snapshot."""
    eng = SyncEngine(fake_store)
    eng.start()
    await fake_store.flush()
    yield eng
    eng.close()
    await fake_store.close()

