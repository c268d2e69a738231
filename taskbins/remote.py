"""
HTTP record store: talks to the board server's JSON API.

The server has no push channel, so the snapshot feed is driven by polling.
A snapshot is delivered right after subscribing, after each of our own
writes, and whenever a poll sees something different from the last delivery.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import requests

from .store import (
    NotFound,
    RecordStore,
    Snapshot,
    SnapshotCallback,
    StoreUnavailable,
    Unsubscribe,
    check_sort_key,
    clean_fields,
)

logger = logging.getLogger(__name__)


class HttpRecordStore(RecordStore):
    """Record store backed by `/api/users/<user_id>/tasks` on a board server."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        api_key: Optional[str] = None,
        poll_interval: float = 1.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["X-API-Key"] = api_key
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def collection_url(self) -> str:
        return f"{self.base_url}/api/users/{self.user_id}/tasks"

    # ──────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────

    def _request(self, method: str, url: str, record_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        """Blocking request; maps transport and status failures to store errors."""
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StoreUnavailable(f"{method} {url}: {e}") from e

        if r.status_code == 404 and record_id is not None:
            raise NotFound(_error_id(r, record_id))
        if not r.ok:
            raise StoreUnavailable(f"{method} {url}: HTTP {r.status_code} {_error_text(r)}")
        try:
            return r.json()
        except ValueError as e:
            raise StoreUnavailable(f"{method} {url}: invalid JSON response") from e

    async def _call(self, method: str, url: str, record_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, url, record_id, **kwargs)

    # ──────────────────────────────────────────
    # Adapter surface
    # ──────────────────────────────────────────

    async def create(self, fields: Dict[str, Any]) -> str:
        data = await self._call("POST", self.collection_url, json=clean_fields(fields, creating=True))
        self._changed()
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise StoreUnavailable(f"POST {self.collection_url}: reply has no record id")
        return data["id"]

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        await self._call(
            "PATCH", f"{self.collection_url}/{record_id}", record_id, json=clean_fields(fields)
        )
        self._changed()

    async def delete(self, record_id: str) -> None:
        await self._call("DELETE", f"{self.collection_url}/{record_id}")
        self._changed()

    async def batch_update(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        body = [
            {"id": record_id, "fields": clean_fields(fields)}
            for record_id, fields in updates
        ]
        if not body:
            return
        # Any id will do for a 404; the server names the missing one.
        await self._call(
            "POST", f"{self.collection_url}/batch", body[0]["id"], json={"updates": body}
        )
        self._changed()

    async def _fetch_snapshot(self, order_by: str) -> Snapshot:
        data = await self._call(
            "GET", self.collection_url, params={"order_by": check_sort_key(order_by)}
        )
        tasks = data.get("tasks", []) if isinstance(data, dict) else None
        if not isinstance(tasks, list):
            raise StoreUnavailable(f"GET {self.collection_url}: unexpected reply shape")
        return [r for r in tasks if isinstance(r, dict)]

    # ──────────────────────────────────────────
    # Polling
    # ──────────────────────────────────────────

    def subscribe(self, on_snapshot: SnapshotCallback, order_by: str = "order") -> Unsubscribe:
        unsubscribe = super().subscribe(on_snapshot, order_by)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = self._spawn(self._poll_loop())
        return unsubscribe

    async def _poll_loop(self) -> None:
        logger.info(f"Polling {self.collection_url} every {self.poll_interval}s")
        while self._subscriptions:
            await asyncio.sleep(self.poll_interval)
            await self._publish(changed_only=True)
        logger.info("Polling stopped: no subscribers")


def _error_text(r: requests.Response) -> str:
    try:
        return str(r.json().get("error", ""))
    except ValueError:
        return r.text[:200]


def _error_id(r: requests.Response, default: str) -> str:
    try:
        return str(r.json().get("id") or default)
    except ValueError:
        return default
