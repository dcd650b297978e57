from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConflictError, NotFoundError, SchemaError
from .models import PLAYERS, ROOMS, ChangeEvent, ChangeKind

LOGGER = logging.getLogger("table_store")

# child table -> (column, parent table). Deleting the parent cascades.
FOREIGN_KEYS: Dict[str, Tuple[str, str]] = {PLAYERS: ("room_id", ROOMS)}

# MemoryStore stands in for the shared row store: JSON-typed rows, a version
# counter per row, and a change feed filtered by a column predicate.


@dataclass
class Subscription:
    id: str
    table: str
    column: str
    value: Any
    queue: "asyncio.Queue[Optional[ChangeEvent]]" = field(default_factory=asyncio.Queue)
    closed: bool = False

    def matches(self, event: ChangeEvent) -> bool:
        return event.table == self.table and str(event.row.get(self.column)) == str(self.value)

    def push(self, event: ChangeEvent) -> None:
        if not self.closed:
            self.queue.put_nowait(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def next_event(self) -> Optional[ChangeEvent]:
        return await self.queue.get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class MemoryStore:
    """In-process row store for the ``rooms`` and ``players`` tables."""

    def __init__(self, tables: Tuple[str, ...] = (ROOMS, PLAYERS)) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in tables}
        self.subscriptions: Dict[str, Subscription] = {}
        self.lock = asyncio.Lock()

    # Reads -----------------------------------------------------------

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = self._table(table)
        row = rows.get(str(row_id))
        return copy.deepcopy(row) if row is not None else None

    async def select(self, table: str, column: Optional[str] = None, value: Any = None) -> List[Dict[str, Any]]:
        rows = self._table(table)
        return [
            copy.deepcopy(row)
            for row in rows.values()
            if column is None or str(row.get(column)) == str(value)
        ]

    # Writes ----------------------------------------------------------

    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.lock:
            rows = self._table(table)
            row = copy.deepcopy(values)
            row_id = str(row.get("id") or uuid.uuid4())
            if row_id in rows:
                raise ConflictError(f'duplicate key value violates unique constraint "{table}_pkey"')
            self._check_foreign_key(table, row)
            row["id"] = row_id
            row["created_at"] = row.get("created_at") or self._now_ts()
            row["version"] = 1
            rows[row_id] = row
            self._publish(ChangeEvent(table, ChangeKind.INSERT, row_id, copy.deepcopy(row), 1))
        LOGGER.debug("Inserted %s/%s", table, row_id)
        return copy.deepcopy(row)

    async def update(
        self,
        table: str,
        row_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Apply a partial update; with ``expected_version`` it becomes a compare-and-swap."""
        async with self.lock:
            rows = self._table(table)
            row = rows.get(str(row_id))
            if row is None:
                raise NotFoundError(f"{table} row {row_id} not found")
            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(
                    f"{table} row {row_id} is at version {row['version']}, expected {expected_version}"
                )
            for key, value in changes.items():
                if key in ("id", "version", "created_at"):
                    continue
                row[key] = copy.deepcopy(value)
            self._check_foreign_key(table, row)
            row["version"] += 1
            self._publish(ChangeEvent(table, ChangeKind.UPDATE, row["id"], copy.deepcopy(row), row["version"]))
        return copy.deepcopy(row)

    async def delete(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        async with self.lock:
            self._table(table)
            return self._delete_locked(table, str(row_id))

    def _delete_locked(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        row = self.tables[table].pop(row_id, None)
        if row is None:
            return None
        for child, (column, parent) in FOREIGN_KEYS.items():
            if parent != table or child not in self.tables:
                continue
            orphans = [key for key, item in self.tables[child].items() if str(item.get(column)) == row_id]
            for key in orphans:
                self._delete_locked(child, key)
        # Deletes carry the next version so they outrank any update already delivered.
        self._publish(ChangeEvent(table, ChangeKind.DELETE, row_id, row, row["version"] + 1))
        LOGGER.debug("Deleted %s/%s", table, row_id)
        return row

    # Change feed -----------------------------------------------------

    async def subscribe(self, table: str, column: str, value: Any) -> Subscription:
        self._table(table)
        subscription = Subscription(id=uuid.uuid4().hex, table=table, column=column, value=value)
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.id, None)
        subscription.close()

    def _publish(self, event: ChangeEvent) -> None:
        for subscription in list(self.subscriptions.values()):
            if subscription.matches(event):
                subscription.push(event)

    # Helpers ---------------------------------------------------------

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        rows = self.tables.get(table)
        if rows is None:
            raise SchemaError(f'relation "{table}" does not exist')
        return rows

    def _check_foreign_key(self, table: str, row: Dict[str, Any]) -> None:
        if table not in FOREIGN_KEYS:
            return
        column, parent = FOREIGN_KEYS[table]
        if str(row.get(column)) not in self._table(parent):
            raise NotFoundError(f"{parent} row {row.get(column)} not found")

    def _now_ts(self) -> str:
        return datetime.now(timezone.utc).isoformat()
