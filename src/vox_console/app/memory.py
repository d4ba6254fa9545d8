"""In-memory store backend for tests and local demos."""

from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from .models import ChangeEvent
from .store import (
    ChangeCallback,
    ChangeFeed,
    StoreError,
    prepare_row,
    require_columns,
    require_table,
    row_matches,
)


class InMemoryStore:
    """Dict-backed implementation of the Store protocol."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._feed = ChangeFeed()
        self._last_now: datetime | None = None

    def migrate(self) -> None:
        return None

    def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return self.insert_many(table, [row])[0]

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # Prepare everything first so a bad row leaves the table untouched.
        prepared = [prepare_row(table, row, now=self._now()) for row in rows]
        rows_by_id = self._rows(table)
        for row in prepared:
            if row["id"] in rows_by_id:
                raise StoreError(f"Duplicate id for {table}: {row['id']}")
        for row in prepared:
            rows_by_id[row["id"]] = row
        for row in prepared:
            self._feed.publish(ChangeEvent(table=table, event_type="INSERT", new=copy.deepcopy(row)))
        return [copy.deepcopy(row) for row in prepared]

    def update_by_id(self, table: str, row_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        require_columns(table, changes)
        rows_by_id = self._rows(table)
        current = rows_by_id.get(row_id)
        if current is None:
            raise KeyError(f"{table} row {row_id} does not exist")
        updated = {**current, **changes, "id": row_id, "created_at": current["created_at"]}
        updated["updated_at"] = self._now()
        rows_by_id[row_id] = updated
        self._feed.publish(
            ChangeEvent(
                table=table,
                event_type="UPDATE",
                new=copy.deepcopy(updated),
                old=copy.deepcopy(current),
            )
        )
        return copy.deepcopy(updated)

    def delete_by_id(self, table: str, row_id: str) -> None:
        rows_by_id = self._rows(table)
        removed = rows_by_id.pop(row_id, None)
        if removed is None:
            raise KeyError(f"{table} row {row_id} does not exist")
        self._feed.publish(ChangeEvent(table=table, event_type="DELETE", old=removed))

    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        if filters:
            require_columns(table, filters)
        rows = [
            copy.deepcopy(row) for row in self._rows(table).values() if row_matches(row, filters)
        ]
        if order_by is not None:
            require_columns(table, [order_by])
            rows.sort(key=lambda row: _sort_key(row.get(order_by)), reverse=descending)
        return rows

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        return self._feed.subscribe(table, callback)

    def _rows(self, table: str) -> dict[str, dict[str, Any]]:
        require_table(table)
        return self._tables.setdefault(table, {})

    def _now(self) -> datetime:
        # Strictly increasing so "most recently updated" is never a tie.
        now = datetime.now(UTC)
        if self._last_now is not None and now <= self._last_now:
            now = self._last_now + timedelta(microseconds=1)
        self._last_now = now
        return now


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts first, like NULLS FIRST on an ascending query.
    return (0, 0) if value is None else (1, value)
