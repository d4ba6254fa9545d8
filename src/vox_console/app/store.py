"""Persistence interface shared by the in-memory and PostgreSQL backends.

The console only needs a handful of table-level operations, so every
backend speaks in plain row dicts and publishes a ChangeEvent after each
committed write. Record models are validated one level up, by the
services that own each table.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from .models import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]

# Writable columns per table; id/created_at/updated_at are store-managed.
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "agents": (
        "project_id",
        "name",
        "role",
        "avatar",
        "status",
        "tokens_used",
        "system_prompt",
    ),
    "artifacts": (
        "project_id",
        "conversation_id",
        "title",
        "content",
        "content_type",
        "version",
    ),
    "conversations": ("project_id", "title"),
    "messages": ("conversation_id", "role", "content", "agent_id", "tool_calls"),
    "plan_steps": ("message_id", "label", "status", "agent_id", "order_index"),
    "tasks": (
        "project_id",
        "conversation_id",
        "title",
        "description",
        "status",
        "assignee",
        "order_index",
        "parent_task_id",
    ),
    "tools": (
        "project_id",
        "name",
        "description",
        "icon",
        "category",
        "is_enabled",
        "requires_api_key",
        "api_key_env_name",
        "status",
        "config",
    ),
}

COLUMN_DEFAULTS: dict[str, dict[str, Any]] = {
    "agents": {"status": "idle", "tokens_used": 0},
    "artifacts": {"content_type": "markdown", "version": 1},
    "plan_steps": {"status": "pending", "order_index": 0},
    "tasks": {"status": "pending", "assignee": "vox", "order_index": 0},
    "tools": {
        "icon": "wrench",
        "is_enabled": True,
        "requires_api_key": False,
        "status": "ready",
    },
}

JSON_COLUMNS: dict[str, frozenset[str]] = {
    "messages": frozenset({"tool_calls"}),
    "tools": frozenset({"config"}),
}

MANAGED_COLUMNS = ("id", "created_at", "updated_at")


class StoreError(RuntimeError):
    """A backend rejected a read or write."""


class Store(Protocol):
    def migrate(self) -> None: ...

    def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    def update_by_id(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]: ...

    def delete_by_id(self, table: str, row_id: str) -> None: ...

    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]: ...

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]: ...


class ChangeFeed:
    """Fan-out of committed writes to per-table subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        require_table(table)
        self._subscribers[table].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[table]:
                self._subscribers[table].remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers.get(event.table, ())):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "change_feed event=subscriber_failed table=%s type=%s",
                    event.table,
                    event.event_type,
                )


def require_table(table: str) -> tuple[str, ...]:
    columns = TABLE_COLUMNS.get(table)
    if columns is None:
        raise StoreError(f"Unknown table: {table}")
    return columns


def require_columns(table: str, names: Any) -> None:
    allowed = set(require_table(table)) | set(MANAGED_COLUMNS)
    unknown = sorted(set(names) - allowed)
    if unknown:
        raise StoreError(f"Unknown column(s) for {table}: {', '.join(unknown)}")


def prepare_row(table: str, row: dict[str, Any], *, now: datetime) -> dict[str, Any]:
    """Return a full row: defaults applied and store-managed columns filled."""
    columns = require_table(table)
    require_columns(table, row)
    prepared: dict[str, Any] = {
        "id": str(row.get("id") or uuid.uuid4()),
        "created_at": now,
        "updated_at": now,
    }
    defaults = COLUMN_DEFAULTS.get(table, {})
    for column in columns:
        if column in row:
            prepared[column] = row[column]
        else:
            prepared[column] = defaults.get(column)
    return prepared


def row_matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(key) == value for key, value in filters.items())
