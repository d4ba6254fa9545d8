"""PostgreSQL store backend for the console tables.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for structured columns (tool configs).
- Row factory: returns query rows as dict-like objects instead of tuples.
- Change feed: subscribers are told about every committed write made
  through this store instance.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from .models import ChangeEvent
from .store import (
    JSON_COLUMNS,
    ChangeCallback,
    ChangeFeed,
    StoreError,
    prepare_row,
    require_columns,
    require_table,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        avatar TEXT,
        status TEXT NOT NULL DEFAULT 'idle',
        tokens_used INTEGER NOT NULL DEFAULT 0,
        system_prompt TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        conversation_id TEXT,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        content_type TEXT NOT NULL DEFAULT 'markdown',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        title TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
        tool_calls JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plan_steps (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        label TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
        order_index INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        conversation_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        assignee TEXT NOT NULL DEFAULT 'vox',
        order_index INTEGER NOT NULL DEFAULT 0,
        parent_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tools (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        icon TEXT NOT NULL DEFAULT 'wrench',
        category TEXT NOT NULL,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        requires_api_key BOOLEAN NOT NULL DEFAULT FALSE,
        api_key_env_name TEXT,
        status TEXT NOT NULL DEFAULT 'ready',
        config JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_plan_steps_message ON plan_steps(message_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_conversation ON tasks(conversation_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_artifacts_updated_at ON artifacts(updated_at DESC)",
)


class PostgresStore:
    """Thread-safe PostgreSQL implementation of the Store protocol."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this store instance.
        self._lock = threading.Lock()
        self._feed = ChangeFeed()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create tables and indexes if they do not already exist."""
        with self._transaction("Migration") as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()

    def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return self.insert_many(table, [row])[0]

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert every row in one transaction; nothing is kept if any row fails."""
        if not rows:
            return []
        now = datetime.now(tz=UTC)
        prepared = [prepare_row(table, row, now=now) for row in rows]
        columns = list(prepared[0])
        statement = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(['%s'] * len(columns))}) RETURNING *"
        )
        inserted: list[dict[str, Any]] = []
        with self._transaction(f"Insert into {table}") as conn:
            try:
                for row in prepared:
                    values = [self._adapt(table, column, row[column]) for column in columns]
                    inserted.append(dict(conn.execute(statement, values).fetchone()))
                conn.commit()
            except self._psycopg.Error as exc:
                conn.rollback()
                raise StoreError(f"Insert into {table} failed: {exc}") from exc
        for row in inserted:
            self._feed.publish(ChangeEvent(table=table, event_type="INSERT", new=row))
        return inserted

    def update_by_id(self, table: str, row_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        require_columns(table, changes)
        writable = {key: value for key, value in changes.items() if key not in ("id", "created_at")}
        writable["updated_at"] = datetime.now(tz=UTC)
        assignments = ", ".join(f"{column} = %s" for column in writable)
        values = [self._adapt(table, column, value) for column, value in writable.items()]
        with self._transaction(f"Update of {table} row {row_id}") as conn:
            try:
                old = conn.execute(f"SELECT * FROM {table} WHERE id = %s", (row_id,)).fetchone()
                if old is None:
                    raise KeyError(f"{table} row {row_id} does not exist")
                new = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = %s RETURNING *",
                    (*values, row_id),
                ).fetchone()
                conn.commit()
            except self._psycopg.Error as exc:
                conn.rollback()
                raise StoreError(f"Update of {table} row {row_id} failed: {exc}") from exc
        self._feed.publish(ChangeEvent(table=table, event_type="UPDATE", new=dict(new), old=dict(old)))
        return dict(new)

    def delete_by_id(self, table: str, row_id: str) -> None:
        require_table(table)
        with self._transaction(f"Delete of {table} row {row_id}") as conn:
            try:
                old = conn.execute(
                    f"DELETE FROM {table} WHERE id = %s RETURNING *", (row_id,)
                ).fetchone()
                conn.commit()
            except self._psycopg.Error as exc:
                conn.rollback()
                raise StoreError(f"Delete of {table} row {row_id} failed: {exc}") from exc
        if old is None:
            raise KeyError(f"{table} row {row_id} does not exist")
        self._feed.publish(ChangeEvent(table=table, event_type="DELETE", old=dict(old)))

    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        require_table(table)
        filters = filters or {}
        require_columns(table, filters)
        statement = f"SELECT * FROM {table}"
        values: list[Any] = []
        if filters:
            clauses = []
            for column, value in filters.items():
                if value is None:
                    clauses.append(f"{column} IS NULL")
                else:
                    clauses.append(f"{column} = %s")
                    values.append(value)
            statement += " WHERE " + " AND ".join(clauses)
        if order_by is not None:
            require_columns(table, [order_by])
            statement += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        with self._transaction(f"Select from {table}") as conn:
            try:
                rows = conn.execute(statement, values).fetchall()
            except self._psycopg.Error as exc:
                raise StoreError(f"Select from {table} failed: {exc}") from exc
        return [dict(row) for row in rows]

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        return self._feed.subscribe(table, callback)

    def _adapt(self, table: str, column: str, value: Any) -> Any:
        if value is not None and column in JSON_COLUMNS.get(table, ()):
            return self._json_wrapper(value)
        return value

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Any]:
        """Hold the store lock around one connection; driver errors become StoreError."""
        with self._lock:
            try:
                with self._connect() as conn:
                    yield conn
            except self._psycopg.Error as exc:
                raise StoreError(f"{action} failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json
