"""Reconcile local row copies with pushes from a store change feed."""

from __future__ import annotations

import logging
from typing import Any

from .models import ChangeEvent
from .store import Store, row_matches

logger = logging.getLogger(__name__)


def apply_remote_change(
    local_rows: list[dict[str, Any]], change: ChangeEvent
) -> list[dict[str, Any]]:
    """Return a new row list with one change merged in; last writer wins by id."""
    if change.event_type == "DELETE":
        removed_id = (change.old or {}).get("id")
        return [row for row in local_rows if row.get("id") != removed_id]

    incoming = change.new or {}
    incoming_id = incoming.get("id")
    if incoming_id is None:
        return list(local_rows)

    merged: list[dict[str, Any]] = []
    replaced = False
    for row in local_rows:
        if row.get("id") == incoming_id:
            merged.append(dict(incoming))
            replaced = True
        else:
            merged.append(row)
    if not replaced:
        merged.append(dict(incoming))
    return merged


class LiveCollection:
    """A table snapshot kept current by subscribing to the store's change feed."""

    def __init__(
        self,
        store: Store,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> None:
        self.table = table
        self._filters = dict(filters or {})
        self._order_by = order_by
        self._descending = descending
        self._rows = store.select(
            table, filters=self._filters, order_by=order_by, descending=descending
        )
        self._unsubscribe = store.subscribe(table, self.apply)

    @property
    def rows(self) -> list[dict[str, Any]]:
        return list(self._rows)

    def apply(self, change: ChangeEvent) -> None:
        if change.event_type != "DELETE" and not row_matches(change.new or {}, self._filters):
            # A row updated out of the filter leaves the collection.
            moved_id = (change.new or {}).get("id")
            self._rows = [row for row in self._rows if row.get("id") != moved_id]
            return
        self._rows = apply_remote_change(self._rows, change)
        if self._order_by is not None:
            key = self._order_by
            self._rows.sort(
                key=lambda row: (row.get(key) is not None, row.get(key)),
                reverse=self._descending,
            )
        logger.debug(
            "live_collection event=applied table=%s type=%s size=%d",
            self.table,
            change.event_type,
            len(self._rows),
        )

    def close(self) -> None:
        self._unsubscribe()
