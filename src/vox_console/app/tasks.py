"""Task materialization and task-board transitions."""

from __future__ import annotations

import logging
import re

from .models import Assignee, Task, TaskDraft, TaskStatus
from .store import Store, StoreError

logger = logging.getLogger(__name__)

DIRECT_TASK_PATTERN = re.compile(r"^task:\s*(.+)", re.IGNORECASE | re.DOTALL)


def default_status(assignee: Assignee) -> TaskStatus:
    """Human-owned tasks block the automated side; everything else starts pending."""
    return "blocked" if assignee == "human" else "pending"


def parse_direct_task(text: str) -> str | None:
    """Return the title from a ``Task: <title>`` shorthand, else None."""
    match = DIRECT_TASK_PATTERN.match(text.strip())
    if match is None:
        return None
    title = match.group(1).strip()
    return title or None


class TaskMaterializer:
    """Creates and transitions persisted tasks for one conversation."""

    def __init__(
        self,
        store: Store,
        *,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> None:
        self._store = store
        self.conversation_id = conversation_id
        self.project_id = project_id

    def list_tasks(self) -> list[Task]:
        rows = self._store.select("tasks", filters=self._scope(), order_by="order_index")
        return [Task.model_validate(row) for row in rows]

    def materialize(self, drafts: list[TaskDraft]) -> list[Task] | None:
        """Persist drafts as one batch; returns None when the batch is rejected."""
        if not drafts:
            return []
        try:
            start_index = len(self._store.select("tasks", filters=self._scope()))
            rows = [
                self._row(draft, order_index=start_index + offset)
                for offset, draft in enumerate(drafts)
            ]
            inserted = self._store.insert_many("tasks", rows)
        except StoreError:
            logger.exception(
                "tasks event=batch_insert_failed conversation_id=%s count=%d",
                self.conversation_id,
                len(drafts),
            )
            return None
        logger.info(
            "tasks event=materialized conversation_id=%s count=%d start_index=%d",
            self.conversation_id,
            len(inserted),
            start_index,
        )
        return [Task.model_validate(row) for row in inserted]

    def add_task(
        self,
        title: str,
        description: str | None = None,
        assignee: Assignee = "vox",
    ) -> Task:
        """Direct single-task path; no orchestrator round trip."""
        order_index = len(self._store.select("tasks", filters=self._scope()))
        row = self._store.insert_one(
            "tasks",
            self._row(
                TaskDraft(title=title, description=description, assignee=assignee),
                order_index=order_index,
            ),
        )
        logger.info("tasks event=added task_id=%s assignee=%s", row["id"], assignee)
        return Task.model_validate(row)

    def update_status(self, task_id: str, status: TaskStatus) -> Task:
        return Task.model_validate(self._store.update_by_id("tasks", task_id, {"status": status}))

    def update_assignee(self, task_id: str, assignee: Assignee) -> Task:
        row = self._store.update_by_id(
            "tasks",
            task_id,
            {"assignee": assignee, "status": default_status(assignee)},
        )
        return Task.model_validate(row)

    def delete(self, task_id: str) -> None:
        self._store.delete_by_id("tasks", task_id)

    def progress(self) -> tuple[int, int, Task | None]:
        tasks = self.list_tasks()
        completed = sum(1 for task in tasks if task.status == "completed")
        in_progress = next((task for task in tasks if task.status == "in_progress"), None)
        return completed, len(tasks), in_progress

    def _row(self, draft: TaskDraft, *, order_index: int) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "conversation_id": self.conversation_id,
            "title": draft.title,
            "description": draft.description,
            "assignee": draft.assignee,
            "status": default_status(draft.assignee),
            "order_index": order_index,
        }

    def _scope(self) -> dict[str, str]:
        return {"conversation_id": self.conversation_id} if self.conversation_id else {}
