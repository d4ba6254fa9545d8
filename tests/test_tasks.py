from __future__ import annotations

import logging

import pytest

from vox_console.app.models import TaskDraft
from vox_console.app.store import StoreError
from vox_console.app.tasks import TaskMaterializer, default_status, parse_direct_task


def test_default_status_blocks_human_work() -> None:
    assert default_status("human") == "blocked"
    assert default_status("vox") == "pending"


def test_materialize_continues_order_from_existing_count(materializer, store) -> None:
    for title in ("One", "Two", "Three"):
        materializer.add_task(title)

    created = materializer.materialize(
        [
            TaskDraft(title="Confirm budget", assignee="human"),
            TaskDraft(title="Draft outline", description="Two pages", assignee="vox"),
        ]
    )

    assert created is not None
    assert [(t.order_index, t.status, t.assignee) for t in created] == [
        (3, "blocked", "human"),
        (4, "pending", "vox"),
    ]
    assert [op for op, _ in store.writes("tasks")][-1] == "insert_many"
    assert [task.title for task in materializer.list_tasks()] == [
        "One",
        "Two",
        "Three",
        "Confirm budget",
        "Draft outline",
    ]


def test_order_index_only_counts_this_conversation(store) -> None:
    other = TaskMaterializer(store, conversation_id="other")
    other.add_task("Elsewhere")
    mine = TaskMaterializer(store, conversation_id="mine")

    created = mine.materialize([TaskDraft(title="First here")])

    assert created is not None
    assert created[0].order_index == 0


def test_materialize_empty_batch_writes_nothing(materializer, store) -> None:
    assert materializer.materialize([]) == []
    assert store.writes("tasks") == []


def test_rejected_batch_returns_none_and_logs(materializer, store, caplog) -> None:
    def broken_insert(table, rows):
        raise StoreError("tasks table is read-only")

    store.insert_many = broken_insert

    with caplog.at_level(logging.ERROR):
        created = materializer.materialize([TaskDraft(title="Never stored")])

    assert created is None
    assert materializer.list_tasks() == []
    assert "tasks event=batch_insert_failed" in caplog.text


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Task: Book the venue", "Book the venue"),
        ("task:   renew domain  ", "renew domain"),
        ("TASK:Call the bank", "Call the bank"),
        ("Task:", None),
        ("Task:    ", None),
        ("Please add a task: nope", None),
        ("Build me a landing page", None),
    ],
)
def test_parse_direct_task(text: str, expected: str | None) -> None:
    assert parse_direct_task(text) == expected


def test_reassigning_resets_status(materializer) -> None:
    task = materializer.add_task("Sign the contract", assignee="human")
    assert task.status == "blocked"

    moved = materializer.update_assignee(task.id, "vox")
    assert (moved.assignee, moved.status) == ("vox", "pending")

    back = materializer.update_assignee(task.id, "human")
    assert (back.assignee, back.status) == ("human", "blocked")


def test_progress_counts_completed_and_finds_running_task(materializer) -> None:
    first = materializer.add_task("Research")
    second = materializer.add_task("Write")
    materializer.add_task("Review")

    materializer.update_status(first.id, "completed")
    materializer.update_status(second.id, "in_progress")

    completed, total, running = materializer.progress()
    assert (completed, total) == (1, 3)
    assert running is not None and running.id == second.id


def test_missing_task_raises_key_error(materializer) -> None:
    with pytest.raises(KeyError):
        materializer.update_status("missing", "completed")
    with pytest.raises(KeyError):
        materializer.delete("missing")


def test_unreadable_task_count_returns_none(materializer, store, caplog) -> None:
    def broken_select(table, **kwargs):
        raise StoreError(f"{table} unavailable")

    store.select = broken_select

    with caplog.at_level(logging.ERROR):
        created = materializer.materialize([TaskDraft(title="Never stored")])

    assert created is None
    assert store.writes("tasks") == []
    assert "tasks event=batch_insert_failed" in caplog.text
