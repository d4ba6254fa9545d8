from __future__ import annotations

import asyncio
import json
import logging

import httpx

from vox_console.app.models import ChatTurn
from vox_console.app.session import STREAM_INTERRUPTED_MESSAGE, SessionState
from vox_console.app.store import StoreError

PLAN_DELTAS = [
    "On it. ",
    '{"plan": [{"label": "Research", "agent": "Atl',
    'as"}, {"label": "Review", "agent": "Ghost"}]}',
    " Starting now.",
]


class Recorder:
    def __init__(self) -> None:
        self.deltas: list[str] = []
        self.plans: list[list] = []
        self.tasks: list[list] = []
        self.done: list[str] = []

    def callbacks(self) -> dict:
        return {
            "on_delta": self.deltas.append,
            "on_plan": self.plans.append,
            "on_tasks": self.tasks.append,
            "on_done": self.done.append,
        }


async def test_plan_reply_persists_one_message_and_one_step_batch(
    make_session, store, agents, stream_response
) -> None:
    session = make_session(lambda _request: stream_response(PLAN_DELTAS))
    recorder = Recorder()

    result = await session.submit("Launch the site", **recorder.callbacks())

    content = "".join(PLAN_DELTAS)
    assert result is not None and not result.failed
    assert result.content == content
    assert "".join(recorder.deltas) == content
    assert recorder.done == [content]
    assert len(recorder.plans) == 1
    assert [step.label for step in recorder.plans[0]] == ["Research", "Review"]
    assert session.state is SessionState.IDLE

    message_writes = store.writes("messages")
    assert [op for op, _ in message_writes] == ["insert_one"]
    assert message_writes[0][1]["role"] == "orchestrator"
    assert message_writes[0][1]["content"] == content

    step_writes = store.writes("plan_steps")
    assert [op for op, _ in step_writes] == ["insert_many"]
    rows = step_writes[0][1]
    atlas = agents.find_by_name("Atlas")
    assert [row["order_index"] for row in rows] == [0, 1]
    assert [row["agent_id"] for row in rows] == [atlas.id, None]
    assert {row["status"] for row in rows} == {"pending"}


async def test_tasks_reply_is_materialized(make_session, materializer, stream_response) -> None:
    payload = {
        "tasks": [
            {"title": "Research pricing", "assignee": "vox"},
            {"title": "Approve price", "assignee": "human"},
        ]
    }
    deltas = ["Breaking it down:\n", json.dumps(payload)[:20], json.dumps(payload)[20:]]
    session = make_session(lambda _request: stream_response(deltas))
    recorder = Recorder()

    result = await session.submit("Price the product", **recorder.callbacks())

    assert result is not None and result.block is not None
    assert result.block.kind == "tasks"
    assert len(recorder.tasks) == 1
    assert recorder.plans == []
    tasks = materializer.list_tasks()
    assert [(task.title, task.status, task.order_index) for task in tasks] == [
        ("Research pricing", "pending", 0),
        ("Approve price", "blocked", 1),
    ]


async def test_rate_limited_response_notifies_and_streams_nothing(
    make_session, notifier, store
) -> None:
    session = make_session(lambda _request: httpx.Response(429, json={"error": "slow down"}))
    recorder = Recorder()

    result = await session.submit("hello", **recorder.callbacks())

    assert result is not None and result.failed
    assert result.category == "rate_limited"
    assert recorder.deltas == []
    assert [n.title for n in notifier.notifications] == ["Rate Limited"]
    assert notifier.notifications[0].description == (
        "Too many requests. Please wait a moment and try again."
    )
    assert store.writes("messages") == []
    assert session.state is SessionState.IDLE
    assert session.busy is False


async def test_payment_required_response_asks_for_credits(make_session, notifier) -> None:
    session = make_session(lambda _request: httpx.Response(402))

    result = await session.submit("hello")

    assert result is not None
    assert result.category == "credits_required"
    assert notifier.notifications[0].title == "Credits Required"


async def test_other_error_uses_server_message_or_fallback(
    make_session, notifier, messages
) -> None:
    session = make_session(lambda _request: httpx.Response(500, json={"error": "model exploded"}))

    result = await session.submit("hello")

    assert result is not None and result.failed
    assert result.content == "model exploded"
    assert notifier.notifications[0].title == "Error"
    assert messages.local[-1].content == "model exploded"

    fallback = make_session(lambda _request: httpx.Response(503, text="<html>down</html>"))
    result = await fallback.submit("hello")

    assert result is not None
    assert result.content == "Failed to connect to orchestrator"


async def test_connection_error_fails_and_returns_to_idle(make_session, notifier) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    session = make_session(handler)
    recorder = Recorder()

    result = await session.submit("hello", **recorder.callbacks())

    assert result is not None and result.failed
    assert result.content == "Failed to connect to orchestrator"
    assert recorder.done == ["Failed to connect to orchestrator"]
    assert session.state is SessionState.IDLE


async def test_mid_stream_failure_keeps_partial_reply(
    make_session, store, messages, sse_body
) -> None:
    async def body():
        yield sse_body(["Partial "], done=False).encode("utf-8")
        raise httpx.ReadError("connection reset")

    session = make_session(lambda _request: httpx.Response(200, content=body()))
    recorder = Recorder()

    result = await session.submit("hello", **recorder.callbacks())

    assert result is not None and result.failed
    assert recorder.deltas == ["Partial "]
    assert recorder.done == [STREAM_INTERRUPTED_MESSAGE]
    assert [message.content for message in messages.local] == [
        "hello",
        "Partial ",
        STREAM_INTERRUPTED_MESSAGE,
    ]
    assert store.writes("messages") == []
    assert session.state is SessionState.IDLE


async def test_submit_while_streaming_is_ignored(make_session, sse_body) -> None:
    release = asyncio.Event()
    started = asyncio.Event()
    requests: list[httpx.Request] = []

    async def body():
        yield sse_body(["first "], done=False).encode("utf-8")
        await release.wait()
        yield sse_body(["second"]).encode("utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=body())

    session = make_session(handler)
    running = asyncio.create_task(session.submit("one", on_delta=lambda _delta: started.set()))
    await started.wait()

    assert session.state is SessionState.STREAMING
    assert await session.submit("two") is None
    assert session.buffer == "first "

    release.set()
    result = await running

    assert result is not None
    assert result.content == "first second"
    assert len(requests) == 1
    assert session.busy is False


async def test_empty_input_sends_nothing(make_session, stream_response) -> None:
    requests: list[httpx.Request] = []
    session = make_session(lambda request: requests.append(request) or stream_response([]))

    assert await session.submit("   ") is None
    assert requests == []


async def test_history_and_auth_header_are_sent(make_session, stream_response) -> None:
    bodies: list[dict] = []
    headers: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        headers.append(request.headers.get("authorization"))
        return stream_response(["reply"])

    session = make_session(handler, history=[ChatTurn(role="user", content="earlier")])

    await session.submit("first")
    await session.submit("second")

    assert headers == ["Bearer test-key", "Bearer test-key"]
    assert bodies[0]["messages"] == [
        {"role": "user", "content": "earlier"},
        {"role": "user", "content": "first"},
    ]
    assert bodies[1]["messages"][-3:] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]


async def test_persistence_failure_is_logged_not_raised(
    make_session, store, caplog, stream_response
) -> None:
    def broken_insert(table, rows):
        raise StoreError(f"{table} unavailable")

    store.insert_one = broken_insert
    store.insert_many = broken_insert
    session = make_session(lambda _request: stream_response(["still shown"]))

    with caplog.at_level(logging.ERROR):
        result = await session.submit("hello")

    assert result is not None and not result.failed
    assert result.content == "still shown"
    assert result.message is None
    assert "session event=persist_failed" in caplog.text


async def test_persisted_reply_belongs_to_the_conversation(
    make_session, messages, stream_response
) -> None:
    session = make_session(lambda _request: stream_response(["hi there"]))

    result = await session.submit("hello")

    assert result is not None and result.message is not None
    history = messages.history()
    assert [(m.role, m.content) for m in history] == [("orchestrator", "hi there")]
    assert history[0].id == result.message.id
    assert history[0].persisted is True


async def test_unreadable_task_board_does_not_break_the_reply(
    make_session, store, caplog, stream_response
) -> None:
    reply = 'Done. {"tasks": [{"title": "Follow up", "assignee": "vox"}]}'
    original_select = store.select

    def select(table, **kwargs):
        if table == "tasks":
            raise StoreError("tasks unavailable")
        return original_select(table, **kwargs)

    store.select = select
    session = make_session(lambda _request: stream_response([reply]))

    with caplog.at_level(logging.ERROR):
        result = await session.submit("Plan the follow-up")

    assert result is not None and not result.failed
    assert result.content == reply
    assert result.block is not None and result.block.kind == "tasks"
    assert store.writes("tasks") == []
    assert "tasks event=batch_insert_failed" in caplog.text
    assert session.state is SessionState.IDLE
