from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from vox_console.app.agents import AgentDirectory
from vox_console.app.memory import InMemoryStore
from vox_console.app.messages import MessageLog
from vox_console.app.models import Notification
from vox_console.app.session import StreamingSession
from vox_console.app.settings import Settings
from vox_console.app.tasks import TaskMaterializer

ORCHESTRATOR_URL = "http://orchestrator.test/orchestrator"
CONVERSATION_ID = "conv-1"
PROJECT_ID = "proj-1"


class RecordingStore(InMemoryStore):
    """In-memory store that remembers every write call it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str, Any]] = []

    def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert_one", table, row))
        return super().insert_many(table, [row])[0]

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.calls.append(("insert_many", table, rows))
        return super().insert_many(table, rows)

    def writes(self, table: str) -> list[tuple[str, Any]]:
        return [(op, payload) for op, name, payload in self.calls if name == table]


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


def _sse_body(deltas: list[str], *, done: bool = True) -> str:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": delta}}]}) + "\n\n"
        for delta in deltas
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def _stream_response(deltas: list[str]) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=_sse_body(deltas).encode("utf-8"),
    )


@pytest.fixture
def sse_body() -> Callable[..., str]:
    return _sse_body


@pytest.fixture
def stream_response() -> Callable[[list[str]], httpx.Response]:
    return _stream_response


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def agents(store: RecordingStore) -> AgentDirectory:
    directory = AgentDirectory(store, project_id=PROJECT_ID)
    directory.seed_defaults()
    return directory


@pytest.fixture
def messages(store: RecordingStore, agents: AgentDirectory) -> MessageLog:
    return MessageLog(store, agents, conversation_id=CONVERSATION_ID)


@pytest.fixture
def materializer(store: RecordingStore) -> TaskMaterializer:
    return TaskMaterializer(store, conversation_id=CONVERSATION_ID, project_id=PROJECT_ID)


@pytest.fixture
def make_session(
    messages: MessageLog,
    materializer: TaskMaterializer,
    notifier: RecordingNotifier,
) -> Callable[..., StreamingSession]:
    def factory(handler: Callable[[httpx.Request], Any], **kwargs: Any) -> StreamingSession:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return StreamingSession(
            url=ORCHESTRATOR_URL,
            messages=messages,
            materializer=materializer,
            notifier=notifier,
            client=client,
            api_key="test-key",
            **kwargs,
        )

    return factory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        project_id=PROJECT_ID,
        conversation_id=CONVERSATION_ID,
        orchestrator_url=ORCHESTRATOR_URL,
        orchestrator_api_key="test-key",
        gateway_url="http://gateway.test/v1/chat/completions",
        gateway_api_key="gateway-key",
    )


@pytest.fixture
def make_client(
    store: RecordingStore, settings: Settings
) -> Callable[..., TestClient]:
    from vox_console.main import create_app

    def factory(
        orchestrator: Callable[[httpx.Request], Any] | None = None,
        gateway: Callable[[httpx.Request], Any] | None = None,
        settings_override: Settings | None = None,
    ) -> TestClient:
        app = create_app(
            store=store,
            settings_override=settings_override or settings,
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(orchestrator or (lambda _r: _stream_response([])))
            ),
            gateway_client=httpx.AsyncClient(
                transport=httpx.MockTransport(gateway or (lambda _r: _stream_response([])))
            ),
        )
        return TestClient(app)

    return factory
