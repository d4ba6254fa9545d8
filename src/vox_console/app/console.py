"""Operator console: routes typed commands and wires every panel to one store."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .agents import AgentDirectory
from .artifacts import ArtifactShelf
from .messages import MessageLog
from .models import ChatTurn, PlanStep, Task, TaskDraft
from .realtime import LiveCollection
from .session import Notifier, SessionResult, StreamingSession
from .settings import Settings
from .store import Store, StoreError
from .tasks import TaskMaterializer, parse_direct_task
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


class ConsoleSink(Protocol):
    """Render target for one streamed reply."""

    def on_delta(self, text: str) -> None: ...

    def on_plan(self, steps: list[PlanStep]) -> None: ...

    def on_tasks(self, drafts: list[TaskDraft]) -> None: ...

    def on_done(self, content: str) -> None: ...


@dataclass(frozen=True)
class ConsoleEvent:
    type: str
    data: Any

    def to_sse(self) -> str:
        return f"data: {json.dumps({'type': self.type, 'data': self.data})}\n\n"


class QueueSink:
    """Pushes sink callbacks onto an asyncio queue as ConsoleEvents."""

    def __init__(self, queue: asyncio.Queue[ConsoleEvent | None]) -> None:
        self._queue = queue

    def on_delta(self, text: str) -> None:
        self._queue.put_nowait(ConsoleEvent("delta", text))

    def on_plan(self, steps: list[PlanStep]) -> None:
        self._queue.put_nowait(ConsoleEvent("plan", [step.model_dump() for step in steps]))

    def on_tasks(self, drafts: list[TaskDraft]) -> None:
        self._queue.put_nowait(ConsoleEvent("tasks", [draft.model_dump() for draft in drafts]))

    def on_done(self, content: str) -> None:
        self._queue.put_nowait(ConsoleEvent("done", content))


class OperatorConsole:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        notifier: Notifier | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.agents = AgentDirectory(store, project_id=settings.project_id)
        self.messages = MessageLog(store, self.agents, conversation_id=settings.conversation_id)
        self.tasks = TaskMaterializer(
            store,
            conversation_id=settings.conversation_id,
            project_id=settings.project_id,
        )
        self.artifacts = ArtifactShelf(
            store,
            project_id=settings.project_id,
            conversation_id=settings.conversation_id,
        )
        self.tools = ToolRegistry(store, project_id=settings.project_id)
        self.task_board = LiveCollection(
            store,
            "tasks",
            filters={"conversation_id": settings.conversation_id},
            order_by="order_index",
        )
        self.session = StreamingSession(
            url=settings.orchestrator_url,
            messages=self.messages,
            materializer=self.tasks,
            api_key=settings.orchestrator_api_key,
            notifier=notifier,
            client=client,
            timeout_s=settings.request_timeout_s,
            history=self._load_history(),
        )

    @property
    def busy(self) -> bool:
        return self.session.busy

    async def submit(
        self, text: str, sink: ConsoleSink | None = None
    ) -> Task | SessionResult | None:
        """Handle one typed command; ``Task: ...`` never reaches the orchestrator."""
        command = text.strip()
        if not command or self.session.busy:
            return None

        title = parse_direct_task(command)
        if title is not None:
            return self.tasks.add_task(title, assignee="human")

        try:
            self.messages.add_message("user", command)
        except StoreError:
            logger.exception("console event=user_message_persist_failed")

        return await self.session.submit(
            command,
            on_delta=sink.on_delta if sink else None,
            on_plan=sink.on_plan if sink else None,
            on_tasks=sink.on_tasks if sink else None,
            on_done=sink.on_done if sink else None,
        )

    async def stream_events(self, text: str) -> AsyncIterator[ConsoleEvent]:
        """Run ``submit`` and yield its sink callbacks as they happen."""
        queue: asyncio.Queue[ConsoleEvent | None] = asyncio.Queue()

        async def run() -> None:
            try:
                outcome = await self.submit(text, QueueSink(queue))
                if isinstance(outcome, Task):
                    queue.put_nowait(ConsoleEvent("task", outcome.model_dump(mode="json")))
                elif isinstance(outcome, SessionResult) and outcome.failed:
                    queue.put_nowait(
                        ConsoleEvent(
                            "error",
                            {"category": outcome.category, "message": outcome.content},
                        )
                    )
            finally:
                queue.put_nowait(None)

        runner = asyncio.create_task(run())
        while (event := await queue.get()) is not None:
            yield event
        await runner

    def close(self) -> None:
        self.task_board.close()
        self.artifacts.close()

    def _load_history(self) -> list[ChatTurn]:
        history: list[ChatTurn] = []
        for message in self.messages.history():
            if message.role == "user":
                history.append(ChatTurn(role="user", content=message.content))
            elif message.role == "orchestrator":
                history.append(ChatTurn(role="assistant", content=message.content))
        return history
