"""One request/response cycle against the orchestration endpoint.

Beginner terms used in this file:
- Delta: a small piece of reply text pushed by the server while streaming.
- Provisional message: a local copy shown to the user before it is saved.
- Notifier: whatever shows a toast to the operator (logs by default).

State machine::

    IDLE -> REQUESTING -> STREAMING -> COMPLETING -> IDLE
                 |             |
                 +--> FAILED <-+--> IDLE

Only one session runs at a time; a submit while busy is ignored.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import httpx

from .extractor import StructuredBlock, StructuredBlockExtractor
from .messages import MessageLog
from .models import (
    ChatTurn,
    ConversationMessage,
    Notification,
    NotificationCategory,
    OrchestratorRequest,
    PlanStep,
    TaskDraft,
)
from .sse import iter_deltas
from .store import StoreError
from .tasks import TaskMaterializer

logger = logging.getLogger(__name__)

STREAM_INTERRUPTED_MESSAGE = (
    "The connection to the orchestrator was interrupted. Please try again."
)

DeltaCallback = Callable[[str], None]
PlanCallback = Callable[[list[PlanStep]], None]
TasksCallback = Callable[[list[TaskDraft]], None]
DoneCallback = Callable[[str], None]


class SessionState(enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETING = "completing"
    FAILED = "failed"


class OrchestratorError(RuntimeError):
    """Transport failure opening or reading the orchestrator stream."""

    def __init__(
        self,
        message: str,
        *,
        category: NotificationCategory = "failed",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    def notify(self, notification: Notification) -> None:
        logger.warning(
            "notification category=%s title=%s description=%s",
            notification.category,
            notification.title,
            notification.description,
        )


@dataclass(frozen=True)
class SessionResult:
    content: str
    block: StructuredBlock | None = None
    message: ConversationMessage | None = None
    failed: bool = False
    category: NotificationCategory | None = None


def notification_for(error: OrchestratorError) -> Notification:
    if error.category == "rate_limited":
        return Notification(
            category="rate_limited",
            title="Rate Limited",
            description="Too many requests. Please wait a moment and try again.",
        )
    if error.category == "credits_required":
        return Notification(
            category="credits_required",
            title="Credits Required",
            description="Please add credits to continue using the orchestrator.",
        )
    return Notification(category="failed", title="Error", description=str(error))


class StreamingSession:
    """Owns the lifecycle, history, and content buffer of one conversation."""

    def __init__(
        self,
        *,
        url: str,
        messages: MessageLog,
        materializer: TaskMaterializer | None = None,
        api_key: str = "",
        notifier: Notifier | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 60.0,
        history: list[ChatTurn] | None = None,
    ) -> None:
        self.url = url
        self._messages = messages
        self._materializer = materializer
        self._api_key = api_key
        self._notifier = notifier or LoggingNotifier()
        self._client = client
        self._timeout_s = timeout_s
        self.history: list[ChatTurn] = list(history or [])
        self.state = SessionState.IDLE
        self._buffer = ""

    @property
    def busy(self) -> bool:
        return self.state is not SessionState.IDLE

    @property
    def buffer(self) -> str:
        return self._buffer

    async def submit(
        self,
        text: str,
        *,
        on_delta: DeltaCallback | None = None,
        on_plan: PlanCallback | None = None,
        on_tasks: TasksCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> SessionResult | None:
        """Run one cycle; returns None when the input is empty or a session is in flight."""
        user_input = text.strip()
        if not user_input:
            return None
        if self.busy:
            logger.info("session event=rejected reason=busy state=%s", self.state.value)
            return None

        self.state = SessionState.REQUESTING
        self._buffer = ""
        try:
            return await self._run(
                user_input,
                on_delta=on_delta,
                on_plan=on_plan,
                on_tasks=on_tasks,
                on_done=on_done,
            )
        finally:
            self.state = SessionState.IDLE

    async def _run(
        self,
        user_input: str,
        *,
        on_delta: DeltaCallback | None,
        on_plan: PlanCallback | None,
        on_tasks: TasksCallback | None,
        on_done: DoneCallback | None,
    ) -> SessionResult:
        user_turn = ChatTurn(role="user", content=user_input)
        self._messages.add_local(_provisional("user", user_input))
        reply = self._messages.add_local(_provisional("orchestrator", ""))
        extractor = StructuredBlockExtractor()
        payload = OrchestratorRequest(messages=[*self.history, user_turn]).model_dump()
        logger.info("session event=start url=%s history=%d", self.url, len(self.history))

        try:
            async with self._open_client() as client:
                async with client.stream(
                    "POST", self.url, json=payload, headers=self._headers()
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise _error_from_response(response)

                    self.state = SessionState.STREAMING
                    async for delta in iter_deltas(response.aiter_text()):
                        self._buffer += delta
                        if on_delta is not None:
                            on_delta(delta)
                        block = extractor.feed(delta)
                        if block is not None:
                            self._announce(block, on_plan=on_plan, on_tasks=on_tasks)
                        self._messages.update_local(
                            reply.id,
                            content=self._buffer,
                            plan=extractor.block.steps if extractor.block else None,
                        )
        except OrchestratorError as exc:
            return self._fail(exc, reply=reply, on_done=on_done)
        except httpx.HTTPError as exc:
            if self.state is SessionState.STREAMING:
                error = OrchestratorError(STREAM_INTERRUPTED_MESSAGE)
            else:
                error = OrchestratorError("Failed to connect to orchestrator")
            logger.warning("session event=transport_error state=%s error=%s", self.state.value, exc)
            return self._fail(error, reply=reply, on_done=on_done)

        return self._complete(user_turn, extractor.block, reply=reply, on_done=on_done)

    def _announce(
        self,
        block: StructuredBlock,
        *,
        on_plan: PlanCallback | None,
        on_tasks: TasksCallback | None,
    ) -> None:
        logger.info(
            "session event=block_recognized kind=%s items=%d",
            block.kind,
            len(block.steps) if block.kind == "plan" else len(block.tasks),
        )
        if block.kind == "plan" and on_plan is not None:
            on_plan(list(block.steps))
        elif block.kind == "tasks" and on_tasks is not None:
            on_tasks(list(block.tasks))

    def _complete(
        self,
        user_turn: ChatTurn,
        block: StructuredBlock | None,
        *,
        reply: ConversationMessage,
        on_done: DoneCallback | None,
    ) -> SessionResult:
        self.state = SessionState.COMPLETING
        content = self._buffer
        if on_done is not None:
            on_done(content)

        persisted: ConversationMessage | None = None
        if content:
            plan = block.steps if block is not None and block.kind == "plan" else None
            try:
                persisted = self._messages.add_message("orchestrator", content, plan=plan)
            except (StoreError, KeyError):
                # The operator already saw the reply; persistence is best-effort.
                logger.exception("session event=persist_failed chars=%d", len(content))
            if block is not None and block.kind == "tasks" and self._materializer is not None:
                try:
                    self._materializer.materialize(block.tasks)
                except (StoreError, KeyError):
                    logger.exception("session event=materialize_failed count=%d", len(block.tasks))

        self.history.extend([user_turn, ChatTurn(role="assistant", content=content)])
        logger.info(
            "session event=completed chars=%d block=%s",
            len(content),
            block.kind if block else None,
        )
        return SessionResult(content=content, block=block, message=persisted)

    def _fail(
        self,
        error: OrchestratorError,
        *,
        reply: ConversationMessage,
        on_done: DoneCallback | None,
    ) -> SessionResult:
        self.state = SessionState.FAILED
        notification = notification_for(error)
        logger.warning(
            "session event=failed category=%s status=%s error=%s",
            error.category,
            error.status_code,
            error,
        )
        self._notifier.notify(notification)
        if self._buffer:
            # Keep the partial reply on screen; the error follows it.
            self._messages.add_local(_provisional("orchestrator", notification.description))
        else:
            self._messages.update_local(reply.id, content=notification.description)
        if on_done is not None:
            on_done(notification.description)
        return SessionResult(
            content=notification.description,
            failed=True,
            category=error.category,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _open_client(self) -> httpx.AsyncClient | _BorrowedClient:
        if self._client is not None:
            return _BorrowedClient(self._client)
        return httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s))


class _BorrowedClient:
    """Async context wrapper that leaves an injected client open."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def __aenter__(self) -> httpx.AsyncClient:
        return self._client

    async def __aexit__(self, *exc_info: object) -> None:
        return None


def _provisional(role: str, content: str) -> ConversationMessage:
    return ConversationMessage(
        id=f"local-{uuid.uuid4()}",
        role=role,
        content=content,
        timestamp=datetime.now(UTC),
    )


def _error_from_response(response: httpx.Response) -> OrchestratorError:
    if response.status_code == 429:
        return OrchestratorError("Rate limited", category="rate_limited", status_code=429)
    if response.status_code == 402:
        return OrchestratorError(
            "Payment required", category="credits_required", status_code=402
        )
    message = "Failed to connect to orchestrator"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        message = body["error"]
    return OrchestratorError(message, category="failed", status_code=response.status_code)
