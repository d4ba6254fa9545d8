"""FastAPI application wiring for the operator console.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- app.state: a place to store shared runtime objects (store, console, gateway).
- StreamingResponse: an HTTP response whose body is produced while the
  handler is still running (used for event streams).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .app.console import OperatorConsole
from .app.gateway import GatewayError, OrchestratorGateway
from .app.models import (
    Agent,
    AgentStatus,
    Artifact,
    Assignee,
    ContentType,
    ConversationMessage,
    OrchestratorRequest,
    Task,
    TaskStatus,
    Tool,
    ToolConfig,
    ToolStatus,
)
from .app.settings import Settings, get_settings
from .app.storage import PostgresStore
from .app.store import Store
from .app.tools import ToolConfigError

logger = logging.getLogger(__name__)


class CommandRequest(BaseModel):
    text: str = Field(min_length=1)


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    assignee: Assignee = "vox"


class TaskStatusRequest(BaseModel):
    status: TaskStatus


class TaskAssigneeRequest(BaseModel):
    assignee: Assignee


class TaskProgressResponse(BaseModel):
    completed: int
    total: int
    in_progress: Task | None = None


class AgentStatusRequest(BaseModel):
    status: AgentStatus


class AgentTokensRequest(BaseModel):
    tokens: int = Field(ge=0)


class CreateArtifactRequest(BaseModel):
    title: str = Field(min_length=1)
    content: str
    content_type: ContentType = "markdown"


class UpdateArtifactRequest(BaseModel):
    title: str | None = None
    content: str | None = None


class CreateToolRequest(BaseModel):
    name: str = Field(min_length=1)
    category: str = "mcp"
    description: str | None = None
    config: ToolConfig | None = None


class ImportToolRequest(BaseModel):
    blob: str = Field(min_length=1)
    name: str | None = None
    description: str | None = None


class ToolEnabledRequest(BaseModel):
    is_enabled: bool


class ToolStatusRequest(BaseModel):
    status: ToolStatus


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_app(
    *,
    store: Store | None = None,
    settings_override: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    gateway_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Application factory; tests pass an in-memory store and mock HTTP clients."""
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    if store is None:
        if not settings.database_url:
            raise RuntimeError("VOX_DATABASE_URL is required.")
        store = PostgresStore(settings.database_url)
    store.migrate()

    console = OperatorConsole(store, settings, client=client)
    if settings.seed_defaults:
        console.agents.seed_defaults()

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.store = store
    app.state.console = console
    app.state.gateway = OrchestratorGateway(
        url=settings.gateway_url,
        api_key=settings.gateway_api_key,
        model=settings.gateway_model,
        timeout_s=settings.request_timeout_s,
        client=gateway_client,
    )

    def _console(request: Request) -> OperatorConsole:
        return request.app.state.console

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/agents", response_model=list[Agent])
    def list_agents(request: Request) -> list[Agent]:
        return _console(request).agents.list_agents()

    @app.patch("/agents/{agent_id}/status", response_model=Agent)
    def update_agent_status(agent_id: str, payload: AgentStatusRequest, request: Request) -> Agent:
        with _not_found("Agent"):
            return _console(request).agents.update_status(agent_id, payload.status)

    @app.post("/agents/{agent_id}/tokens", response_model=Agent)
    def add_agent_tokens(agent_id: str, payload: AgentTokensRequest, request: Request) -> Agent:
        with _not_found("Agent"):
            return _console(request).agents.add_tokens(agent_id, payload.tokens)

    @app.get("/messages", response_model=list[ConversationMessage])
    def list_messages(request: Request) -> list[ConversationMessage]:
        return _console(request).messages.history()

    @app.post("/console/commands")
    async def run_command(payload: CommandRequest, request: Request) -> StreamingResponse:
        console = _console(request)
        if console.busy:
            raise HTTPException(status_code=409, detail="A session is already in flight")

        async def body():
            async for event in console.stream_events(payload.text):
                yield event.to_sse()

        return StreamingResponse(body(), media_type="text/event-stream")

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(request: Request) -> list[Task]:
        return _console(request).tasks.list_tasks()

    @app.get("/tasks/progress", response_model=TaskProgressResponse)
    def task_progress(request: Request) -> TaskProgressResponse:
        completed, total, in_progress = _console(request).tasks.progress()
        return TaskProgressResponse(completed=completed, total=total, in_progress=in_progress)

    @app.post("/tasks", response_model=Task)
    def create_task(payload: CreateTaskRequest, request: Request) -> Task:
        return _console(request).tasks.add_task(
            payload.title, description=payload.description, assignee=payload.assignee
        )

    @app.patch("/tasks/{task_id}/status", response_model=Task)
    def update_task_status(task_id: str, payload: TaskStatusRequest, request: Request) -> Task:
        with _not_found("Task"):
            return _console(request).tasks.update_status(task_id, payload.status)

    @app.patch("/tasks/{task_id}/assignee", response_model=Task)
    def update_task_assignee(task_id: str, payload: TaskAssigneeRequest, request: Request) -> Task:
        with _not_found("Task"):
            return _console(request).tasks.update_assignee(task_id, payload.assignee)

    @app.delete("/tasks/{task_id}", status_code=204)
    def delete_task(task_id: str, request: Request) -> None:
        with _not_found("Task"):
            _console(request).tasks.delete(task_id)

    @app.get("/artifacts", response_model=list[Artifact])
    def list_artifacts(request: Request) -> list[Artifact]:
        return _console(request).artifacts.list_artifacts()

    @app.get("/artifacts/current", response_model=Artifact)
    def current_artifact(request: Request) -> Artifact:
        artifact = _console(request).artifacts.current()
        if artifact is None:
            raise HTTPException(status_code=404, detail="No artifacts yet")
        return artifact

    @app.post("/artifacts", response_model=Artifact)
    def create_artifact(payload: CreateArtifactRequest, request: Request) -> Artifact:
        return _console(request).artifacts.create(
            payload.title, payload.content, content_type=payload.content_type
        )

    @app.patch("/artifacts/{artifact_id}", response_model=Artifact)
    def update_artifact(
        artifact_id: str, payload: UpdateArtifactRequest, request: Request
    ) -> Artifact:
        with _not_found("Artifact"):
            return _console(request).artifacts.update(
                artifact_id, title=payload.title, content=payload.content
            )

    @app.post("/artifacts/{artifact_id}/select", response_model=Artifact)
    def select_artifact(artifact_id: str, request: Request) -> Artifact:
        with _not_found("Artifact"):
            return _console(request).artifacts.select(artifact_id)

    @app.get("/tools", response_model=list[Tool])
    def list_tools(request: Request) -> list[Tool]:
        return _console(request).tools.list_tools()

    @app.post("/tools", response_model=Tool)
    def create_tool(payload: CreateToolRequest, request: Request) -> Tool:
        tools = _console(request).tools
        if payload.config is not None:
            return tools.add_custom(payload.name, payload.config, description=payload.description)
        return tools.add(payload.name, payload.category, description=payload.description)

    @app.post("/tools/import", response_model=Tool)
    def import_tool(payload: ImportToolRequest, request: Request) -> Tool:
        try:
            return _console(request).tools.import_config(
                payload.blob, name=payload.name, description=payload.description
            )
        except ToolConfigError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.patch("/tools/{tool_id}/enabled", response_model=Tool)
    def toggle_tool(tool_id: str, payload: ToolEnabledRequest, request: Request) -> Tool:
        with _not_found("Tool"):
            return _console(request).tools.toggle(tool_id, payload.is_enabled)

    @app.patch("/tools/{tool_id}/status", response_model=Tool)
    def update_tool_status(tool_id: str, payload: ToolStatusRequest, request: Request) -> Tool:
        with _not_found("Tool"):
            return _console(request).tools.update_status(tool_id, payload.status)

    @app.post("/orchestrator", response_model=None)
    async def orchestrator(
        payload: OrchestratorRequest, request: Request
    ) -> StreamingResponse | JSONResponse:
        try:
            stream = await request.app.state.gateway.open_stream(payload.messages)
        except GatewayError as exc:
            return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})
        return StreamingResponse(stream, media_type="text/event-stream")

    return app


@contextmanager
def _not_found(resource: str) -> Iterator[None]:
    """Translate a missing-row KeyError into a 404 for the named resource."""
    try:
        yield
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"{resource} not found") from exc


def run() -> None:
    """Console-script entrypoint: serve the app factory with uvicorn."""
    import uvicorn

    uvicorn.run("vox_console.main:create_app", factory=True, host="0.0.0.0", port=8000)
