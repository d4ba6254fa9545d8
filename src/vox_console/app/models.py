"""Pydantic models shared across the console, session, stores, and API.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Draft: a parsed-but-not-yet-persisted record (no id, no timestamps).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "orchestrator", "system", "agent"]
PlanStepStatus = Literal["pending", "in-progress", "completed"]
TaskStatus = Literal["pending", "in_progress", "completed", "blocked"]
# "vox" is the orchestrator itself.
Assignee = Literal["human", "vox"]
AgentStatus = Literal["active", "idle", "working", "error"]
ToolStatus = Literal["ready", "executing", "error"]
ContentType = Literal["markdown", "code", "table"]
ChangeType = Literal["INSERT", "UPDATE", "DELETE"]
NotificationCategory = Literal["rate_limited", "credits_required", "failed"]


class Record(BaseModel):
    """Common columns every persisted row carries."""

    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: datetime
    updated_at: datetime | None = None


class PlanStep(BaseModel):
    """One item of a model-declared execution checklist."""

    # Local ids look like "step-0"; persisted ids are store-generated.
    id: str | None = None
    label: str
    status: PlanStepStatus = "pending"
    agent: str | None = None


class ConversationMessage(BaseModel):
    """A chat turn, provisional while streaming and immutable once persisted."""

    id: str
    role: MessageRole
    content: str = ""
    timestamp: datetime
    plan: list[PlanStep] | None = None
    agent_name: str | None = None
    persisted: bool = False


class TaskDraft(BaseModel):
    """A task parsed from orchestrator output, before materialization."""

    title: str
    description: str | None = None
    assignee: Assignee = "vox"


class Task(Record):
    project_id: str | None = None
    conversation_id: str | None = None
    title: str
    description: str | None = None
    status: TaskStatus
    assignee: Assignee
    order_index: int
    parent_task_id: str | None = None


class Agent(Record):
    project_id: str | None = None
    name: str
    role: str
    avatar: str | None = None
    status: AgentStatus = "idle"
    tokens_used: int = 0
    system_prompt: str | None = None


class ToolConfig(BaseModel):
    """Launch configuration for a custom tool definition."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class Tool(Record):
    project_id: str | None = None
    name: str
    description: str | None = None
    icon: str = "wrench"
    category: str
    is_enabled: bool = True
    requires_api_key: bool = False
    api_key_env_name: str | None = None
    status: ToolStatus = "ready"
    config: ToolConfig | None = None


class Artifact(Record):
    project_id: str | None = None
    conversation_id: str | None = None
    title: str
    content: str
    content_type: ContentType = "markdown"
    version: int = Field(default=1, ge=1)


class ChangeEvent(BaseModel):
    """One push notification from a store change feed."""

    table: str
    event_type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None


class Notification(BaseModel):
    """User-facing toast raised by the session controller."""

    category: NotificationCategory
    title: str
    description: str


class ChatTurn(BaseModel):
    """Wire shape of one history entry sent to the orchestration endpoint."""

    role: Literal["user", "assistant"]
    content: str


class OrchestratorRequest(BaseModel):
    messages: list[ChatTurn] = Field(default_factory=list)
