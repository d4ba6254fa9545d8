"""Conversation log: persisted messages with their plan steps, plus optimistic local copies."""

from __future__ import annotations

import logging
from typing import Any

from .agents import AgentDirectory
from .models import ConversationMessage, MessageRole, PlanStep
from .store import Store

logger = logging.getLogger(__name__)


class MessageLog:
    def __init__(self, store: Store, agents: AgentDirectory, *, conversation_id: str) -> None:
        self._store = store
        self._agents = agents
        self.conversation_id = conversation_id
        self._local: list[ConversationMessage] = []

    def add_message(
        self,
        role: MessageRole,
        content: str,
        plan: list[PlanStep] | None = None,
        agent_name: str | None = None,
    ) -> ConversationMessage:
        """Insert one message, then its plan steps as a single batch."""
        agent = self._agents.find_by_name(agent_name)
        row = self._store.insert_one(
            "messages",
            {
                "conversation_id": self.conversation_id,
                "role": role,
                "content": content,
                "agent_id": agent.id if agent else None,
            },
        )

        persisted_steps: list[PlanStep] = []
        if plan:
            step_rows = self._store.insert_many(
                "plan_steps",
                [
                    {
                        "message_id": row["id"],
                        "label": step.label,
                        "status": step.status,
                        "agent_id": self._agent_id(step.agent),
                        "order_index": index,
                    }
                    for index, step in enumerate(plan)
                ],
            )
            persisted_steps = [
                PlanStep(id=step_row["id"], label=step.label, status=step.status, agent=step.agent)
                for step_row, step in zip(step_rows, plan)
            ]

        logger.info(
            "messages event=persisted message_id=%s role=%s plan_steps=%d",
            row["id"],
            role,
            len(persisted_steps),
        )
        return ConversationMessage(
            id=row["id"],
            role=role,
            content=content,
            timestamp=row["created_at"],
            plan=persisted_steps or None,
            agent_name=agent.name if agent else None,
            persisted=True,
        )

    def history(self) -> list[ConversationMessage]:
        agent_names = {agent.id: agent.name for agent in self._agents.list_agents()}
        messages: list[ConversationMessage] = []
        for row in self._store.select(
            "messages", filters={"conversation_id": self.conversation_id}, order_by="created_at"
        ):
            steps = self._store.select(
                "plan_steps", filters={"message_id": row["id"]}, order_by="order_index"
            )
            plan = [
                PlanStep(
                    id=step["id"],
                    label=step["label"],
                    status=step["status"],
                    agent=agent_names.get(step.get("agent_id")),
                )
                for step in steps
            ]
            messages.append(
                ConversationMessage(
                    id=row["id"],
                    role=row["role"],
                    content=row["content"],
                    timestamp=row["created_at"],
                    plan=plan or None,
                    agent_name=agent_names.get(row.get("agent_id")),
                    persisted=True,
                )
            )
        return messages

    def add_local(self, message: ConversationMessage) -> ConversationMessage:
        self._local.append(message)
        return message

    def update_local(self, message_id: str, **changes: Any) -> ConversationMessage | None:
        for index, message in enumerate(self._local):
            if message.id != message_id:
                continue
            if message.persisted:
                raise ValueError(f"Message {message_id} is persisted and immutable")
            updated = message.model_copy(update=changes)
            self._local[index] = updated
            return updated
        return None

    @property
    def local(self) -> list[ConversationMessage]:
        return list(self._local)

    def _agent_id(self, name: str | None) -> str | None:
        # Unknown names are stored as a null association, not an error.
        agent = self._agents.find_by_name(name)
        return agent.id if agent else None
