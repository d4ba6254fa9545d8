"""Agent roster bookkeeping: status and token counters only."""

from __future__ import annotations

import logging
import threading

from .models import Agent, AgentStatus
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_AGENTS: tuple[dict[str, str], ...] = (
    {"name": "Atlas", "role": "Researcher", "status": "active"},
    {"name": "Nova", "role": "Coder", "status": "active"},
    {"name": "Echo", "role": "Copywriter", "status": "idle"},
    {"name": "Sentinel", "role": "Reviewer", "status": "idle"},
)


class AgentDirectory:
    def __init__(self, store: Store, *, project_id: str | None = None) -> None:
        self._store = store
        self.project_id = project_id
        self._tokens_lock = threading.Lock()

    def list_agents(self) -> list[Agent]:
        rows = self._store.select("agents", filters=self._scope(), order_by="created_at")
        return [Agent.model_validate(row) for row in rows]

    def get(self, agent_id: str) -> Agent | None:
        for agent in self.list_agents():
            if agent.id == agent_id:
                return agent
        return None

    def find_by_name(self, name: str | None) -> Agent | None:
        if not name:
            return None
        rows = self._store.select("agents", filters={**self._scope(), "name": name})
        return Agent.model_validate(rows[0]) if rows else None

    def update_status(self, agent_id: str, status: AgentStatus) -> Agent:
        row = self._store.update_by_id("agents", agent_id, {"status": status})
        return Agent.model_validate(row)

    def add_tokens(self, agent_id: str, tokens: int) -> Agent:
        with self._tokens_lock:
            agent = self.get(agent_id)
            if agent is None:
                raise KeyError(f"Agent {agent_id} does not exist")
            row = self._store.update_by_id(
                "agents", agent_id, {"tokens_used": agent.tokens_used + tokens}
            )
        return Agent.model_validate(row)

    def seed_defaults(self) -> list[Agent]:
        """Insert the four standard specialists when the roster is empty."""
        if self._store.select("agents", filters=self._scope()):
            return []
        rows = self._store.insert_many(
            "agents",
            [{**agent, "project_id": self.project_id} for agent in DEFAULT_AGENTS],
        )
        logger.info("agents event=seeded count=%d project_id=%s", len(rows), self.project_id)
        return [Agent.model_validate(row) for row in rows]

    def _scope(self) -> dict[str, str]:
        return {"project_id": self.project_id} if self.project_id else {}
