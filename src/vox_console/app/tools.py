"""Declared tool capabilities and the custom tool "magic paste" parser.

Tools are only represented here; nothing in this package executes them.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from .models import Tool, ToolConfig, ToolStatus
from .store import Store

logger = logging.getLogger(__name__)


class ToolConfigError(ValueError):
    """A pasted tool configuration could not be understood."""


def parse_tool_config(blob: str) -> tuple[str | None, ToolConfig]:
    """Parse one of the accepted config shapes into (name, config).

    Accepted shapes:
    - ``{"mcpServers": {"<name>": {"command": ..., "args": [...], "env": {...}}}}``
    - ``{"<name>": {"command": ..., ...}}``
    - ``{"command": ..., "args": [...], "env": {...}}``
    """
    try:
        parsed = json.loads(blob)
    except json.JSONDecodeError as exc:
        raise ToolConfigError("Tool configuration is not valid JSON") from exc
    if not isinstance(parsed, dict) or not parsed:
        raise ToolConfigError("Tool configuration must be a non-empty JSON object")

    name: str | None = None
    servers = parsed.get("mcpServers")
    if isinstance(servers, dict):
        if not servers:
            raise ToolConfigError("mcpServers is empty")
        name = next(iter(servers))
        raw = servers[name]
    elif "command" in parsed:
        raw = parsed
    else:
        name = next(iter(parsed))
        raw = parsed[name]

    if not isinstance(raw, dict):
        raise ToolConfigError("Tool configuration entry must be an object")
    try:
        config = ToolConfig(
            command=raw.get("command"),
            args=[str(arg) for arg in raw.get("args") or []],
            env={str(key): str(value) for key, value in (raw.get("env") or {}).items()},
        )
    except (ValidationError, AttributeError, TypeError) as exc:
        raise ToolConfigError(f"Tool configuration is incomplete: {exc}") from exc
    return name, config


class ToolRegistry:
    def __init__(self, store: Store, *, project_id: str | None = None) -> None:
        self._store = store
        self.project_id = project_id

    def list_tools(self) -> list[Tool]:
        rows = self._store.select("tools", filters=self._scope(), order_by="created_at")
        return [Tool.model_validate(row) for row in rows]

    def enabled(self) -> list[Tool]:
        return [tool for tool in self.list_tools() if tool.is_enabled]

    def add(
        self,
        name: str,
        category: str,
        *,
        description: str | None = None,
        icon: str = "wrench",
        requires_api_key: bool = False,
        api_key_env_name: str | None = None,
    ) -> Tool:
        row = self._store.insert_one(
            "tools",
            {
                "project_id": self.project_id,
                "name": name,
                "category": category,
                "description": description,
                "icon": icon,
                "requires_api_key": requires_api_key,
                "api_key_env_name": api_key_env_name,
            },
        )
        return Tool.model_validate(row)

    def add_custom(self, name: str, config: ToolConfig, description: str | None = None) -> Tool:
        row = self._store.insert_one(
            "tools",
            {
                "project_id": self.project_id,
                "name": name,
                "description": description or f"MCP Tool: {name}",
                "icon": "terminal",
                "category": "mcp",
                "is_enabled": True,
                "requires_api_key": bool(config.env),
                "status": "ready",
                "config": config.model_dump(),
            },
        )
        logger.info("tools event=custom_added tool_id=%s name=%s", row["id"], name)
        return Tool.model_validate(row)

    def import_config(
        self,
        blob: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Tool:
        parsed_name, config = parse_tool_config(blob)
        tool_name = (name or parsed_name or "").strip()
        if not tool_name:
            raise ToolConfigError("Tool name is required when the configuration has none")
        return self.add_custom(tool_name, config, description=description)

    def toggle(self, tool_id: str, is_enabled: bool) -> Tool:
        return Tool.model_validate(
            self._store.update_by_id("tools", tool_id, {"is_enabled": is_enabled})
        )

    def update_status(self, tool_id: str, status: ToolStatus) -> Tool:
        return Tool.model_validate(self._store.update_by_id("tools", tool_id, {"status": status}))

    def _scope(self) -> dict[str, Any]:
        return {"project_id": self.project_id} if self.project_id else {}
