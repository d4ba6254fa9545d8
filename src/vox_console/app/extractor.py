"""Find the orchestrator's JSON task list or execution plan inside streamed prose.

The model interleaves free text with exactly one structured block, either
``{"tasks": [...]}`` or ``{"plan": [...]}``. The block arrives in pieces,
so the extractor is fed the growing text after every delta and only
reports a block once its braces balance and it parses as JSON.

Policy when a message contains both kinds: the first block (in text order)
that parses wins and locks the message to that kind; later blocks of any
kind are ignored.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from .models import PlanStep, TaskDraft

BlockKind = Literal["tasks", "plan"]

BLOCK_START = re.compile(r'\{\s*"(tasks|plan)"\s*:\s*\[')


@dataclass(frozen=True)
class StructuredBlock:
    kind: BlockKind
    steps: list[PlanStep] = field(default_factory=list)
    tasks: list[TaskDraft] = field(default_factory=list)


class StructuredBlockExtractor:
    """Accumulates one message's text and reports its structured block once."""

    def __init__(self, kinds: tuple[BlockKind, ...] = ("tasks", "plan")) -> None:
        self._kinds = kinds
        self._text = ""
        self._scan_from = 0
        self.block: StructuredBlock | None = None

    @property
    def text(self) -> str:
        return self._text

    def feed(self, delta: str) -> StructuredBlock | None:
        """Append a delta; return the block only on the call that completes it."""
        self._text += delta
        if self.block is not None:
            return None
        block = self._scan()
        if block is not None:
            self.block = block
        return block

    def _scan(self) -> StructuredBlock | None:
        for match in BLOCK_START.finditer(self._text, self._scan_from):
            kind = match.group(1)
            if kind not in self._kinds:
                continue
            end = find_block_end(self._text, match.start())
            if end is None:
                # Still streaming; anything after this opener sits inside it.
                self._scan_from = match.start()
                return None
            try:
                payload = json.loads(self._text[match.start() : end])
            except json.JSONDecodeError:
                continue
            block = build_block(kind, payload)
            if block is not None:
                return block
        return None


def find_block_end(text: str, start: int) -> int | None:
    """Index just past the brace matching ``text[start]``, or None if still open."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return index + 1
    return None


def build_block(kind: BlockKind, payload: Any) -> StructuredBlock | None:
    if not isinstance(payload, dict) or not isinstance(payload.get(kind), list):
        return None
    items = [item for item in payload[kind] if isinstance(item, dict)]
    if kind == "plan":
        return StructuredBlock(kind="plan", steps=plan_steps_from(items))
    return StructuredBlock(kind="tasks", tasks=task_drafts_from(items))


def plan_steps_from(items: list[dict[str, Any]]) -> list[PlanStep]:
    steps: list[PlanStep] = []
    for index, item in enumerate(items):
        agent = item.get("agent")
        steps.append(
            PlanStep(
                id=f"step-{index}",
                label=str(item.get("label") or f"Step {index + 1}"),
                status="pending",
                agent=agent if isinstance(agent, str) and agent else None,
            )
        )
    return steps


def task_drafts_from(items: list[dict[str, Any]]) -> list[TaskDraft]:
    return [
        TaskDraft(
            title=str(item.get("title") or "Untitled Task"),
            description=str(item["description"]) if item.get("description") else None,
            assignee="human" if item.get("assignee") == "human" else "vox",
        )
        for item in items
    ]
