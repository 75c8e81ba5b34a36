from __future__ import annotations

import re
from typing import Any

from agentflow.models import Command, Todo, Workflow

REVISE_PATTERN = re.compile(r"^revise\s+(\S+)", re.IGNORECASE)
SWITCH_MODE_SPLIT_PATTERN = re.compile(r"[:\s]+")
AUTO_TOGGLES = {"auto", "auto continue"}
CHANGE_PLAN_COMMANDS = {"change plan", "change-plan"}


def detect_command(prompt: str, workflow: Workflow | None) -> Command:
    """Map a user chat turn onto a workflow command."""
    trimmed = prompt.strip()
    lower = trimmed.lower()
    payload: dict[str, Any] = {"prompt": trimmed}

    if workflow is None or not workflow.has_plan or workflow.status == "idle":
        return Command("brief", payload)

    if lower == "start":
        return Command("start", payload)
    if lower == "continue":
        return Command("continue", payload)
    if lower in CHANGE_PLAN_COMMANDS:
        return Command("change_plan", payload)

    revise = REVISE_PATTERN.match(trimmed)
    if revise:
        return Command("revise", {**payload, "todoId": revise.group(1).upper()})

    if lower.startswith("switch mode"):
        target = SWITCH_MODE_SPLIT_PATTERN.split(lower)[-1]
        return Command("switch_mode", {**payload, "target": target})

    if lower in AUTO_TOGGLES:
        return Command("custom", {**payload, "toggleAuto": True})

    if not workflow.pending_todos:
        return Command("custom", {**payload, "stage": "completed"})

    return Command("custom", payload)


def find_next_todo(todos: list[Todo]) -> Todo | None:
    for todo in sorted(todos, key=lambda item: item.order_index):
        if todo.status != "completed":
            return todo
    return None


def summarise_todos(todos: list[Todo]) -> list[dict[str, Any]]:
    return [todo.summary() for todo in todos]
