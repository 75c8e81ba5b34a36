"""One-TODO-per-response enforcement for agent todo updates."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from agentflow.models import Todo, TodoUpdate

MULTIPLE_COMPLETIONS_REASON = (
    "only one TODO can be completed per response (human-like workflow)"
)


@dataclass(slots=True)
class DroppedUpdate:
    update: TodoUpdate
    reason: str


@dataclass(slots=True)
class SanitizeResult:
    updates: list[TodoUpdate] = field(default_factory=list)
    handled_todo_id: str | None = None
    dropped: list[DroppedUpdate] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return any(update.status == "completed" for update in self.updates)


def normalize_todo_id(todo_id: str | None) -> str | None:
    if todo_id is None:
        return None
    normalized = todo_id.strip().upper()
    return normalized or None


def sanitize_todo_updates(
    updates: Iterable[TodoUpdate],
    active_todo_id: str | None = None,
    enforce_one_task_rule: bool = True,
) -> SanitizeResult:
    """Filter a response's todo updates down to a single TODO and one completion.

    Ids are compared trimmed and uppercased; accepted updates keep their
    original casing and order.
    """
    normalized_active = normalize_todo_id(active_todo_id)
    result = SanitizeResult(handled_todo_id=normalized_active)
    has_completed = False

    for update in updates:
        normalized = normalize_todo_id(update.todo_id)
        if normalized is None:
            result.dropped.append(DroppedUpdate(update, "missing todoId"))
            continue

        if normalized_active and normalized != normalized_active:
            result.dropped.append(
                DroppedUpdate(update, f"expected active todo {normalized_active}")
            )
            continue

        if result.handled_todo_id is None:
            result.handled_todo_id = normalized
        elif normalized != result.handled_todo_id:
            result.dropped.append(
                DroppedUpdate(update, f"already handling {result.handled_todo_id}")
            )
            continue

        if enforce_one_task_rule and update.status == "completed" and has_completed:
            result.dropped.append(DroppedUpdate(update, MULTIPLE_COMPLETIONS_REASON))
            continue

        if update.status == "completed":
            has_completed = True
        result.updates.append(update)

    return result


def audit_updates(updates: list[TodoUpdate], max_simultaneous_todos: int) -> list[str]:
    """Report policy violations that survived sanitization."""
    findings: list[str] = []
    completions = [update for update in updates if update.status == "completed"]
    starts = {
        normalize_todo_id(update.todo_id)
        for update in updates
        if (update.status or "in_progress") == "in_progress"
    }
    if len(completions) > 1:
        findings.append(
            f"{len(completions)} TODO completions survived sanitization; expected at most one"
        )
    if len(starts) > max_simultaneous_todos:
        findings.append(
            f"{len(starts)} TODOs started in one response; limit is {max_simultaneous_todos}"
        )
    return findings


def check_completion_order(todos: list[Todo], completed_todo_id: str) -> list[str]:
    """Name earlier TODOs that are still open when ``completed_todo_id`` completes."""
    wanted = normalize_todo_id(completed_todo_id)
    open_before: list[str] = []
    for todo in sorted(todos, key=lambda item: item.order_index):
        if normalize_todo_id(todo.todo_id) == wanted:
            return open_before
        if todo.status != "completed":
            open_before.append(todo.todo_id)
    return []


def check_dependencies(todos: list[Todo], target: Todo) -> list[str]:
    """Return ids of unfinished TODOs that ``target`` lists among its inputs."""
    by_id = {normalize_todo_id(todo.todo_id): todo for todo in todos}
    target_id = normalize_todo_id(target.todo_id)
    unmet: list[str] = []
    for raw_input in target.inputs:
        dependency = by_id.get(normalize_todo_id(raw_input))
        if dependency is None or normalize_todo_id(dependency.todo_id) == target_id:
            continue
        if dependency.status != "completed" and dependency.todo_id not in unmet:
            unmet.append(dependency.todo_id)
    return unmet
