"""Turn-by-turn workflow state machine.

A chat turn has two phases around the model call. ``prepare_turn``
interprets the user's text, applies the TODO status change it implies and
renders the context block sent to the model. ``process_response`` parses the
model output, filters TODO updates through the one-task policy and writes
the surviving changes back to the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from agentflow.backends.base import AgentBackend
from agentflow.commands import detect_command, find_next_todo, summarise_todos
from agentflow.config import AgentFlowConfig
from agentflow.enforcement import (
    SanitizeResult,
    audit_updates,
    check_completion_order,
    check_dependencies,
    normalize_todo_id,
    sanitize_todo_updates,
)
from agentflow.models import Command, TodoUpdate, Workflow, utcnow_iso
from agentflow.parser import ArtifactBundle, parse_artifacts
from agentflow.prompts import AGENT_SYSTEM_PROMPT
from agentflow.state.store import StalePlanError, WorkflowNotFoundError, WorkflowStore

logger = logging.getLogger(__name__)

CONTEXT_TAG = "agent-workflow-context"
REPLANNING_COMMANDS = {"brief", "change_plan"}
PREPARE_ATTEMPTS = 3


@dataclass(slots=True)
class TurnPreparation:
    workflow: Workflow
    workflow_id: int
    command: Command
    context_message: str


@dataclass(slots=True)
class TurnResult:
    workflow: Workflow
    artifacts: ArtifactBundle
    sanitized: SanitizeResult
    should_auto_continue: bool
    plan_held: bool = False
    focus_blocked: bool = False
    completed_todo_id: str | None = None
    missing_todo_ids: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow.id,
            "status": self.workflow.status,
            "planVersion": self.workflow.plan_version,
            "currentTodoId": self.workflow.current_todo_id,
            "autoAdvance": self.workflow.auto_advance,
            "shouldAutoContinue": self.should_auto_continue,
            "planHeld": self.plan_held,
            "focusBlocked": self.focus_blocked,
            "completedTodoId": self.completed_todo_id,
            "acceptedUpdates": [update.to_dict() for update in self.sanitized.updates],
            "droppedUpdates": [
                {"update": item.update.to_dict(), "reason": item.reason}
                for item in self.sanitized.dropped
            ],
            "missingTodoIds": list(self.missing_todo_ids),
            "warnings": list(self.artifacts.warnings),
        }


def build_context_message(
    workflow: Workflow,
    command: Command,
    raw_prompt: str,
    *,
    timestamp: str | None = None,
) -> str:
    todos = [] if command.kind in REPLANNING_COMMANDS else summarise_todos(workflow.todos)
    context = {
        "timestamp": timestamp or utcnow_iso(),
        "status": workflow.status,
        "autoAdvance": workflow.auto_advance,
        "currentTodoId": workflow.current_todo_id,
        "dyadTagContext": list(workflow.dyad_tag_context),
        "command": {**command.to_dict(), "raw": raw_prompt},
        "analysis": workflow.analysis.to_dict() if workflow.analysis else None,
        "todos": todos,
    }
    payload = json.dumps(context, ensure_ascii=False, separators=(",", ":"))
    return f"<{CONTEXT_TAG}>{payload}</{CONTEXT_TAG}>"


def should_auto_continue(
    workflow: Workflow,
    *,
    completed_this_turn: bool,
    focus_blocked: bool,
) -> bool:
    if not workflow.auto_advance or completed_this_turn or focus_blocked:
        return False
    if not workflow.pending_todos:
        return False
    active = workflow.active_todo
    return active is None or active.status != "in_progress"


class WorkflowEngine:
    def __init__(self, store: WorkflowStore, config: AgentFlowConfig | None = None) -> None:
        self.store = store
        self.config = config or AgentFlowConfig.default()
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    def _trace(self, message: str, *args: Any) -> None:
        level = logging.INFO if self.config.debug.verbose_logging else logging.DEBUG
        logger.log(level, message, *args)

    @asynccontextmanager
    async def turn_lock(self, chat_id: int) -> AsyncIterator[None]:
        """Serialize turns for one chat; not reentrant."""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                del self._lock_users[chat_id]
                del self._locks[chat_id]

    async def _require(self, workflow_id: int) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def load_workflow(self, chat_id: int) -> Workflow:
        row = await self.store.ensure_workflow(
            chat_id, auto_advance=self.config.auto_advance.default_enabled
        )
        workflow = await self.store.get_workflow(row.id)
        if workflow is None:
            workflow = await self.store.get_workflow_by_chat(chat_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Unable to load workflow for chat {chat_id}")
        return workflow

    async def set_auto_advance(self, chat_id: int, enabled: bool) -> Workflow:
        workflow = await self.load_workflow(chat_id)
        await self.store.set_auto_advance(workflow.id, enabled)
        return await self._require(workflow.id)

    async def reset(self, chat_id: int) -> bool:
        async with self.turn_lock(chat_id):
            return await self.store.delete_workflow_for_chat(chat_id)

    async def prepare_turn(self, chat_id: int, prompt: str) -> TurnPreparation:
        attempts = 0
        while True:
            workflow = await self.load_workflow(chat_id)
            command = detect_command(prompt, workflow)
            try:
                await self._apply_command(workflow, command, prompt)
                break
            except StalePlanError as exc:
                attempts += 1
                if attempts >= PREPARE_ATTEMPTS:
                    raise
                logger.info("Workflow %s: %s; re-reading before retry", workflow.id, exc)

        workflow_id = workflow.id
        workflow = await self.store.get_workflow(workflow_id) or workflow
        return TurnPreparation(
            workflow=workflow,
            workflow_id=workflow_id,
            command=command,
            context_message=build_context_message(workflow, command, prompt),
        )

    async def _apply_command(self, workflow: Workflow, command: Command, prompt: str) -> None:
        """Write the pre-turn effects of ``command``, guarded by the plan that was read."""
        workflow_id = workflow.id
        stamp = workflow.plan_stamp
        metadata = {"command": command.kind, "prompt": prompt}
        updates: list[TodoUpdate] = []
        self._trace("Workflow %s: interpreted turn as %s", workflow_id, command.kind)

        if command.kind in REPLANNING_COMMANDS:
            await self.store.set_status(workflow_id, "analysis", expected_plan=stamp)
            await self.store.set_current_todo(workflow_id, None, expected_plan=stamp)
            content = (
                "Received new brief; entering analysis mode"
                if command.kind == "brief"
                else "User requested a new plan"
            )
            await self.store.append_log(
                workflow_id,
                log_type="command",
                content=content,
                metadata=metadata,
                expected_plan=stamp,
            )
        elif command.kind == "revise":
            requested = command.payload.get("todoId")
            target = workflow.find_todo(requested)
            if target is not None:
                updates.append(TodoUpdate(todo_id=target.todo_id, status="revising"))
                await self.store.append_log(
                    workflow_id,
                    log_type="command",
                    todo_id=target.todo_id,
                    content=f"Revise requested for {target.todo_id}",
                    metadata=metadata,
                    expected_plan=stamp,
                )
            else:
                logger.warning("Workflow %s: revise referenced missing todo %s", workflow_id, requested)
                await self.store.append_log(
                    workflow_id,
                    log_type="system",
                    content=f"Revise command referenced missing todo {requested}",
                    metadata=metadata,
                    expected_plan=stamp,
                )
            await self.store.set_status(workflow_id, "revising", expected_plan=stamp)
        elif command.kind in {"start", "continue"}:
            target = find_next_todo(workflow.todos)
            if target is not None:
                updates.append(TodoUpdate(todo_id=target.todo_id, status="in_progress"))
                await self.store.set_current_todo(workflow_id, target.todo_id, expected_plan=stamp)
                await self.store.set_status(workflow_id, "executing", expected_plan=stamp)
                verb = "Starting" if command.kind == "start" else "Continuing with"
                await self.store.append_log(
                    workflow_id,
                    log_type="command",
                    todo_id=target.todo_id,
                    content=f"{verb} TODO {target.todo_id}",
                    metadata=metadata,
                    expected_plan=stamp,
                )
                if self.config.validation.check_dependencies:
                    unmet = check_dependencies(workflow.todos, target)
                    if unmet:
                        await self.store.append_log(
                            workflow_id,
                            log_type="validation",
                            todo_id=target.todo_id,
                            content=(
                                f"TODO {target.todo_id} depends on unfinished TODOs: "
                                + ", ".join(unmet)
                            ),
                            metadata={"unmet": unmet},
                            expected_plan=stamp,
                        )
            else:
                content = (
                    "No remaining TODOs to start"
                    if command.kind == "start"
                    else "Continue requested but all TODOs are complete"
                )
                await self.store.append_log(
                    workflow_id,
                    log_type="system",
                    content=content,
                    metadata=metadata,
                    expected_plan=stamp,
                )
        elif command.kind == "switch_mode":
            await self.store.append_log(
                workflow_id,
                log_type="command",
                content=f"User requested to switch mode to {command.payload.get('target')}",
                metadata=metadata,
                expected_plan=stamp,
            )
        else:
            await self.store.append_log(
                workflow_id,
                log_type="command",
                content=f"User input: {prompt}",
                metadata=metadata,
                expected_plan=stamp,
            )

        await self.store.set_last_command(workflow_id, command.kind, expected_plan=stamp)
        if updates:
            await self.store.apply_todo_updates(workflow_id, updates, expected_plan=stamp)

    async def _record_dropped(self, workflow_id: int, sanitized: SanitizeResult) -> None:
        for item in sanitized.dropped:
            message = (
                "Blocked attempt to work on multiple TODOs: "
                f"{item.update.todo_id or '(missing id)'} - {item.reason}"
            )
            if self.config.debug.log_dropped_updates:
                logger.warning("Workflow %s: %s", workflow_id, message)
            if self.config.enforcement.log_enforcement_actions:
                await self.store.append_log(
                    workflow_id,
                    log_type="system",
                    todo_id=sanitized.handled_todo_id,
                    content=message,
                    metadata={"update": item.update.to_dict(), "reason": item.reason},
                )

    async def process_response(
        self,
        workflow_id: int,
        response_text: str,
        *,
        plan_status: str | None = None,
    ) -> TurnResult:
        workflow = await self._require(workflow_id)
        artifacts = parse_artifacts(response_text)
        for warning in artifacts.warnings:
            logger.warning("[agent] %s", warning)

        pre_turn_active = workflow.current_todo_id
        sanitized = sanitize_todo_updates(
            artifacts.todo_updates,
            pre_turn_active,
            self.config.enforcement.one_todo_per_response,
        )
        await self._record_dropped(workflow_id, sanitized)
        for finding in audit_updates(
            sanitized.updates, self.config.enforcement.max_simultaneous_todos
        ):
            logger.warning("Workflow %s: %s", workflow_id, finding)
        if self.config.debug.include_reasoning_logs:
            await self.store.append_log(
                workflow_id,
                log_type="system",
                content=(
                    f"Sanitized TODO updates: {len(sanitized.updates)} accepted, "
                    f"{len(sanitized.dropped)} dropped, handling "
                    f"{sanitized.handled_todo_id or 'none'}"
                ),
                metadata={
                    "activeTodoId": pre_turn_active,
                    "handledTodoId": sanitized.handled_todo_id,
                    "accepted": [update.to_dict() for update in sanitized.updates],
                },
            )

        if artifacts.analysis is not None:
            await self.store.update_analysis(workflow_id, artifacts.analysis)
        analysis = artifacts.analysis or workflow.analysis

        focus = pre_turn_active
        plan_held = False
        if artifacts.plan is not None:
            if analysis is not None and analysis.has_open_clarifications and not workflow.todos:
                plan_held = True
                logger.info("Workflow %s: plan held until clarifications are answered", workflow_id)
                await self.store.append_log(
                    workflow_id,
                    log_type="system",
                    content="Plan held until the user answers the open clarifications",
                    metadata={"clarifications": list(analysis.clarifications)},
                )
            else:
                committed = await self.store.replace_plan(
                    workflow_id, artifacts.plan, status=plan_status
                )
                focus = None
                await self.store.append_log(
                    workflow_id,
                    log_type="plan",
                    content=(
                        f"Committed plan version {committed.plan_version} "
                        f"with {len(committed.todos)} TODOs"
                    ),
                    dyad_tag_refs=list(artifacts.plan.dyad_tag_refs),
                )
                pending = len(committed.pending_todos)
                if pending > self.config.validation.max_pending_todos:
                    await self.store.append_log(
                        workflow_id,
                        log_type="validation",
                        content=(
                            f"Plan has {pending} pending TODOs; "
                            f"limit is {self.config.validation.max_pending_todos}"
                        ),
                    )

        missing: list[str] = []
        if sanitized.updates:
            missing = await self.store.apply_todo_updates(
                workflow_id,
                [
                    TodoUpdate(
                        todo_id=update.todo_id,
                        status=update.status or "in_progress",
                        dyad_tag_refs=update.dyad_tag_refs,
                    )
                    for update in sanitized.updates
                ],
            )
            for todo_id in missing:
                await self.store.append_log(
                    workflow_id,
                    log_type="system",
                    content=f"TODO update referenced missing todo {todo_id}",
                )

        current = await self._require(workflow_id)
        completed_todo_id: str | None = None
        if sanitized.completed:
            completed_update = next(
                update for update in sanitized.updates if update.status == "completed"
            )
            completed_todo = current.find_todo(completed_update.todo_id)
            if completed_todo is not None:
                completed_todo_id = completed_todo.todo_id
                if self.config.validation.warn_out_of_order_completion:
                    open_before = check_completion_order(current.todos, completed_todo_id)
                    if open_before:
                        await self.store.append_log(
                            workflow_id,
                            log_type="validation",
                            todo_id=completed_todo_id,
                            content=(
                                f"TODO {completed_todo_id} completed before "
                                + ", ".join(open_before)
                            ),
                            metadata={"openBefore": open_before},
                        )

        for entry in artifacts.logs:
            if not entry.content.strip():
                continue
            await self.store.append_log(
                workflow_id,
                log_type=entry.log_type,
                content=entry.content,
                todo_id=entry.todo_id,
                todo_key=entry.todo_key,
                dyad_tag_refs=entry.dyad_tag_refs,
                metadata=entry.metadata,
            )

        if artifacts.workflow_status is not None:
            await self.store.set_status(workflow_id, artifacts.workflow_status)

        focus_blocked = False
        if artifacts.focus_requested:
            requested = artifacts.current_todo_id
            if requested is None:
                await self.store.set_current_todo(workflow_id, None)
                focus = None
            else:
                allowed = {
                    todo_id
                    for todo_id in (normalize_todo_id(pre_turn_active), sanitized.handled_todo_id)
                    if todo_id
                }
                if normalize_todo_id(requested) in allowed:
                    todo = current.find_todo(requested)
                    focus = todo.todo_id if todo else requested
                    await self.store.set_current_todo(workflow_id, focus)
                else:
                    focus_blocked = True
                    allowed_text = ", ".join(sorted(allowed)) or "none"
                    logger.warning(
                        "Workflow %s: blocked focus change to %s (allowed: %s)",
                        workflow_id,
                        requested,
                        allowed_text,
                    )
                    await self.store.append_log(
                        workflow_id,
                        log_type="system",
                        todo_id=requested,
                        content=(
                            f"Blocked focus change to {requested}; allowed: {allowed_text}"
                        ),
                    )

        if sanitized.completed and focus is not None:
            if normalize_todo_id(focus) == sanitized.handled_todo_id:
                await self.store.set_current_todo(workflow_id, None)

        if artifacts.auto_advance is not None:
            await self.store.set_auto_advance(workflow_id, artifacts.auto_advance)

        final = await self._require(workflow_id)
        auto_continue = should_auto_continue(
            final,
            completed_this_turn=sanitized.completed,
            focus_blocked=focus_blocked,
        )
        self._trace(
            "Workflow %s: status=%s focus=%s auto_continue=%s",
            workflow_id,
            final.status,
            final.current_todo_id,
            auto_continue,
        )
        return TurnResult(
            workflow=final,
            artifacts=artifacts,
            sanitized=sanitized,
            should_auto_continue=auto_continue,
            plan_held=plan_held,
            focus_blocked=focus_blocked,
            completed_todo_id=completed_todo_id,
            missing_todo_ids=missing,
        )

    async def run_turn(
        self,
        chat_id: int,
        prompt: str,
        backend: AgentBackend,
        *,
        plan_status: str | None = None,
    ) -> TurnResult:
        async with self.turn_lock(chat_id):
            preparation = await self.prepare_turn(chat_id, prompt)
            chunks: list[str] = []
            async for chunk in backend.execute(
                AGENT_SYSTEM_PROMPT, prompt, preparation.context_message
            ):
                chunks.append(chunk)
            return await self.process_response(
                preparation.workflow_id, "".join(chunks), plan_status=plan_status
            )
