from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from agentflow.models import Analysis, ExecutionLog, Plan, TodoUpdate, Workflow

PlanStamp = tuple[int, tuple[str, ...]]


class WorkflowStoreError(RuntimeError):
    """Raised when workflow persistence fails."""


class WorkflowNotFoundError(WorkflowStoreError):
    """Raised when a workflow id does not resolve to a stored workflow."""


class StalePlanError(WorkflowStoreError):
    """Raised when a guarded write finds a different plan than the caller read."""


class WorkflowStore(ABC):
    """Durable storage for workflows, their todos and execution logs.

    Every method is an atomic unit. ``replace_plan`` swaps the whole todo
    set and the workflow row together or not at all.

    Writes that accept ``expected_plan`` compare it with the stored
    ``Workflow.plan_stamp`` inside the same atomic unit and raise
    ``StalePlanError`` without writing when they differ.
    """

    @abstractmethod
    async def ensure_workflow(self, chat_id: int, *, auto_advance: bool = False) -> Workflow:
        """Return the chat's workflow, creating an idle one on first use."""

    @abstractmethod
    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        """Load a full snapshot including todos and logs."""

    @abstractmethod
    async def get_workflow_by_chat(self, chat_id: int) -> Workflow | None:
        """Load the chat's workflow snapshot if one exists."""

    @abstractmethod
    async def set_status(
        self, workflow_id: int, status: str, *, expected_plan: PlanStamp | None = None
    ) -> None:
        """Overwrite the workflow status."""

    @abstractmethod
    async def update_analysis(self, workflow_id: int, analysis: Analysis) -> None:
        """Replace the stored analysis and move the workflow into ``analysis``."""

    @abstractmethod
    async def replace_plan(
        self,
        workflow_id: int,
        plan: Plan,
        *,
        status: str | None = None,
    ) -> Workflow:
        """Replace every todo with the plan's todos and bump the plan version."""

    @abstractmethod
    async def set_current_todo(
        self, workflow_id: int, todo_id: str | None, *, expected_plan: PlanStamp | None = None
    ) -> None:
        """Set or clear the focused todo."""

    @abstractmethod
    async def apply_todo_updates(
        self,
        workflow_id: int,
        updates: list[TodoUpdate],
        *,
        expected_plan: PlanStamp | None = None,
    ) -> list[str]:
        """Apply status/provenance updates; return the ids that matched no todo."""

    @abstractmethod
    async def append_log(
        self,
        workflow_id: int,
        *,
        log_type: str,
        content: str,
        todo_id: str | None = None,
        todo_key: str | None = None,
        dyad_tag_refs: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        expected_plan: PlanStamp | None = None,
    ) -> ExecutionLog:
        """Append an immutable audit entry."""

    @abstractmethod
    async def set_auto_advance(self, workflow_id: int, enabled: bool) -> None:
        """Overwrite the auto-advance flag."""

    @abstractmethod
    async def set_last_command(
        self, workflow_id: int, command: str | None, *, expected_plan: PlanStamp | None = None
    ) -> None:
        """Record the most recent command kind."""

    @abstractmethod
    async def delete_workflow_for_chat(self, chat_id: int) -> bool:
        """Remove the chat's workflow with its todos and logs."""
