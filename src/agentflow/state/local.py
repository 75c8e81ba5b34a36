from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from agentflow.models import (
    LOG_TYPES,
    TODO_STATUSES,
    WORKFLOW_STATUSES,
    Analysis,
    ExecutionLog,
    Plan,
    Todo,
    TodoUpdate,
    Workflow,
    utcnow_iso,
    validate_choice,
)
from agentflow.state.store import (
    PlanStamp,
    StalePlanError,
    WorkflowNotFoundError,
    WorkflowStore,
    WorkflowStoreError,
)

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Concurrent state update detected"


class LocalWorkflowStore(WorkflowStore):
    """JSON-document store: one revisioned envelope per workflow plus a chat index."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.index_file = self.directory / "chats.json"
        self.lock_file = self.directory / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def _workflow_file(self, workflow_id: int) -> Path:
        return self.directory / f"workflow-{workflow_id}.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise WorkflowStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_raw_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state document %s", path)
            return None

    def _write_raw_json(self, path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}-", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_path, path)
        except OSError as exc:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise WorkflowStoreError(f"Failed to write {path.name}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, path: Path, default: Any | None = None) -> dict[str, Any]:
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(path), default_value)

    def _set_json(self, path: Path, data: Any, expected_revision: int | None = None) -> None:
        with self._state_lock():
            current = self.get_envelope(path)
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise WorkflowStoreError(f"{CONFLICT_MESSAGE} for '{path.name}'.")
            self._write_raw_json(
                path,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def _update_json(
        self,
        path: Path,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(path, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self._set_json(path, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except WorkflowStoreError as exc:
                last_error = exc
                if CONFLICT_MESSAGE not in str(exc):
                    raise
                time.sleep(0.01)
        raise WorkflowStoreError(str(last_error) if last_error else "State update failed.")

    def _load_index(self) -> dict[str, Any]:
        payload = self.get_envelope(self.index_file).get("data")
        if not isinstance(payload, dict):
            return {"next_id": 1, "chats": {}}
        payload.setdefault("next_id", 1)
        payload.setdefault("chats", {})
        return payload

    def _load(self, workflow_id: int) -> Workflow | None:
        data = self.get_envelope(self._workflow_file(workflow_id)).get("data")
        if not isinstance(data, dict) or "id" not in data:
            return None
        return Workflow.from_record(data)

    def _load_by_chat(self, chat_id: int) -> Workflow | None:
        workflow_id = self._load_index()["chats"].get(str(chat_id))
        if workflow_id is None:
            return None
        return self._load(int(workflow_id))

    def _ensure(self, chat_id: int, auto_advance: bool) -> Workflow:
        def _allocate(payload: Any) -> dict[str, Any]:
            index = payload if isinstance(payload, dict) else {}
            index.setdefault("next_id", 1)
            index.setdefault("chats", {})
            if str(chat_id) not in index["chats"]:
                index["chats"][str(chat_id)] = index["next_id"]
                index["next_id"] += 1
            return index

        index = self._update_json(self.index_file, _allocate)
        workflow_id = int(index["chats"][str(chat_id)])
        created = False

        def _create(payload: Any) -> dict[str, Any]:
            nonlocal created
            if isinstance(payload, dict) and "id" in payload:
                created = False
                return payload
            created = True
            return Workflow(
                id=workflow_id, chat_id=chat_id, auto_advance=auto_advance
            ).to_record()

        record = self._update_json(self._workflow_file(workflow_id), _create)
        if created:
            logger.info("Created workflow %s for chat %s", workflow_id, chat_id)
        return Workflow.from_record(record)

    def _mutate(
        self,
        workflow_id: int,
        mutator: Callable[[Workflow], None],
        expected_plan: PlanStamp | None = None,
    ) -> Workflow:
        def _updater(payload: Any) -> dict[str, Any]:
            if not isinstance(payload, dict) or "id" not in payload:
                raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
            workflow = Workflow.from_record(payload)
            if expected_plan is not None and workflow.plan_stamp != expected_plan:
                raise StalePlanError(
                    f"Plan for workflow {workflow_id} changed to version "
                    f"{workflow.plan_version} during the update"
                )
            mutator(workflow)
            workflow.updated_at = utcnow_iso()
            return workflow.to_record()

        return Workflow.from_record(self._update_json(self._workflow_file(workflow_id), _updater))

    def _delete(self, chat_id: int) -> bool:
        removed: int | None = None

        def _unlink(payload: Any) -> dict[str, Any]:
            nonlocal removed
            index = payload if isinstance(payload, dict) else {"next_id": 1, "chats": {}}
            chats = index.setdefault("chats", {})
            removed = chats.pop(str(chat_id), None)
            return index

        self._update_json(self.index_file, _unlink)
        if removed is None:
            return False
        with self._state_lock():
            try:
                self._workflow_file(int(removed)).unlink()
            except FileNotFoundError:
                pass
        logger.info("Deleted workflow %s for chat %s", removed, chat_id)
        return True

    async def ensure_workflow(self, chat_id: int, *, auto_advance: bool = False) -> Workflow:
        return await asyncio.to_thread(self._ensure, chat_id, auto_advance)

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        return await asyncio.to_thread(self._load, workflow_id)

    async def get_workflow_by_chat(self, chat_id: int) -> Workflow | None:
        return await asyncio.to_thread(self._load_by_chat, chat_id)

    async def set_status(
        self, workflow_id: int, status: str, *, expected_plan: PlanStamp | None = None
    ) -> None:
        validate_choice(status, WORKFLOW_STATUSES, "workflow status")

        def _apply(workflow: Workflow) -> None:
            workflow.status = status

        await asyncio.to_thread(self._mutate, workflow_id, _apply, expected_plan)

    async def update_analysis(self, workflow_id: int, analysis: Analysis) -> None:
        def _apply(workflow: Workflow) -> None:
            workflow.analysis = Analysis.from_dict(analysis.to_dict())
            workflow.status = "analysis"

        await asyncio.to_thread(self._mutate, workflow_id, _apply)

    async def replace_plan(
        self,
        workflow_id: int,
        plan: Plan,
        *,
        status: str | None = None,
    ) -> Workflow:
        target_status = validate_choice(status or "plan_ready", WORKFLOW_STATUSES, "workflow status")
        seen: set[str] = set()
        for item in plan.todos:
            key = item.todo_id.strip().upper()
            if key in seen:
                raise WorkflowStoreError(
                    f"Plan for workflow {workflow_id} repeats todo id {item.todo_id}"
                )
            seen.add(key)

        def _apply(workflow: Workflow) -> None:
            now = utcnow_iso()
            workflow.todos = [
                Todo(
                    todo_id=item.todo_id,
                    title=item.title,
                    status=validate_choice(item.status or "pending", TODO_STATUSES, "todo status"),
                    order_index=index,
                    description=item.description,
                    owner=item.owner,
                    inputs=list(item.inputs),
                    outputs=list(item.outputs),
                    completion_criteria=item.completion_criteria,
                    dyad_tag_refs=list(item.dyad_tag_refs),
                    created_at=now,
                    updated_at=now,
                )
                for index, item in enumerate(plan.todos)
            ]
            workflow.plan_version = (
                plan.version if plan.version is not None else workflow.plan_version + 1
            )
            workflow.status = target_status
            workflow.current_todo_id = None
            workflow.dyad_tag_context = list(plan.dyad_tag_context)

        return await asyncio.to_thread(self._mutate, workflow_id, _apply)

    async def set_current_todo(
        self, workflow_id: int, todo_id: str | None, *, expected_plan: PlanStamp | None = None
    ) -> None:
        def _apply(workflow: Workflow) -> None:
            workflow.current_todo_id = todo_id

        await asyncio.to_thread(self._mutate, workflow_id, _apply, expected_plan)

    async def apply_todo_updates(
        self,
        workflow_id: int,
        updates: list[TodoUpdate],
        *,
        expected_plan: PlanStamp | None = None,
    ) -> list[str]:
        if not updates:
            return []
        for update in updates:
            if update.status is not None:
                validate_choice(update.status, TODO_STATUSES, "todo status")
        missing: list[str] = []

        def _apply(workflow: Workflow) -> None:
            missing.clear()
            now = utcnow_iso()
            for update in updates:
                todo = workflow.find_todo(update.todo_id)
                if todo is None:
                    missing.append(update.todo_id)
                    continue
                if update.status is not None:
                    todo.status = update.status
                if update.dyad_tag_refs is not None:
                    todo.dyad_tag_refs = list(update.dyad_tag_refs)
                todo.updated_at = now

        await asyncio.to_thread(self._mutate, workflow_id, _apply, expected_plan)
        for todo_id in missing:
            logger.warning("Todo %s missing for workflow %s", todo_id, workflow_id)
        return list(missing)

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
        validate_choice(log_type, LOG_TYPES, "log type")
        appended: list[ExecutionLog] = []

        def _apply(workflow: Workflow) -> None:
            appended.clear()
            todo = workflow.find_todo(todo_id)
            entry = ExecutionLog(
                id=max((log.id for log in workflow.logs), default=0) + 1,
                log_type=log_type,
                content=content,
                todo_id=todo.todo_id if todo else None,
                todo_key=todo_key or todo_id,
                dyad_tag_refs=list(dyad_tag_refs or []),
                metadata=dict(metadata) if metadata is not None else None,
            )
            workflow.logs.append(entry)
            appended.append(entry)

        await asyncio.to_thread(self._mutate, workflow_id, _apply, expected_plan)
        return appended[0]

    async def set_auto_advance(self, workflow_id: int, enabled: bool) -> None:
        def _apply(workflow: Workflow) -> None:
            workflow.auto_advance = bool(enabled)

        await asyncio.to_thread(self._mutate, workflow_id, _apply)

    async def set_last_command(
        self, workflow_id: int, command: str | None, *, expected_plan: PlanStamp | None = None
    ) -> None:
        def _apply(workflow: Workflow) -> None:
            workflow.last_command = command

        await asyncio.to_thread(self._mutate, workflow_id, _apply, expected_plan)

    async def delete_workflow_for_chat(self, chat_id: int) -> bool:
        return await asyncio.to_thread(self._delete, chat_id)
