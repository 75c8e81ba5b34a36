from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TodoStatus = Literal["pending", "ready", "in_progress", "completed", "blocked", "revising"]
WorkflowStatus = Literal[
    "idle",
    "analysis",
    "plan_ready",
    "executing",
    "awaiting_user",
    "reviewing",
    "completed",
    "revising",
    "error",
]
LogType = Literal["analysis", "plan", "execution", "review", "command", "validation", "system"]
CommandKind = Literal[
    "brief", "start", "continue", "revise", "change_plan", "switch_mode", "custom"
]

TODO_STATUSES: tuple[str, ...] = (
    "pending",
    "ready",
    "in_progress",
    "completed",
    "blocked",
    "revising",
)
WORKFLOW_STATUSES: tuple[str, ...] = (
    "idle",
    "analysis",
    "plan_ready",
    "executing",
    "awaiting_user",
    "reviewing",
    "completed",
    "revising",
    "error",
)
LOG_TYPES: tuple[str, ...] = (
    "analysis",
    "plan",
    "execution",
    "review",
    "command",
    "validation",
    "system",
)
COMMAND_KINDS: tuple[str, ...] = (
    "brief",
    "start",
    "continue",
    "revise",
    "change_plan",
    "switch_mode",
    "custom",
)


class SchemaError(ValueError):
    """Raised when an agent payload does not match its expected shape."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def validate_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    if not isinstance(value, str) or value not in choices:
        raise SchemaError(f"Invalid {label}: {value!r}")
    return value


def _require_mapping(data: Any, context: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise SchemaError(f"{context} must be a JSON object")
    return data


def _string_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SchemaError(f"'{key}' must be a list of strings")
    return list(value)


def _optional_string(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaError(f"'{key}' must be a string")
    return value


def _required_string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise SchemaError(f"'{key}' is required and must be a string")
    return value


@dataclass(slots=True)
class Analysis:
    goals: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    clarifications: list[str] = field(default_factory=list)
    dyad_tag_refs: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Analysis:
        payload = _require_mapping(data, "analysis")
        return cls(
            goals=_string_list(payload, "goals"),
            constraints=_string_list(payload, "constraints"),
            acceptance_criteria=_string_list(payload, "acceptanceCriteria"),
            risks=_string_list(payload, "risks"),
            clarifications=_string_list(payload, "clarifications"),
            dyad_tag_refs=_string_list(payload, "dyadTagRefs"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "goals": list(self.goals),
            "constraints": list(self.constraints),
            "acceptanceCriteria": list(self.acceptance_criteria),
            "risks": list(self.risks),
            "clarifications": list(self.clarifications),
            "dyadTagRefs": list(self.dyad_tag_refs),
        }

    @property
    def has_open_clarifications(self) -> bool:
        return any(item.strip() for item in self.clarifications)


@dataclass(slots=True)
class PlanTodo:
    todo_id: str
    title: str
    description: str | None = None
    owner: str | None = None
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    completion_criteria: str | None = None
    status: str | None = None
    dyad_tag_refs: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> PlanTodo:
        payload = _require_mapping(data, "plan todo")
        status = payload.get("status")
        if status is not None:
            status = validate_choice(status, TODO_STATUSES, "todo status")
        return cls(
            todo_id=_required_string(payload, "todoId"),
            title=_required_string(payload, "title"),
            description=_optional_string(payload, "description"),
            owner=_optional_string(payload, "owner"),
            inputs=_string_list(payload, "inputs"),
            outputs=_string_list(payload, "outputs"),
            completion_criteria=_optional_string(payload, "completionCriteria"),
            status=status,
            dyad_tag_refs=_string_list(payload, "dyadTagRefs"),
        )


@dataclass(slots=True)
class Plan:
    todos: list[PlanTodo]
    version: int | None = None
    dyad_tag_refs: list[str] = field(default_factory=list)
    dyad_tag_context: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Plan:
        payload = _require_mapping(data, "plan")
        raw_todos = payload.get("todos")
        if not isinstance(raw_todos, list):
            raise SchemaError("'todos' is required and must be a list")
        version = payload.get("version")
        if version is not None:
            if isinstance(version, bool) or not isinstance(version, (int, float)):
                raise SchemaError("'version' must be a number")
            version = int(version)
        return cls(
            todos=[PlanTodo.from_dict(item) for item in raw_todos],
            version=version,
            dyad_tag_refs=_string_list(payload, "dyadTagRefs"),
            dyad_tag_context=_string_list(payload, "dyadTagContext"),
        )


@dataclass(slots=True)
class TodoUpdate:
    todo_id: str
    status: str | None = None
    dyad_tag_refs: list[str] | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"todoId": self.todo_id}
        if self.status is not None:
            payload["status"] = self.status
        if self.dyad_tag_refs is not None:
            payload["dyadTagRefs"] = list(self.dyad_tag_refs)
        if self.note is not None:
            payload["note"] = self.note
        return payload


@dataclass(slots=True)
class ParsedLog:
    log_type: str
    content: str
    todo_id: str | None = None
    todo_key: str | None = None
    dyad_tag_refs: list[str] | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logType": self.log_type,
            "content": self.content,
            "todoId": self.todo_id,
            "todoKey": self.todo_key,
            "dyadTagRefs": self.dyad_tag_refs,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class Todo:
    todo_id: str
    title: str
    status: str = "pending"
    order_index: int = 0
    description: str | None = None
    owner: str | None = None
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    completion_criteria: str | None = None
    dyad_tag_refs: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Todo:
        status = record.get("status") or "pending"
        if status not in TODO_STATUSES:
            status = "pending"
        return cls(
            todo_id=str(record["todo_id"]),
            title=str(record.get("title", "")),
            status=status,
            order_index=int(record.get("order_index", 0)),
            description=record.get("description"),
            owner=record.get("owner"),
            inputs=list(record.get("inputs") or []),
            outputs=list(record.get("outputs") or []),
            completion_criteria=record.get("completion_criteria"),
            dyad_tag_refs=list(record.get("dyad_tag_refs") or []),
            created_at=record.get("created_at") or utcnow_iso(),
            updated_at=record.get("updated_at") or utcnow_iso(),
        )

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    def summary(self) -> dict[str, Any]:
        return {
            "todoId": self.todo_id,
            "title": self.title,
            "description": self.description,
            "owner": self.owner,
            "status": self.status,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "completionCriteria": self.completion_criteria,
            "dyadTagRefs": list(self.dyad_tag_refs),
            "orderIndex": self.order_index,
        }


@dataclass(slots=True)
class ExecutionLog:
    id: int
    log_type: str
    content: str
    todo_id: str | None = None
    todo_key: str | None = None
    dyad_tag_refs: list[str] = field(default_factory=list)
    metadata: dict[str, Any] | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ExecutionLog:
        log_type = record.get("log_type")
        if log_type not in LOG_TYPES:
            log_type = "system"
        return cls(
            id=int(record["id"]),
            log_type=log_type,
            content=str(record.get("content", "")),
            todo_id=record.get("todo_id"),
            todo_key=record.get("todo_key"),
            dyad_tag_refs=list(record.get("dyad_tag_refs") or []),
            metadata=record.get("metadata"),
            created_at=record.get("created_at") or utcnow_iso(),
        )

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "logType": self.log_type,
            "content": self.content,
            "todoId": self.todo_id,
            "todoKey": self.todo_key,
            "dyadTagRefs": list(self.dyad_tag_refs),
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }


@dataclass(slots=True)
class Workflow:
    """Per-chat workflow snapshot: status, plan, focus and audit history."""

    id: int
    chat_id: int
    status: str = "idle"
    plan_version: int = 0
    current_todo_id: str | None = None
    auto_advance: bool = False
    analysis: Analysis | None = None
    dyad_tag_context: list[str] = field(default_factory=list)
    last_command: str | None = None
    todos: list[Todo] = field(default_factory=list)
    logs: list[ExecutionLog] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def has_plan(self) -> bool:
        return bool(self.todos)

    @property
    def pending_todos(self) -> list[Todo]:
        return [todo for todo in self.todos if todo.status != "completed"]

    @property
    def active_todo(self) -> Todo | None:
        if self.current_todo_id is None:
            return None
        return self.find_todo(self.current_todo_id)

    @property
    def plan_stamp(self) -> tuple[int, tuple[str, ...]]:
        """Committed plan identity: version plus the ordered todo ids."""
        return self.plan_version, tuple(todo.todo_id.strip().upper() for todo in self.todos)

    def is_active(self, todo: Todo) -> bool:
        return todo.todo_id == self.current_todo_id

    def find_todo(self, todo_id: str | None) -> Todo | None:
        if not todo_id:
            return None
        wanted = todo_id.strip().upper()
        for todo in self.todos:
            if todo.todo_id.strip().upper() == wanted:
                return todo
        return None

    def logs_for_todo(self, todo_id: str) -> list[ExecutionLog]:
        return [log for log in self.logs if log.todo_id == todo_id]

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Workflow:
        status = record.get("status") or "idle"
        if status not in WORKFLOW_STATUSES:
            status = "idle"
        analysis_record = record.get("analysis")
        analysis = None
        if isinstance(analysis_record, dict):
            try:
                analysis = Analysis.from_dict(analysis_record)
            except SchemaError:
                analysis = None
        todos = [Todo.from_record(item) for item in record.get("todos") or []]
        todos.sort(key=lambda todo: todo.order_index)
        logs = [ExecutionLog.from_record(item) for item in record.get("logs") or []]
        return cls(
            id=int(record["id"]),
            chat_id=int(record["chat_id"]),
            status=status,
            plan_version=int(record.get("plan_version") or 0),
            current_todo_id=record.get("current_todo_id"),
            auto_advance=bool(record.get("auto_advance", False)),
            analysis=analysis,
            dyad_tag_context=list(record.get("dyad_tag_context") or []),
            last_command=record.get("last_command"),
            todos=todos,
            logs=logs,
            created_at=record.get("created_at") or utcnow_iso(),
            updated_at=record.get("updated_at") or utcnow_iso(),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "status": self.status,
            "plan_version": self.plan_version,
            "current_todo_id": self.current_todo_id,
            "auto_advance": self.auto_advance,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "dyad_tag_context": list(self.dyad_tag_context),
            "last_command": self.last_command,
            "todos": [todo.to_record() for todo in self.todos],
            "logs": [log.to_record() for log in self.logs],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self, *, include_logs: bool = True) -> dict[str, Any]:
        todos: list[dict[str, Any]] = []
        for todo in self.todos:
            item = todo.summary()
            item["isActive"] = self.is_active(todo)
            if include_logs:
                item["logs"] = [log.to_dict() for log in self.logs_for_todo(todo.todo_id)]
            todos.append(item)
        payload: dict[str, Any] = {
            "id": self.id,
            "chatId": self.chat_id,
            "status": self.status,
            "planVersion": self.plan_version,
            "currentTodoId": self.current_todo_id,
            "autoAdvance": self.auto_advance,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "dyadTagContext": list(self.dyad_tag_context),
            "lastCommand": self.last_command,
            "todos": todos,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_logs:
            payload["logs"] = [log.to_dict() for log in self.logs]
        return payload


@dataclass(slots=True)
class Command:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        return str(self.payload.get("prompt", ""))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "payload": dict(self.payload)}
