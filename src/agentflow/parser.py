"""Extraction of ``<dyad-agent-*>`` directives from streamed agent output.

The parser is best-effort: every tag is validated on its own and problems
are collected as warnings on the returned bundle instead of being raised.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentflow.models import (
    LOG_TYPES,
    TODO_STATUSES,
    WORKFLOW_STATUSES,
    Analysis,
    ParsedLog,
    Plan,
    SchemaError,
    TodoUpdate,
)

# Attribute text stops at the next "<" or ">", which keeps every scan linear.
OPEN_TAG_PATTERN = re.compile(r"<dyad-agent-([a-z][a-z-]*)((?:\s[^<>]*)?)>", re.IGNORECASE)
SELF_CLOSING_TAG_PATTERN = re.compile(
    r"<dyad-agent-([a-z][a-z-]*)((?:\s[^<>]*)?)/>",
    re.IGNORECASE,
)
ATTRIBUTE_PATTERN = re.compile(r"""([a-zA-Z0-9_-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
REFS_SPLIT_PATTERN = re.compile(r"[\s,]+")

TAG_KINDS = ("analysis", "plan", "todo-update", "log", "status", "focus", "auto", "error")
# Rendered by the chat UI only; carry no workflow state.
PASSIVE_TAGS = ("todo", "summary")


@dataclass(slots=True)
class AgentTag:
    name: str
    attrs: dict[str, str] = field(default_factory=dict)
    body: str = ""
    self_closing: bool = False

    @property
    def kind(self) -> str:
        if self.name in TAG_KINDS:
            return self.name
        if self.name in PASSIVE_TAGS:
            return "passive"
        return "unrecognized"

    def attr(self, *names: str) -> str | None:
        for name in names:
            value = self.attrs.get(name.lower())
            if value is not None:
                return value
        return None


@dataclass(slots=True)
class ArtifactBundle:
    analysis: Analysis | None = None
    plan: Plan | None = None
    todo_updates: list[TodoUpdate] = field(default_factory=list)
    logs: list[ParsedLog] = field(default_factory=list)
    workflow_status: str | None = None
    focus_requested: bool = False
    current_todo_id: str | None = None
    auto_advance: bool | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "plan": None,
            "todoUpdates": [update.to_dict() for update in self.todo_updates],
            "logs": [log.to_dict() for log in self.logs],
            "workflowStatus": self.workflow_status,
            "autoAdvance": self.auto_advance,
            "warnings": list(self.warnings),
        }
        if self.plan is not None:
            payload["plan"] = {
                "version": self.plan.version,
                "todos": [
                    {
                        "todoId": todo.todo_id,
                        "title": todo.title,
                        "status": todo.status,
                        "owner": todo.owner,
                    }
                    for todo in self.plan.todos
                ],
                "dyadTagRefs": list(self.plan.dyad_tag_refs),
                "dyadTagContext": list(self.plan.dyad_tag_context),
            }
        if self.focus_requested:
            payload["currentTodoId"] = self.current_todo_id
        return payload


def parse_attributes(raw: str | None) -> dict[str, str]:
    attrs: dict[str, str] = {}
    if not raw:
        return attrs
    for match in ATTRIBUTE_PATTERN.finditer(raw):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1).lower()] = value or ""
    return attrs


def split_refs(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    tokens = [token.strip() for token in REFS_SPLIT_PATTERN.split(raw) if token.strip()]
    return tokens or None


def _find_closer(
    content: str, name: str, start: int, found: dict[str, tuple[int, int] | None]
) -> tuple[int, int] | None:
    """Span of the first ``</dyad-agent-name>`` at or after ``start``.

    ``found`` remembers the last lookup per name: a closer found earlier is
    still the first one for any later start before it, and a failed lookup
    stays failed for every later start.
    """
    if name in found:
        span = found[name]
        if span is None or span[0] >= start:
            return span
    match = re.compile(rf"</dyad-agent-{re.escape(name)}\s*>", re.IGNORECASE).search(
        content, start
    )
    found[name] = match.span() if match else None
    return found[name]


def scan_tags(content: str) -> list[AgentTag]:
    tags: list[AgentTag] = []
    closers: dict[str, tuple[int, int] | None] = {}
    position = 0
    while True:
        match = OPEN_TAG_PATTERN.search(content, position)
        if match is None:
            break
        position = match.end()
        raw_attrs = match.group(2)
        if raw_attrs.endswith("/"):
            continue
        name = match.group(1).lower()
        closer = _find_closer(content, name, match.end(), closers)
        if closer is None:
            continue
        tags.append(
            AgentTag(
                name=name,
                attrs=parse_attributes(raw_attrs),
                body=content[match.end() : closer[0]],
            )
        )
        position = closer[1]
    for match in SELF_CLOSING_TAG_PATTERN.finditer(content):
        tags.append(
            AgentTag(
                name=match.group(1).lower(),
                attrs=parse_attributes(match.group(2)),
                self_closing=True,
            )
        )
    return tags


# Marks a tag body that produced no JSON value at all.
_NO_PAYLOAD = object()


def _load_json(body: str, context: str, bundle: ArtifactBundle) -> Any:
    trimmed = body.strip()
    if not trimmed:
        return _NO_PAYLOAD
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as exc:
        bundle.warnings.append(f"Failed to parse JSON for {context}: {exc}")
        return _NO_PAYLOAD


def _handle_analysis(tag: AgentTag, bundle: ArtifactBundle) -> None:
    payload = _load_json(tag.body, "analysis", bundle)
    if payload is _NO_PAYLOAD:
        return
    try:
        bundle.analysis = Analysis.from_dict(payload)
    except SchemaError as exc:
        bundle.warnings.append(f"Failed to parse JSON for analysis: {exc}")


def _handle_plan(tag: AgentTag, bundle: ArtifactBundle) -> None:
    payload = _load_json(tag.body, "plan", bundle)
    if payload is _NO_PAYLOAD:
        return
    try:
        plan = Plan.from_dict(payload)
    except SchemaError as exc:
        bundle.warnings.append(f"Failed to parse JSON for plan: {exc}")
        return

    raw_version = tag.attr("version")
    if raw_version:
        try:
            plan.version = int(raw_version.strip())
        except ValueError:
            bundle.warnings.append(f"Ignoring non-numeric plan version: {raw_version}")
    if "dyadTagRefs" not in payload:
        plan.dyad_tag_refs = split_refs(tag.attr("dyadTagRefs")) or []
    if "dyadTagContext" not in payload:
        plan.dyad_tag_context = split_refs(tag.attr("dyadTagContext")) or []
    bundle.plan = plan


def _handle_todo_update(tag: AgentTag, bundle: ArtifactBundle) -> None:
    todo_id = tag.attr("todoId", "id")
    if todo_id is None:
        bundle.warnings.append("Invalid todo update payload: missing todoId attribute")
        return
    status = tag.attr("status")
    if status is not None and status not in TODO_STATUSES:
        bundle.warnings.append(f"Invalid todo update payload: unknown status {status!r}")
        return
    note = tag.body.strip()
    bundle.todo_updates.append(
        TodoUpdate(
            todo_id=todo_id,
            status=status,
            dyad_tag_refs=split_refs(tag.attr("dyadTagRefs")),
            note=note or None,
        )
    )


def _handle_log(tag: AgentTag, bundle: ArtifactBundle) -> None:
    log_type = tag.attr("type", "logType") or "execution"
    if log_type not in LOG_TYPES:
        bundle.warnings.append(f"Unknown log type: {log_type}")
        return
    content = tag.body.strip()
    metadata = None
    if content.startswith("{"):
        try:
            decoded = json.loads(content)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            metadata = decoded
    bundle.logs.append(
        ParsedLog(
            log_type=log_type,
            content=content,
            todo_id=tag.attr("todoId", "id"),
            todo_key=tag.attr("todoKey"),
            dyad_tag_refs=split_refs(tag.attr("dyadTagRefs")),
            metadata=metadata,
        )
    )


def _handle_error(tag: AgentTag, bundle: ArtifactBundle) -> None:
    bundle.logs.append(
        ParsedLog(
            log_type="system",
            content=tag.body.strip(),
            todo_id=tag.attr("todoId"),
            dyad_tag_refs=split_refs(tag.attr("dyadTagRefs")),
        )
    )


def _handle_status(tag: AgentTag, bundle: ArtifactBundle) -> None:
    raw_state = tag.attr("state")
    value = (raw_state if raw_state is not None else tag.body).strip()
    if value in WORKFLOW_STATUSES:
        bundle.workflow_status = value
    else:
        bundle.warnings.append(f"Invalid workflow status value: {value}")


def _handle_focus(tag: AgentTag, bundle: ArtifactBundle) -> None:
    todo_id = tag.attr("todoId", "id")
    bundle.focus_requested = True
    bundle.current_todo_id = todo_id.strip() if todo_id and todo_id.strip() else None


def _handle_auto(tag: AgentTag, bundle: ArtifactBundle) -> None:
    enabled = tag.attr("enabled")
    if enabled:
        bundle.auto_advance = enabled.strip().lower() in {"true", "1"}
    elif tag.body.strip():
        bundle.auto_advance = tag.body.strip().lower() in {"true", "1"}


TAG_HANDLERS: dict[str, Callable[[AgentTag, ArtifactBundle], None]] = {
    "analysis": _handle_analysis,
    "plan": _handle_plan,
    "todo-update": _handle_todo_update,
    "log": _handle_log,
    "status": _handle_status,
    "focus": _handle_focus,
    "auto": _handle_auto,
    "error": _handle_error,
}


def parse_artifacts(content: str) -> ArtifactBundle:
    bundle = ArtifactBundle()
    for tag in scan_tags(content):
        kind = tag.kind
        if kind == "passive":
            continue
        if kind == "unrecognized":
            bundle.warnings.append(f"Unhandled agent tag: {tag.name}")
            continue
        TAG_HANDLERS[kind](tag, bundle)
    return bundle
