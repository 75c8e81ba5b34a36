from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO, TypeVar

import click

from agentflow import __version__
from agentflow.backends import AgentBackend, BackendExecutionError, ClaudeCodeBackend
from agentflow.config import AgentFlowConfig, load_config, save_config, validate_config
from agentflow.engine import TurnPreparation, TurnResult, WorkflowEngine
from agentflow.logging_setup import setup_logging
from agentflow.models import WORKFLOW_STATUSES, SchemaError
from agentflow.parser import parse_artifacts
from agentflow.state import LocalWorkflowStore, WorkflowStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: AgentFlowConfig
    store: LocalWorkflowStore
    engine: WorkflowEngine


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _resolve_state_directory(root: Path, config: AgentFlowConfig) -> Path:
    directory = Path(config.state.directory)
    if not directory.is_absolute():
        directory = root / directory
    return directory


def _load_config_or_fail(config_path: Path) -> AgentFlowConfig:
    try:
        return load_config(config_path)
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc


def _build_backend(config: AgentFlowConfig, root: Path) -> AgentBackend:
    return ClaudeCodeBackend(binary=config.backend.binary, working_directory=root)


def _load_runtime(ctx: click.Context) -> Runtime:
    root: Path = ctx.obj["root"]
    config_path: Path = ctx.obj["config_path"]
    config = _load_config_or_fail(config_path)
    store = LocalWorkflowStore(_resolve_state_directory(root, config))
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        engine=WorkflowEngine(store, config),
    )


def _run(coroutine: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coroutine)
    except (WorkflowStoreError, SchemaError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_turn(index: int, result: TurnResult) -> None:
    workflow = result.workflow
    parts = [
        f"Turn {index}:",
        f"status={workflow.status}",
        f"plan=v{workflow.plan_version}",
        f"focus={workflow.current_todo_id or '-'}",
    ]
    if result.completed_todo_id:
        parts.append(f"completed={result.completed_todo_id}")
    if result.sanitized.dropped:
        parts.append(f"dropped={len(result.sanitized.dropped)}")
    if result.plan_held:
        parts.append("plan-held")
    if result.focus_blocked:
        parts.append("focus-blocked")
    click.echo(" ".join(parts))


async def _drive_turns(
    engine: WorkflowEngine,
    chat_id: int,
    prompt: str,
    backend: AgentBackend,
    *,
    follow: bool,
) -> list[TurnResult]:
    settings = engine.config.auto_advance
    results = [await engine.run_turn(chat_id, prompt, backend)]
    while follow and results[-1].should_auto_continue:
        if len(results) >= settings.max_consecutive_runs:
            logger.info(
                "Chat %s: stopping after %s consecutive runs", chat_id, len(results)
            )
            break
        if settings.delay_between_todos_ms:
            await asyncio.sleep(settings.delay_between_todos_ms / 1000)
        results.append(await engine.run_turn(chat_id, "continue", backend))
    return results


async def _prepare_locked(engine: WorkflowEngine, chat_id: int, prompt: str) -> TurnPreparation:
    async with engine.turn_lock(chat_id):
        return await engine.prepare_turn(chat_id, prompt)


async def _process_saved_response(
    engine: WorkflowEngine, chat_id: int, text: str, plan_status: str | None
) -> TurnResult:
    async with engine.turn_lock(chat_id):
        workflow = await engine.load_workflow(chat_id)
        return await engine.process_response(workflow.id, text, plan_status=plan_status)


@click.group()
@click.version_option(__version__, prog_name="agentflow")
@click.option("--config", "config_value", default="agentflow.toml", show_default=True)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def cli(ctx: click.Context, config_value: str, log_level: str, log_file: Path | None) -> None:
    """Plan-and-execute workflow engine for chat agents."""
    setup_logging(log_level.upper(), log_file)
    root = Path.cwd().resolve()
    ctx.obj = {"root": root, "config_path": _resolve_config_path(root, config_value)}


@cli.command("init")
@click.option("--preset", type=click.Choice(["human", "batch", "debug"]), default=None)
@click.pass_context
def init_command(ctx: click.Context, preset: str | None) -> None:
    root: Path = ctx.obj["root"]
    config_path: Path = ctx.obj["config_path"]
    if preset:
        config = AgentFlowConfig.preset(preset)
    else:
        config = _load_config_or_fail(config_path)
    save_config(config_path, config)

    state_directory = _resolve_state_directory(root, config)
    state_directory.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized agentflow in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_directory}")
    if preset:
        click.echo(f"Preset: {preset}")


@cli.command("parse")
@click.argument("source", type=click.File("r", encoding="utf-8"))
def parse_command(source: TextIO) -> None:
    """Print the artifacts found in a response (use - for stdin)."""
    _echo_json(parse_artifacts(source.read()).to_dict())


@cli.command("prepare")
@click.argument("chat_id", type=int)
@click.argument("prompt")
@click.pass_context
def prepare_command(ctx: click.Context, chat_id: int, prompt: str) -> None:
    runtime = _load_runtime(ctx)
    preparation = _run(_prepare_locked(runtime.engine, chat_id, prompt))
    click.echo(preparation.context_message)


@cli.command("process")
@click.argument("chat_id", type=int)
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--plan-status", type=click.Choice(list(WORKFLOW_STATUSES)), default=None)
@click.pass_context
def process_command(
    ctx: click.Context, chat_id: int, source: TextIO, plan_status: str | None
) -> None:
    runtime = _load_runtime(ctx)
    result = _run(
        _process_saved_response(runtime.engine, chat_id, source.read(), plan_status)
    )
    _echo_json(result.summary())


@cli.command("turn")
@click.argument("chat_id", type=int)
@click.argument("prompt")
@click.option("--follow", is_flag=True, default=False, help="Keep going while auto-advance allows.")
@click.pass_context
def turn_command(ctx: click.Context, chat_id: int, prompt: str, follow: bool) -> None:
    runtime = _load_runtime(ctx)
    backend = _build_backend(runtime.config, runtime.root)
    results = _run(
        _drive_turns(runtime.engine, chat_id, prompt, backend, follow=follow)
    )
    for index, result in enumerate(results, start=1):
        _echo_turn(index, result)
    if follow and results[-1].should_auto_continue:
        click.echo(
            f"Stopped after {len(results)} consecutive runs; "
            "send 'continue' to resume."
        )


@cli.command("status")
@click.argument("chat_id", type=int)
@click.option("--verbose", is_flag=True, default=False)
@click.pass_context
def status_command(ctx: click.Context, chat_id: int, verbose: bool) -> None:
    runtime = _load_runtime(ctx)
    workflow = _run(runtime.store.get_workflow_by_chat(chat_id))
    if workflow is None:
        raise click.ClickException(f"No workflow for chat {chat_id}")
    _echo_json(workflow.to_dict(include_logs=verbose))


@cli.command("auto")
@click.argument("chat_id", type=int)
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
def auto_command(ctx: click.Context, chat_id: int, state: str) -> None:
    runtime = _load_runtime(ctx)
    workflow = _run(runtime.engine.set_auto_advance(chat_id, state == "on"))
    click.echo(
        f"Auto-advance {'enabled' if workflow.auto_advance else 'disabled'} for chat {chat_id}"
    )


@cli.command("reset")
@click.argument("chat_id", type=int)
@click.pass_context
def reset_command(ctx: click.Context, chat_id: int) -> None:
    runtime = _load_runtime(ctx)
    if _run(runtime.engine.reset(chat_id)):
        click.echo(f"Removed workflow for chat {chat_id}")
    else:
        click.echo(f"No workflow for chat {chat_id}")


@cli.command("config-check")
@click.pass_context
def config_check_command(ctx: click.Context) -> None:
    config_path: Path = ctx.obj["config_path"]
    config = _load_config_or_fail(config_path)
    errors = validate_config(config)
    if errors:
        for error in errors:
            click.echo(f"- {error}", err=True)
        raise click.ClickException(f"{len(errors)} configuration problem(s) in {config_path}")
    click.echo(f"Configuration OK: {config_path}")
