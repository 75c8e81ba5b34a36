import json
from collections.abc import AsyncIterator
from dataclasses import replace
from pathlib import Path

import pytest
from click.testing import CliRunner

from agentflow.backends.base import AgentBackend
from agentflow.cli import cli
from agentflow.config import load_config, save_config
from agentflow.engine import WorkflowEngine

PLAN_RESPONSE = (
    '<dyad-agent-analysis>{"goals": ["Login page"]}</dyad-agent-analysis>'
    '<dyad-agent-plan>{"todos": ['
    '{"todoId": "TD-01", "title": "Form"},'
    '{"todoId": "TD-02", "title": "API"}'
    "]}</dyad-agent-plan>"
    '<dyad-agent-status state="plan_ready"></dyad-agent-status>'
)
RELEASE_FOCUS = (
    "<dyad-agent-log>still working</dyad-agent-log>"
    '<dyad-agent-focus todoId=""></dyad-agent-focus>'
)
COMPLETE_TD01 = (
    '<dyad-agent-todo-update todoId="TD-01" status="completed">done</dyad-agent-todo-update>'
)


class FakeBackend(AgentBackend):
    def __init__(self, responses: list[str]) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context_message: str | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context_message
        self.prompts.append(user_prompt)
        yield self.responses.pop(0)


def _install_backend(monkeypatch: pytest.MonkeyPatch, backend: FakeBackend) -> None:
    monkeypatch.setattr("agentflow.cli._build_backend", lambda config, root: backend)


def _tune_auto_advance(config_path: Path, **changes: int) -> None:
    config = load_config(config_path)
    save_config(config_path, replace(config, auto_advance=replace(config.auto_advance, **changes)))


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    backend = FakeBackend([PLAN_RESPONSE, RELEASE_FOCUS, COMPLETE_TD01])
    _install_backend(monkeypatch, backend)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "agentflow.toml").exists()
    assert (tmp_path / ".agentflow" / "state").is_dir()
    _tune_auto_advance(tmp_path / "agentflow.toml", delay_between_todos_ms=0)

    plan_result = runner.invoke(cli, ["turn", "1", "Build a login page"])
    assert plan_result.exit_code == 0, plan_result.output
    assert "Turn 1: status=plan_ready plan=v1 focus=-" in plan_result.output

    auto_result = runner.invoke(cli, ["auto", "1", "on"])
    assert auto_result.exit_code == 0
    assert "Auto-advance enabled for chat 1" in auto_result.output

    follow_result = runner.invoke(cli, ["--log-level", "ERROR", "turn", "1", "start", "--follow"])
    assert follow_result.exit_code == 0, follow_result.output
    lines = follow_result.output.strip().splitlines()
    assert lines[0] == "Turn 1: status=executing plan=v1 focus=-"
    assert lines[1] == "Turn 2: status=executing plan=v1 focus=- completed=TD-01"
    assert backend.prompts == ["Build a login page", "start", "continue"]

    status_result = runner.invoke(cli, ["--log-level", "ERROR", "status", "1", "--verbose"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["autoAdvance"] is True
    assert [todo["status"] for todo in payload["todos"]] == ["completed", "pending"]
    assert payload["todos"][0]["logs"]

    reset_result = runner.invoke(cli, ["reset", "1"])
    assert reset_result.exit_code == 0
    assert "Removed workflow for chat 1" in reset_result.output

    missing_result = runner.invoke(cli, ["status", "1"])
    assert missing_result.exit_code == 1
    assert "No workflow for chat 1" in missing_result.output


def test_follow_stops_at_consecutive_run_limit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    backend = FakeBackend([PLAN_RESPONSE, RELEASE_FOCUS, RELEASE_FOCUS, RELEASE_FOCUS])
    _install_backend(monkeypatch, backend)
    runner = CliRunner()

    assert runner.invoke(cli, ["init"]).exit_code == 0
    _tune_auto_advance(
        tmp_path / "agentflow.toml", delay_between_todos_ms=0, max_consecutive_runs=2
    )
    assert runner.invoke(cli, ["turn", "9", "Build a login page"]).exit_code == 0
    assert runner.invoke(cli, ["auto", "9", "on"]).exit_code == 0

    result = runner.invoke(cli, ["--log-level", "ERROR", "turn", "9", "start", "--follow"])

    assert result.exit_code == 0, result.output
    assert "Stopped after 2 consecutive runs" in result.output
    assert len(backend.responses) == 1


def test_prepare_and_process_saved_response(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    response_file = tmp_path / "response.txt"
    response_file.write_text(PLAN_RESPONSE, encoding="utf-8")

    prepare_result = runner.invoke(cli, ["prepare", "3", "Build a login page"])
    assert prepare_result.exit_code == 0
    assert prepare_result.output.startswith("<agent-workflow-context>")

    process_result = runner.invoke(
        cli, ["--log-level", "ERROR", "process", "3", str(response_file)]
    )
    assert process_result.exit_code == 0, process_result.output
    summary = json.loads(process_result.output)
    assert summary["status"] == "plan_ready"
    assert summary["planVersion"] == 1
    assert summary["shouldAutoContinue"] is False

    start_result = runner.invoke(cli, ["prepare", "3", "start"])
    context = start_result.output.strip()[len("<agent-workflow-context>") : -len("</agent-workflow-context>")]
    assert json.loads(context)["currentTodoId"] == "TD-01"


def test_parse_command_reads_file_and_stdin(tmp_path: Path) -> None:
    runner = CliRunner()
    response_file = tmp_path / "response.txt"
    response_file.write_text(PLAN_RESPONSE, encoding="utf-8")

    from_file = runner.invoke(cli, ["parse", str(response_file)])
    from_stdin = runner.invoke(
        cli, ["parse", "-"], input='<dyad-agent-status state="bogus"></dyad-agent-status>'
    )

    assert from_file.exit_code == 0
    assert json.loads(from_file.output)["plan"]["todos"][1]["todoId"] == "TD-02"
    assert from_stdin.exit_code == 0
    assert json.loads(from_stdin.output)["warnings"] == ["Invalid workflow status value: bogus"]


def test_init_with_preset_and_config_check(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["--config", "conf/flow.toml", "init", "--preset", "batch"])
    assert init_result.exit_code == 0
    assert "Preset: batch" in init_result.output
    assert load_config(tmp_path / "conf" / "flow.toml").auto_advance.default_enabled is True

    ok_result = runner.invoke(cli, ["--config", "conf/flow.toml", "config-check"])
    assert ok_result.exit_code == 0
    assert "Configuration OK" in ok_result.output

    (tmp_path / "bad.toml").write_text(
        "[enforcement]\nmax_simultaneous_todos = 4\n", encoding="utf-8"
    )
    bad_result = runner.invoke(cli, ["--config", "bad.toml", "config-check"])
    assert bad_result.exit_code == 1
    assert "conflicts with max_simultaneous_todos" in bad_result.output

    (tmp_path / "broken.toml").write_text("[enforcement\n", encoding="utf-8")
    broken_result = runner.invoke(cli, ["--config", "broken.toml", "config-check"])
    assert broken_result.exit_code == 1
    assert "Invalid configuration" in broken_result.output


def test_prepare_holds_the_chat_turn_lock(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    original = WorkflowEngine.prepare_turn
    held: list[bool] = []

    async def recording_prepare(self: WorkflowEngine, chat_id: int, prompt: str):
        held.append(self._locks[chat_id].locked())
        return await original(self, chat_id, prompt)

    monkeypatch.setattr(WorkflowEngine, "prepare_turn", recording_prepare)

    result = CliRunner().invoke(cli, ["prepare", "5", "Build a login page"])

    assert result.exit_code == 0, result.output
    assert held == [True]
