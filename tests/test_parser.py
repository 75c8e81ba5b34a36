import json
import time

from agentflow.parser import ArtifactBundle, parse_artifacts, parse_attributes, scan_tags, split_refs


FULL_RESPONSE = """
I looked at the brief.

<dyad-agent-analysis>{"goals": ["Ship login"], "constraints": ["No new deps"],
"acceptanceCriteria": ["User can sign in"], "risks": [], "clarifications": [],
"dyadTagRefs": ["write-1"]}</dyad-agent-analysis>

<dyad-agent-plan version="3">{"todos": [
  {"todoId": "TD-01", "title": "Add form", "owner": "Architect", "inputs": [], "outputs": ["form.tsx"]},
  {"todoId": "TD-02", "title": "Wire API", "completionCriteria": "POST /login works"}
], "dyadTagContext": ["ctx-a"]}</dyad-agent-plan>

<dyad-agent-todo-update todoId="TD-01" status="in_progress" dyadTagRefs="a, b c">Started</dyad-agent-todo-update>
<dyad-agent-log type="execution" todoId="TD-01" dyadTagRefs="write-1">Created the form</dyad-agent-log>
<dyad-agent-status state="executing"></dyad-agent-status>
"""


def test_parse_full_response_populates_every_section() -> None:
    bundle = parse_artifacts(FULL_RESPONSE)

    assert bundle.warnings == []
    assert bundle.analysis is not None
    assert bundle.analysis.goals == ["Ship login"]
    assert bundle.analysis.acceptance_criteria == ["User can sign in"]
    assert bundle.analysis.dyad_tag_refs == ["write-1"]

    assert bundle.plan is not None
    assert bundle.plan.version == 3
    assert [todo.todo_id for todo in bundle.plan.todos] == ["TD-01", "TD-02"]
    assert bundle.plan.todos[0].outputs == ["form.tsx"]
    assert bundle.plan.todos[1].completion_criteria == "POST /login works"
    assert bundle.plan.dyad_tag_context == ["ctx-a"]

    assert len(bundle.todo_updates) == 1
    update = bundle.todo_updates[0]
    assert update.todo_id == "TD-01"
    assert update.status == "in_progress"
    assert update.dyad_tag_refs == ["a", "b", "c"]
    assert update.note == "Started"

    assert len(bundle.logs) == 1
    assert bundle.logs[0].log_type == "execution"
    assert bundle.logs[0].todo_id == "TD-01"
    assert bundle.logs[0].content == "Created the form"

    assert bundle.workflow_status == "executing"
    assert bundle.focus_requested is False


def test_parse_is_deterministic_for_same_input() -> None:
    first = parse_artifacts(FULL_RESPONSE)
    second = parse_artifacts(FULL_RESPONSE)

    assert first == second
    assert first.to_dict() == second.to_dict()


def test_focus_and_auto_tags() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-focus todoId="TD-02"></dyad-agent-focus>'
        '<dyad-agent-auto enabled="true"></dyad-agent-auto>'
    )

    assert bundle.focus_requested is True
    assert bundle.current_todo_id == "TD-02"
    assert bundle.auto_advance is True
    assert bundle.warnings == []


def test_focus_without_id_requests_clear() -> None:
    bundle = parse_artifacts('<dyad-agent-focus todoId=""></dyad-agent-focus>')

    assert bundle.focus_requested is True
    assert bundle.current_todo_id is None
    assert bundle.to_dict()["currentTodoId"] is None


def test_no_focus_tag_leaves_focus_untouched() -> None:
    bundle = parse_artifacts("plain prose with no directives")

    assert bundle.focus_requested is False
    assert "currentTodoId" not in bundle.to_dict()
    assert bundle == ArtifactBundle()


def test_self_closing_tags_are_recognized() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-focus id="TD-03" /> <dyad-agent-auto enabled="false"/>'
    )

    assert bundle.current_todo_id == "TD-03"
    assert bundle.auto_advance is False


def test_auto_tag_body_is_used_without_attribute() -> None:
    bundle = parse_artifacts("<dyad-agent-auto>TRUE</dyad-agent-auto>")

    assert bundle.auto_advance is True


def test_invalid_plan_json_keeps_valid_analysis() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-plan>{"todos":[{"todoId":"TD-01","title":"x"}]</dyad-agent-plan>'
        '<dyad-agent-analysis>{"goals": ["g"]}</dyad-agent-analysis>'
    )

    assert bundle.plan is None
    assert bundle.analysis is not None
    assert bundle.analysis.goals == ["g"]
    assert bundle.warnings
    assert bundle.warnings[0].startswith("Failed to parse JSON for plan")


def test_truncated_plan_json_produces_warning_only() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-plan>{"todos":[{"todoId":"TD-01","title":"x"}]</dyad-agent-plan>'
    )

    assert bundle.plan is None
    assert len(bundle.warnings) > 0


def test_plan_missing_todos_is_rejected() -> None:
    bundle = parse_artifacts('<dyad-agent-plan>{"version": 2}</dyad-agent-plan>')

    assert bundle.plan is None
    assert any("todos" in warning for warning in bundle.warnings)


def test_empty_json_body_is_ignored_silently() -> None:
    bundle = parse_artifacts("<dyad-agent-analysis>   </dyad-agent-analysis>")

    assert bundle.analysis is None
    assert bundle.warnings == []


def test_invalid_status_value_warns() -> None:
    bundle = parse_artifacts("<dyad-agent-status>sleeping</dyad-agent-status>")

    assert bundle.workflow_status is None
    assert bundle.warnings == ["Invalid workflow status value: sleeping"]


def test_unknown_log_type_warns_and_is_dropped() -> None:
    bundle = parse_artifacts('<dyad-agent-log type="gossip">hi</dyad-agent-log>')

    assert bundle.logs == []
    assert bundle.warnings == ["Unknown log type: gossip"]


def test_log_type_defaults_to_execution_and_accepts_alias() -> None:
    bundle = parse_artifacts(
        "<dyad-agent-log>did a thing</dyad-agent-log>"
        '<dyad-agent-log logType="review" todoKey="k-1">{"passed": true}</dyad-agent-log>'
    )

    assert [log.log_type for log in bundle.logs] == ["execution", "review"]
    assert bundle.logs[1].todo_key == "k-1"
    assert bundle.logs[1].metadata == {"passed": True}


def test_error_tag_becomes_system_log() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-error todoId="TD-01">Build failed</dyad-agent-error>'
    )

    assert len(bundle.logs) == 1
    assert bundle.logs[0].log_type == "system"
    assert bundle.logs[0].content == "Build failed"
    assert bundle.logs[0].todo_id == "TD-01"


def test_todo_update_requires_id_and_known_status() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-todo-update status="completed"></dyad-agent-todo-update>'
        '<dyad-agent-todo-update todoId="TD-01" status="finished"></dyad-agent-todo-update>'
        '<dyad-agent-todo-update id="TD-02"></dyad-agent-todo-update>'
    )

    assert len(bundle.warnings) == 2
    assert all(warning.startswith("Invalid todo update payload") for warning in bundle.warnings)
    assert len(bundle.todo_updates) == 1
    assert bundle.todo_updates[0].todo_id == "TD-02"
    assert bundle.todo_updates[0].status is None


def test_unrecognized_tag_is_reported_and_passive_tags_are_not() -> None:
    bundle = parse_artifacts(
        "<dyad-agent-dance>x</dyad-agent-dance>"
        "<dyad-agent-todo>rendered</dyad-agent-todo>"
        "<dyad-agent-summary>done</dyad-agent-summary>"
    )

    assert bundle.warnings == ["Unhandled agent tag: dance"]


def test_plan_attributes_fill_missing_provenance() -> None:
    bundle = parse_artifacts(
        '<dyad-agent-plan version="7" dyadTagRefs="r1,r2">'
        '{"todos": [{"todoId": "TD-01", "title": "One"}], "version": 2}'
        "</dyad-agent-plan>"
    )

    assert bundle.plan is not None
    assert bundle.plan.version == 7
    assert bundle.plan.dyad_tag_refs == ["r1", "r2"]


def test_bundle_to_dict_is_json_serializable() -> None:
    payload = parse_artifacts(FULL_RESPONSE).to_dict()

    assert json.loads(json.dumps(payload))["plan"]["version"] == 3
    assert payload["todoUpdates"][0]["todoId"] == "TD-01"


def test_scan_tags_and_attribute_helpers() -> None:
    tags = scan_tags("<DYAD-AGENT-Status state='reviewing'></dyad-agent-status>")

    assert len(tags) == 1
    assert tags[0].name == "status"
    assert tags[0].attr("STATE") == "reviewing"
    assert parse_attributes('todoId="TD-1" Type=\'log\'') == {"todoid": "TD-1", "type": "log"}
    assert split_refs(" a ,b  c ") == ["a", "b", "c"]
    assert split_refs("  ") is None


def test_null_payloads_are_reported_not_dropped() -> None:
    bundle = parse_artifacts(
        "<dyad-agent-plan>null</dyad-agent-plan>"
        "<dyad-agent-analysis> null </dyad-agent-analysis>"
        "<dyad-agent-plan>   </dyad-agent-plan>"
    )

    assert bundle.plan is None
    assert bundle.analysis is None
    assert bundle.warnings == [
        "Failed to parse JSON for plan: plan must be a JSON object",
        "Failed to parse JSON for analysis: analysis must be a JSON object",
    ]


def test_unterminated_tags_scan_in_linear_time() -> None:
    flood = "<dyad-agent-x " * 20_000 + "<dyad-agent-log>" * 5_000

    started = time.perf_counter()
    bundle = parse_artifacts(flood + "tail</dyad-agent-log>")
    elapsed = time.perf_counter() - started

    assert elapsed < 2.0
    assert len(bundle.logs) == 1
    assert bundle.logs[0].content.endswith("tail")
    assert parse_artifacts(flood).logs == []
