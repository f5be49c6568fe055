import json
from pathlib import Path

import pytest

from warden.context import RepositoryContext
from warden.errors import PlanError, PlannerError
from warden.plan import Plan, Task, parse_plan_output, topological_order, validate_plan


def _context(tmp_path: Path) -> RepositoryContext:
    return RepositoryContext.from_dict(
        {
            "subsystems": {
                "core": {"owner": "core-agent", "files": ["src/core/*"]},
                "cli": {"owner": "cli-agent", "files": ["src/cli/*"]},
            },
            "skimsystems": {"quality": {"owner": "quality-agent"}},
        },
        root=tmp_path,
    )


PLAN_JSON = {
    "summary": "Add a flag",
    "tasks": [
        {"id": "core", "agent": "core-agent", "objective": "Expose the option."},
        {
            "id": "cli",
            "agent": "cli-agent",
            "objective": "Wire the flag.",
            "depends_on": ["core"],
            "files": ["src/cli/args.rs"],
        },
    ],
}


def test_parse_plain_json_plan() -> None:
    plan = parse_plan_output(json.dumps(PLAN_JSON))

    assert plan.summary == "Add a flag"
    assert [task.id for task in plan.tasks] == ["core", "cli"]
    assert plan.task("cli").depends_on == ("core",)
    assert plan.task("cli").files == ("src/cli/args.rs",)


def test_parse_plan_inside_result_wrapper() -> None:
    wrapped = json.dumps({"type": "result", "result": json.dumps(PLAN_JSON)})

    plan = parse_plan_output(wrapped)

    assert len(plan.tasks) == 2


def test_parse_plan_from_fenced_block() -> None:
    text = "Here is the plan:\n```json\n" + json.dumps(PLAN_JSON, indent=2) + "\n```\nDone."

    plan = parse_plan_output(text)

    assert plan.tasks[0].agent == "core-agent"


def test_parse_plan_embedded_in_prose() -> None:
    text = 'I looked at {the code}. Plan: ' + json.dumps(PLAN_JSON) + " Let me know."

    plan = parse_plan_output(text)

    assert [task.id for task in plan.tasks] == ["core", "cli"]


def test_parse_plan_accepts_index_dependencies_and_default_ids() -> None:
    payload = {
        "tasks": [
            {"agent": "core-agent", "instruction": "first"},
            {"agent": "cli-agent", "instruction": "second", "depends_on": [0], "focus_files": ["src/cli/a.rs"]},
        ]
    }

    plan = parse_plan_output(json.dumps(payload))

    assert [task.id for task in plan.tasks] == ["task-1", "task-2"]
    assert plan.tasks[1].depends_on == ("task-1",)
    assert plan.tasks[1].objective == "second"
    assert plan.tasks[1].files == ("src/cli/a.rs",)


def test_parse_plan_without_json_fails() -> None:
    with pytest.raises(PlannerError, match="did not return a JSON plan"):
        parse_plan_output("I could not come up with a plan.")


def test_parse_plan_task_without_agent_fails() -> None:
    with pytest.raises(PlannerError, match="no agent"):
        parse_plan_output(json.dumps({"tasks": [{"objective": "orphan"}]}))


def test_validate_rejects_self_dependency(tmp_path: Path) -> None:
    plan = Plan(summary="", tasks=[Task(id="a", agent="core-agent", objective="x", depends_on=("a",))])

    with pytest.raises(PlanError) as excinfo:
        validate_plan(plan, _context(tmp_path))

    assert excinfo.value.kind == "cycle"
    assert excinfo.value.task_id == "a"


def test_validate_rejects_two_task_cycle(tmp_path: Path) -> None:
    plan = Plan(
        summary="",
        tasks=[
            Task(id="a", agent="core-agent", objective="x", depends_on=("b",)),
            Task(id="b", agent="cli-agent", objective="y", depends_on=("a",)),
        ],
    )

    with pytest.raises(PlanError) as excinfo:
        validate_plan(plan, _context(tmp_path))

    assert excinfo.value.kind == "cycle"


def test_validate_rejects_unknown_agent(tmp_path: Path) -> None:
    plan = Plan(summary="", tasks=[Task(id="a", agent="ghost-agent", objective="x")])

    with pytest.raises(PlanError) as excinfo:
        validate_plan(plan, _context(tmp_path))

    assert excinfo.value.kind == "unknown_agent"


def test_validate_rejects_unknown_dependency(tmp_path: Path) -> None:
    plan = Plan(summary="", tasks=[Task(id="a", agent="core-agent", objective="x", depends_on=("zzz",))])

    with pytest.raises(PlanError) as excinfo:
        validate_plan(plan, _context(tmp_path))

    assert excinfo.value.kind == "unknown_dependency"


def test_validate_rejects_duplicate_ids(tmp_path: Path) -> None:
    plan = Plan(
        summary="",
        tasks=[
            Task(id="a", agent="core-agent", objective="x"),
            Task(id="a", agent="cli-agent", objective="y"),
        ],
    )

    with pytest.raises(PlanError) as excinfo:
        validate_plan(plan, _context(tmp_path))

    assert excinfo.value.kind == "duplicate_task"


def test_topological_order_is_stable_for_independent_tasks() -> None:
    tasks = [
        Task(id="c", agent="core-agent", objective="x", depends_on=("a",)),
        Task(id="b", agent="core-agent", objective="x"),
        Task(id="a", agent="core-agent", objective="x"),
        Task(id="d", agent="core-agent", objective="x"),
    ]

    ordered = topological_order(tasks)

    assert [task.id for task in ordered] == ["b", "a", "c", "d"]


def test_file_hints_outside_ownership_only_warn(tmp_path: Path) -> None:
    plan = Plan(
        summary="",
        tasks=[
            Task(id="a", agent="core-agent", objective="x", files=("src/cli/main.rs",)),
            Task(id="b", agent="quality-agent", objective="y", files=("src/core/x.rs", "src/core/x.rs.bog")),
        ],
    )

    validated = validate_plan(plan, _context(tmp_path))

    assert [task.id for task in validated.order] == ["a", "b"]
    assert len(validated.warnings) == 2
    assert "src/cli/main.rs" in validated.warnings[0]
    assert "src/core/x.rs" in validated.warnings[1]
    assert validated.to_dict()["order"] == ["a", "b"]
