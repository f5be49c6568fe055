import asyncio
import json
import subprocess
from pathlib import Path

import pytest

from warden.backends.base import AgentBackend, AgentInvocation, AgentOutput
from warden.context import RepositoryContext, load_context
from warden.errors import ContextError
from warden.orchestrator import Orchestrator, RunState
from warden.permissions import Verdict, Violation
from warden.planner import ReplanFeedback
from warden.runner import TaskRunner
from warden.skim import SkimCoordinator, run_command
from warden.workspace import WorkspaceManager


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=repo_path, check=True)
    subprocess.run(["git", "config", "user.name", "Warden Test"], cwd=repo_path, check=True)
    (repo_path / "README.md").write_text("# test\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=repo_path, check=True)
    subprocess.run(["git", "commit", "-m", "seed"], cwd=repo_path, check=True, capture_output=True)


def _work_item(item_id: str, target_file: str, requested_by: str = "quality-agent", **extra: str) -> dict:
    return {
        "id": item_id,
        "from": requested_by,
        "target": "",
        "target_file": target_file,
        "type": "refactor",
        "description": f"Fix {item_id}",
        **extra,
    }


def _payload(work_items: list[dict]) -> dict:
    return {
        "subsystems": {
            "ui": {"owner": "ui-agent", "files": ["src/ui/*"]},
            "core": {"owner": "core-agent", "files": ["src/core/*"]},
            "docs": {"owner": "docs-agent", "files": ["docs/*"]},
        },
        "skimsystems": {
            "quality": {
                "owner": "quality-agent",
                "targets": ["core", "ui"],
                "integrations": {"lint": "lint --all", "audit": "audit"},
            },
            "security": {"owner": "security-agent"},
        },
        "work_items": work_items,
    }


def _items() -> list[dict]:
    return [
        _work_item("wi-1", "src/ui/view.rs"),
        _work_item("wi-2", "src/core/engine.rs"),
        _work_item("wi-3", "src/core/io.rs"),
        _work_item("wi-4", "src/core/io.rs", status="closed"),
        _work_item("wi-5", "src/core/io.rs", requested_by="security-agent"),
        _work_item("wi-6", "docs/guide.md"),
        _work_item("wi-7", "build.rs"),
    ]


class NoopCommands:
    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.commands: list[str] = []

    def __call__(self, command: str, cwd: Path) -> tuple[int, str, str]:
        self.commands.append(command)
        return self.exit_code, f"ran {command}\n", ""


def _coordinator(context: RepositoryContext, commands: NoopCommands | None = None) -> SkimCoordinator:
    def no_orchestrator(context: RepositoryContext) -> Orchestrator:
        raise AssertionError("orchestrator should not be needed")

    return SkimCoordinator(lambda: context, no_orchestrator, commands or NoopCommands())


def test_packets_are_grouped_scoped_and_sorted(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(_payload(_items()), root=tmp_path)
    coordinator = _coordinator(context)

    packets = coordinator.collect_work_packets(context, "quality")

    assert [packet.subsystem for packet in packets] == ["core", "ui"]
    assert [packet.agent for packet in packets] == ["core-agent", "ui-agent"]
    assert [item.id for item in packets[0].items] == ["wi-2", "wi-3"]
    assert packets[0].files == (
        "src/core/engine.rs",
        "src/core/engine.rs.bog",
        "src/core/io.rs",
        "src/core/io.rs.bog",
    )


def test_build_task_targets_subsystem_owner(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(_payload(_items()), root=tmp_path)
    coordinator = _coordinator(context)
    packet = coordinator.collect_work_packets(context, "quality")[0]

    task = coordinator.build_task(packet)

    assert task.id == "skim-core"
    assert task.agent == "core-agent"
    assert "### src/core/io.rs (sidecar: src/core/io.rs.bog)" in task.objective
    assert "- [wi-2] Fix wi-2" in task.objective
    assert "PREVIOUS ATTEMPT FAILED" not in task.objective

    feedback = ReplanFeedback(
        attempt=1,
        violations=[Verdict("core-agent", [Violation("src/ui/view.rs", "outside")])],
    )
    retried = coordinator.build_task(packet, feedback)
    assert "PREVIOUS ATTEMPT FAILED (attempt 1)" in retried.objective
    assert "src/ui/view.rs: outside" in retried.objective


def test_unknown_observer_and_action_are_rejected(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(_payload([]), root=tmp_path)
    coordinator = _coordinator(context)

    with pytest.raises(ContextError, match="Unknown skimsystem"):
        asyncio.run(coordinator.run_integration(context, "style"))
    with pytest.raises(ContextError, match="no integration named 'deploy'"):
        asyncio.run(coordinator.run_integration(context, "quality", "deploy"))


def test_integration_runs_selected_action(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(_payload([]), root=tmp_path)
    commands = NoopCommands(exit_code=3)
    coordinator = _coordinator(context, commands)

    runs = asyncio.run(coordinator.run_integration(context, "quality", "lint"))

    assert commands.commands == ["lint --all"]
    assert runs[0].exit_code == 3
    assert not runs[0].ok
    assert runs[0].stdout_tail == "ran lint --all"


def test_skim_without_pending_items_is_done(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(_payload([_work_item("wi-7", "build.rs")]), root=tmp_path)
    commands = NoopCommands()
    coordinator = _coordinator(context, commands)

    report = asyncio.run(coordinator.run("quality"))

    assert report.ok
    assert report.outcome.status == RunState.DONE
    assert report.packets == []
    assert report.unowned == ["wi-7"]
    assert commands.commands == ["lint --all", "audit"]
    assert report.to_dict()["status"] == "done"


def test_run_command_reports_missing_binary(tmp_path: Path) -> None:
    code, _, stderr = run_command("definitely-not-a-real-binary-xyz --flag", tmp_path)

    assert code == 127
    assert stderr


class FixingBackend(AgentBackend):
    def __init__(self) -> None:
        self.invocations: list[AgentInvocation] = []

    async def execute(self, invocation: AgentInvocation, event_hook=None) -> AgentOutput:
        self.invocations.append(invocation)
        root = invocation.working_directory
        (root / "src" / "core").mkdir(parents=True, exist_ok=True)
        (root / "src" / "core" / "engine.rs").write_text("fn fixed() {}\n", encoding="utf-8")
        (root / "src" / "core" / "engine.rs.bog").write_text(
            "[[change_requests]]\nid = \"wi-2\"\nstatus = closed\n", encoding="utf-8"
        )
        return AgentOutput(content="fixed")


def test_skim_delegates_work_items_to_subsystem_agents(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    context_path = tmp_path / ".warden" / "context.json"
    context_path.parent.mkdir()
    context_path.write_text(
        json.dumps(_payload([_work_item("wi-2", "src/core/engine.rs")])), encoding="utf-8"
    )
    manager = WorkspaceManager(tmp_path)
    backend = FixingBackend()

    def factory(context: RepositoryContext) -> Orchestrator:
        return Orchestrator(context, manager, TaskRunner(backend, manager))

    coordinator = SkimCoordinator(
        lambda: load_context(context_path, root=tmp_path), factory, NoopCommands()
    )

    report = asyncio.run(coordinator.run("quality", "lint"))

    assert report.ok
    assert report.outcome.merged_task_ids == ["skim-core"]
    assert [invocation.label for invocation in backend.invocations] == ["core-agent"]
    assert "[wi-2]" in backend.invocations[0].prompt
    assert (tmp_path / "src" / "core" / "engine.rs.bog").exists()
    assert report.still_pending == ["wi-2"]
    payload = report.to_dict()
    assert payload["observer"] == "quality"
    assert payload["packets"] == [{"subsystem": "core", "agent": "core-agent", "items": ["wi-2"]}]
