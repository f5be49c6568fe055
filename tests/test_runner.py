import asyncio
import subprocess
from pathlib import Path
from typing import Any

import pytest

from warden.backends.base import AgentBackend, AgentInvocation, AgentOutput, BackendExecutionError
from warden.plan import Task
from warden.runner import TaskOutcome, TaskRunner
from warden.workspace import ChangeType, WorkspaceManager, WorkspaceState


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=repo_path, check=True)
    subprocess.run(["git", "config", "user.name", "Warden Test"], cwd=repo_path, check=True)
    (repo_path / "README.md").write_text("# test\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=repo_path, check=True)
    subprocess.run(["git", "commit", "-m", "seed"], cwd=repo_path, check=True, capture_output=True)


class WritingBackend(AgentBackend):
    def __init__(self, files: dict[str, str]) -> None:
        self.files = files
        self.invocations: list[AgentInvocation] = []

    async def execute(self, invocation: AgentInvocation, event_hook=None) -> AgentOutput:
        self.invocations.append(invocation)
        if event_hook is not None:
            event_hook({"event": "agent_turn", "turn": 1})
        for relative, content in self.files.items():
            target = invocation.working_directory / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return AgentOutput(content="done", turns=3, tool_calls=2, cost_usd=0.1)


class SlowBackend(AgentBackend):
    async def execute(self, invocation: AgentInvocation, event_hook=None) -> AgentOutput:
        await asyncio.sleep(5)
        return AgentOutput(content="late")


class FailingBackend(AgentBackend):
    async def execute(self, invocation: AgentInvocation, event_hook=None) -> AgentOutput:
        raise BackendExecutionError("rate limited", backend="fake", exit_code=1)


class CrashingBackend(AgentBackend):
    async def execute(self, invocation: AgentInvocation, event_hook=None) -> AgentOutput:
        raise ValueError("Separator is not found, and chunk exceed the limit")


@pytest.fixture()
def manager(tmp_path: Path) -> WorkspaceManager:
    _init_git_repo(tmp_path)
    return WorkspaceManager(tmp_path)


def test_runner_collects_changes_and_telemetry(manager: WorkspaceManager) -> None:
    events: list[dict[str, Any]] = []
    backend = WritingBackend({"src/core/engine.rs": "fn run() {}\n"})
    runner = TaskRunner(backend, manager, model="sonnet", max_turns=7, event_hook=events.append)
    task = Task(id="t1", agent="core-agent", objective="Add the engine.")
    workspace = manager.create("run-1", "a1-t1", manager.head())

    result = asyncio.run(runner.run(task, workspace, "system prompt"))

    assert result.outcome == TaskOutcome.SUCCESS
    assert [(change.path, change.change) for change in result.changes] == [
        ("src/core/engine.rs", ChangeType.ADDED)
    ]
    assert result.telemetry.turns == 3
    assert result.telemetry.tool_calls == 2
    assert result.output == "done"
    assert workspace.state == WorkspaceState.INSPECTED

    invocation = backend.invocations[0]
    assert invocation.working_directory == workspace.path
    assert invocation.read_only is False
    assert invocation.model == "sonnet"
    assert invocation.max_turns == 7
    assert invocation.label == "core-agent"

    names = [event["event"] for event in events]
    assert names == ["task_start", "agent_turn", "task_complete"]
    assert all(event["task_id"] == "t1" for event in events)


def test_runner_reports_timeout(manager: WorkspaceManager) -> None:
    runner = TaskRunner(SlowBackend(), manager, timeout_seconds=0.05)
    task = Task(id="t1", agent="core-agent", objective="x")
    workspace = manager.create("run-1", "a1-t1", manager.head())

    result = asyncio.run(runner.run(task, workspace, "system"))

    assert result.outcome == TaskOutcome.FAILURE
    assert result.failure == "timeout"
    assert result.changes == []


def test_runner_reports_provider_error(manager: WorkspaceManager) -> None:
    runner = TaskRunner(FailingBackend(), manager)
    task = Task(id="t1", agent="core-agent", objective="x")
    workspace = manager.create("run-1", "a1-t1", manager.head())

    result = asyncio.run(runner.run(task, workspace, "system"))

    assert not result.ok
    assert result.failure == "provider_error"
    assert "rate limited" in (result.error or "")
    assert result.to_dict()["outcome"] == "failure"


def test_runner_turns_unexpected_backend_exception_into_failure(manager: WorkspaceManager) -> None:
    events: list[dict[str, Any]] = []
    runner = TaskRunner(CrashingBackend(), manager, event_hook=events.append)
    task = Task(id="t1", agent="core-agent", objective="x")
    workspace = manager.create("run-1", "a1-t1", manager.head())

    result = asyncio.run(runner.run(task, workspace, "system"))

    assert result.outcome == TaskOutcome.FAILURE
    assert result.failure == "provider_error"
    assert "ValueError" in (result.error or "")
    assert {"event": "task_failed", "task_id": "t1", "failure": "provider_error"} in events
