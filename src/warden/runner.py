from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from warden.backends.base import EDIT_TOOLS, AgentBackend, AgentInvocation, BackendExecutionError, EventHook
from warden.errors import WorkspaceError
from warden.permissions import Violation
from warden.plan import Task
from warden.workspace import FileChange, Workspace, WorkspaceManager, WorkspaceState

LOGGER = logging.getLogger(__name__)


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PERMISSION_VIOLATION = "permission_violation"


@dataclass(slots=True)
class Telemetry:
    duration_seconds: float = 0.0
    turns: int = 0
    tool_calls: int = 0
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_seconds": round(self.duration_seconds, 3),
            "turns": self.turns,
            "tool_calls": self.tool_calls,
            "cost_usd": self.cost_usd,
        }


@dataclass(slots=True)
class TaskResult:
    task_id: str
    agent: str
    outcome: TaskOutcome
    changes: list[FileChange] = field(default_factory=list)
    telemetry: Telemetry = field(default_factory=Telemetry)
    failure: str | None = None
    violations: list[Violation] = field(default_factory=list)
    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == TaskOutcome.SUCCESS

    @property
    def changed_paths(self) -> list[str]:
        return [change.path for change in self.changes]

    @classmethod
    def failed(cls, task: Task, reason: str, error: str | None = None) -> TaskResult:
        return cls(
            task_id=task.id,
            agent=task.agent,
            outcome=TaskOutcome.FAILURE,
            failure=reason,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent": self.agent,
            "outcome": self.outcome.value,
            "failure": self.failure,
            "error": self.error,
            "changes": [change.to_dict() for change in self.changes],
            "violations": [violation.to_dict() for violation in self.violations],
            "telemetry": self.telemetry.to_dict(),
        }


class TaskRunner:
    def __init__(
        self,
        backend: AgentBackend,
        workspaces: WorkspaceManager,
        *,
        timeout_seconds: float = 300.0,
        model: str = "",
        max_turns: int = 50,
        event_hook: EventHook | None = None,
    ) -> None:
        self.backend = backend
        self.workspaces = workspaces
        self.timeout_seconds = timeout_seconds
        self.model = model
        self.max_turns = max_turns
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def run(self, task: Task, workspace: Workspace, system_prompt: str) -> TaskResult:
        def forward(payload: dict[str, Any]) -> None:
            self._emit({**payload, "task_id": task.id})

        invocation = AgentInvocation(
            prompt=task.objective,
            system_prompt=system_prompt,
            working_directory=workspace.path,
            read_only=False,
            allowed_tools=EDIT_TOOLS,
            model=self.model,
            max_turns=self.max_turns,
            label=task.agent,
        )
        workspace.state = WorkspaceState.ACTIVE
        self._emit({"event": "task_start", "task_id": task.id, "agent": task.agent})
        started = time.monotonic()
        try:
            output = await asyncio.wait_for(
                self.backend.execute(invocation, forward),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            LOGGER.warning("Task %s timed out after %.0fs", task.id, self.timeout_seconds)
            result = TaskResult.failed(
                task, "timeout", f"Agent exceeded {self.timeout_seconds:.0f}s wall-clock limit."
            )
            result.telemetry.duration_seconds = time.monotonic() - started
            self._emit({"event": "task_failed", "task_id": task.id, "failure": "timeout"})
            return result
        except BackendExecutionError as exc:
            LOGGER.warning("Task %s failed: %s", task.id, exc)
            result = TaskResult.failed(task, exc.reason, str(exc))
            result.telemetry.duration_seconds = time.monotonic() - started
            self._emit({"event": "task_failed", "task_id": task.id, "failure": exc.reason})
            return result
        except Exception as exc:
            LOGGER.error("Task %s crashed in its backend", task.id, exc_info=exc)
            result = TaskResult.failed(task, "provider_error", f"{type(exc).__name__}: {exc}")
            result.telemetry.duration_seconds = time.monotonic() - started
            self._emit({"event": "task_failed", "task_id": task.id, "failure": "provider_error"})
            return result

        telemetry = Telemetry(
            duration_seconds=time.monotonic() - started,
            turns=output.turns,
            tool_calls=output.tool_calls,
            cost_usd=output.cost_usd,
        )
        try:
            await asyncio.to_thread(
                self.workspaces.snapshot,
                workspace,
                f"{task.agent}: {task.id}\n\n{task.objective}",
                author=task.agent,
            )
            changes = await asyncio.to_thread(self.workspaces.diff, workspace)
        except WorkspaceError as exc:
            LOGGER.warning("Task %s left an unusable workspace: %s", task.id, exc)
            result = TaskResult.failed(task, "workspace_error", str(exc))
            result.telemetry = telemetry
            self._emit({"event": "task_failed", "task_id": task.id, "failure": "workspace_error"})
            return result

        self._emit(
            {
                "event": "task_complete",
                "task_id": task.id,
                "agent": task.agent,
                "changed_files": [change.path for change in changes],
            }
        )
        return TaskResult(
            task_id=task.id,
            agent=task.agent,
            outcome=TaskOutcome.SUCCESS,
            changes=changes,
            telemetry=telemetry,
            output=output.content,
        )
