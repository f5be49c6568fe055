from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from warden.backends.base import EventHook
from warden.config import OrchestrateSettings
from warden.context import RepositoryContext
from warden.errors import ConfigError, MergeError, NestedRunError, PlanError, PlannerError, WorkspaceError
from warden.permissions import Verdict, check
from warden.plan import Plan, Task, ValidatedPlan, validate_plan
from warden.planner import ReplanFeedback
from warden.prompts import agent_prompt
from warden.runner import TaskOutcome, TaskResult, TaskRunner
from warden.workspace import Workspace, WorkspaceManager

LOGGER = logging.getLogger(__name__)

RUN_ID_ENV = "WARDEN_RUN_ID"

PlanSource = Callable[[ReplanFeedback | None], Awaitable[Plan]]


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class MergeStrategy(str, Enum):
    ALL_OR_NOTHING = "all-or-nothing"
    INCREMENTAL = "incremental"

    @classmethod
    def parse(cls, value: str | MergeStrategy) -> MergeStrategy:
        if isinstance(value, MergeStrategy):
            return value
        normalized = value.strip().lower().replace("_", "-")
        if normalized in {"allornothing", "all-or-nothing"}:
            return cls.ALL_OR_NOTHING
        if normalized == "incremental":
            return cls.INCREMENTAL
        raise ConfigError(
            f"Unsupported merge strategy '{value}'. Expected all-or-nothing or incremental."
        )


class RunState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    MERGING = "merging"
    REPLANNING = "replanning"
    DONE = "done"
    REJECTED = "rejected"


@dataclass(slots=True)
class OrchestrateConfig:
    max_replans: int = 2
    merge_strategy: MergeStrategy = MergeStrategy.ALL_OR_NOTHING
    max_parallel_tasks: int = 4

    @classmethod
    def from_settings(cls, settings: OrchestrateSettings) -> OrchestrateConfig:
        return cls(
            max_replans=settings.max_replans,
            merge_strategy=MergeStrategy.parse(settings.merge_strategy),
            max_parallel_tasks=settings.max_parallel_tasks,
        )


@dataclass(slots=True)
class AttemptRecord:
    number: int
    plan: Plan | None = None
    results: list[TaskResult] = field(default_factory=list)
    violations: list[Verdict] = field(default_factory=list)
    merged_task_ids: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "results": [result.to_dict() for result in self.results],
            "violations": [
                {
                    "agent": verdict.agent,
                    "files": verdict.offending_files,
                    "details": [violation.to_dict() for violation in verdict.violations],
                }
                for verdict in self.violations
            ],
            "merged_task_ids": list(self.merged_task_ids),
            "error": self.error,
        }


@dataclass(slots=True)
class RunOutcome:
    run_id: str
    status: RunState
    reason: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    merged_task_ids: list[str] = field(default_factory=list)
    state_history: list[RunState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == RunState.DONE

    @property
    def offending(self) -> list[dict[str, Any]]:
        if not self.attempts:
            return []
        return [
            {"agent": verdict.agent, "files": verdict.offending_files}
            for verdict in self.attempts[-1].violations
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "reason": self.reason,
            "offending": self.offending,
            "merged_task_ids": list(self.merged_task_ids),
            "state_history": [state.value for state in self.state_history],
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


def _failure_reason(results: list[TaskResult]) -> str:
    failures = {result.failure for result in results if result.outcome == TaskOutcome.FAILURE}
    for reason in ("merge_conflict", "timeout", "workspace_error"):
        if reason in failures:
            return reason
    return "task_failure"


class Orchestrator:
    def __init__(
        self,
        context: RepositoryContext,
        workspaces: WorkspaceManager,
        runner: TaskRunner,
        config: OrchestrateConfig | None = None,
        *,
        event_hook: EventHook | None = None,
        run_id: str | None = None,
    ) -> None:
        self.context = context
        self.workspaces = workspaces
        self.runner = runner
        self.config = config or OrchestrateConfig()
        self.event_hook = event_hook
        self.run_id = run_id or new_run_id()
        self._history: list[RunState] = []
        self._halted = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"run_id": self.run_id, **payload})

    def _transition(self, state: RunState) -> None:
        self._history.append(state)
        LOGGER.info("[%s] %s", self.run_id, state.value)
        self._emit({"event": "state", "state": state.value})

    def _finish(
        self,
        status: RunState,
        attempts: list[AttemptRecord],
        reason: str | None = None,
    ) -> RunOutcome:
        self._transition(status)
        merged = [task_id for attempt in attempts for task_id in attempt.merged_task_ids]
        return RunOutcome(
            run_id=self.run_id,
            status=status,
            reason=reason,
            attempts=attempts,
            merged_task_ids=merged,
            state_history=list(self._history),
        )

    async def plan_only(self, plan_source: PlanSource) -> ValidatedPlan:
        self._transition(RunState.PLANNING)
        plan = await plan_source(None)
        return validate_plan(plan, self.context)

    async def run(self, plan_source: PlanSource) -> RunOutcome:
        if os.environ.get(RUN_ID_ENV):
            raise NestedRunError(
                f"Refusing to start a run inside orchestrated run {os.environ[RUN_ID_ENV]}."
            )
        await asyncio.to_thread(self.workspaces.acquire_lease, self.run_id)
        try:
            return await self._run(plan_source)
        finally:
            await asyncio.to_thread(self.workspaces.cleanup_run, self.run_id)
            await asyncio.to_thread(self.workspaces.release_lease, self.run_id)

    async def _run(self, plan_source: PlanSource) -> RunOutcome:
        attempts: list[AttemptRecord] = []
        feedback: ReplanFeedback | None = None
        max_attempts = self.config.max_replans + 1
        last_reason = "planner_failed"

        for number in range(1, max_attempts + 1):
            self._transition(RunState.PLANNING if number == 1 else RunState.REPLANNING)
            record = AttemptRecord(number=number)
            attempts.append(record)
            try:
                plan = await plan_source(feedback)
                validated = validate_plan(plan, self.context)
            except PlanError as exc:
                record.error = str(exc)
                LOGGER.warning("Plan rejected (%s): %s", exc.kind, exc)
                if number == 1:
                    return self._finish(RunState.REJECTED, attempts, reason=exc.reason)
                last_reason = exc.reason
                feedback = ReplanFeedback(attempt=number, plan_error=str(exc))
                continue
            except PlannerError as exc:
                record.error = str(exc)
                LOGGER.warning("Planning failed: %s", exc)
                last_reason = exc.reason
                feedback = ReplanFeedback(attempt=number, failures=[str(exc)])
                continue

            record.plan = plan
            for warning in validated.warnings:
                LOGGER.warning("Plan hint: %s", warning)
                self._emit({"event": "plan_warning", "message": warning})
            if not plan.tasks:
                return self._finish(RunState.DONE, attempts)

            await self._attempt(validated, record)

            if record.violations:
                feedback = ReplanFeedback(
                    attempt=number,
                    violations=list(record.violations),
                    failures=[
                        f"{result.task_id} ({result.agent}): {result.failure}"
                        for result in record.results
                        if result.outcome == TaskOutcome.FAILURE
                        and result.failure not in {"not_started", "dependency_failed"}
                    ],
                )
                if number < max_attempts:
                    continue
                return self._finish(RunState.REJECTED, attempts, reason="permission_violation")

            if any(result.outcome == TaskOutcome.FAILURE for result in record.results):
                return self._finish(
                    RunState.REJECTED, attempts, reason=_failure_reason(record.results)
                )
            return self._finish(RunState.DONE, attempts)

        return self._finish(RunState.REJECTED, attempts, reason=last_reason)

    async def _attempt(self, validated: ValidatedPlan, record: AttemptRecord) -> None:
        base_revision = await asyncio.to_thread(self.workspaces.head)
        workspaces: dict[str, Workspace] = {}
        try:
            self._transition(RunState.EXECUTING)
            results = await self._execute(validated, record, base_revision, workspaces)
            record.results = [results[task.id] for task in validated.plan.tasks]
            self._transition(RunState.VALIDATING)
            if record.violations:
                return
            self._transition(RunState.MERGING)
            if self.config.merge_strategy == MergeStrategy.ALL_OR_NOTHING:
                if all(result.ok for result in record.results):
                    await self._merge_all(validated, record, results, workspaces)
        finally:
            await self._discard(workspaces)

    async def _execute(
        self,
        validated: ValidatedPlan,
        record: AttemptRecord,
        base_revision: str,
        workspaces: dict[str, Workspace],
    ) -> dict[str, TaskResult]:
        self._halted = False
        results: dict[str, TaskResult] = {}
        pending: list[Task] = list(validated.order)
        running: dict[asyncio.Task[TaskResult], Task] = {}
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_tasks))
        # Distinct task ids can collapse to the same ref component.
        names = {
            task.id: f"a{record.number}-{position}-{task.id}"
            for position, task in enumerate(validated.plan.tasks, 1)
        }

        try:
            while pending or running:
                settled = True
                while settled:
                    settled = False
                    for task in list(pending):
                        failed = [
                            dep for dep in task.depends_on if dep in results and not results[dep].ok
                        ]
                        if failed:
                            results[task.id] = TaskResult.failed(
                                task, "dependency_failed", f"Dependency {failed[0]} did not succeed."
                            )
                            pending.remove(task)
                            settled = True

                if self._halted:
                    for task in pending:
                        results[task.id] = TaskResult.failed(
                            task, "not_started", "Dispatch stopped after a permission violation."
                        )
                    pending.clear()

                for task in list(pending):
                    if all(dep in results and results[dep].ok for dep in task.depends_on):
                        pending.remove(task)
                        job = asyncio.create_task(
                            self._run_task(
                                task, names[task.id], record, base_revision, workspaces, semaphore
                            )
                        )
                        running[job] = task

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for job in done:
                    task = running.pop(job)
                    result = job.result()
                    if (
                        result.ok
                        and self.config.merge_strategy == MergeStrategy.INCREMENTAL
                        and task.id in workspaces
                    ):
                        await self._merge_one(task, workspaces[task.id], result, record)
                    results[task.id] = result
        finally:
            for job in running:
                job.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
        return results

    async def _run_task(
        self,
        task: Task,
        name: str,
        record: AttemptRecord,
        base_revision: str,
        workspaces: dict[str, Workspace],
        semaphore: asyncio.Semaphore,
    ) -> TaskResult:
        async with semaphore:
            if self._halted:
                return TaskResult.failed(
                    task, "not_started", "Dispatch stopped after a permission violation."
                )
            include = tuple(workspaces[dep].revision for dep in task.depends_on if dep in workspaces)
            try:
                workspace = await asyncio.to_thread(
                    self.workspaces.create,
                    self.run_id,
                    name,
                    base_revision,
                    include,
                )
            except WorkspaceError as exc:
                LOGGER.error("Workspace for %s could not be created: %s", task.id, exc)
                return TaskResult.failed(task, "workspace_error", str(exc))
            workspaces[task.id] = workspace
            LOGGER.info("Dispatching %s to %s", task.id, task.agent)
            result = await self.runner.run(task, workspace, agent_prompt(self.context, task))
            # A violation must be recorded before the slot is released.
            return self._validate(task, result, record)

    def _validate(self, task: Task, result: TaskResult, record: AttemptRecord) -> TaskResult:
        if not result.ok:
            return result
        verdict = check(task, result.changes, self.context)
        if verdict.allowed:
            return result
        result.outcome = TaskOutcome.PERMISSION_VIOLATION
        result.violations = list(verdict.violations)
        record.violations.append(verdict)
        self._halted = True
        LOGGER.warning("Permission violation: %s", verdict.describe())
        self._emit(
            {
                "event": "permission_violation",
                "task_id": task.id,
                "agent": task.agent,
                "files": verdict.offending_files,
            }
        )
        return result

    def _merge_message(self, task: Task) -> str:
        return f"warden: {task.id} ({task.agent}) [{self.run_id}]"

    async def _merge_one(
        self,
        task: Task,
        workspace: Workspace,
        result: TaskResult,
        record: AttemptRecord,
    ) -> None:
        try:
            await asyncio.to_thread(self.workspaces.merge, workspace, self._merge_message(task))
        except MergeError as exc:
            LOGGER.error("Merge of %s failed: %s", task.id, exc)
            result.outcome = TaskOutcome.FAILURE
            result.failure = "merge_conflict"
            result.error = f"{exc} (conflicts: {', '.join(exc.conflicted_files) or 'none reported'})"
            return
        record.merged_task_ids.append(task.id)
        self._emit({"event": "merged", "task_id": task.id, "agent": task.agent})

    async def _merge_all(
        self,
        validated: ValidatedPlan,
        record: AttemptRecord,
        results: dict[str, TaskResult],
        workspaces: dict[str, Workspace],
    ) -> None:
        pre_merge = await asyncio.to_thread(self.workspaces.head)
        for task in validated.order:
            await self._merge_one(task, workspaces[task.id], results[task.id], record)
            if not results[task.id].ok:
                await asyncio.to_thread(self.workspaces.rollback_to, pre_merge)
                record.merged_task_ids.clear()
                return

    async def _discard(self, workspaces: dict[str, Workspace]) -> None:
        for workspace in workspaces.values():
            try:
                await asyncio.to_thread(self.workspaces.cleanup, workspace)
            except WorkspaceError as exc:
                LOGGER.warning("Cleanup of %s failed, left for sweep: %s", workspace.branch, exc)
