from __future__ import annotations

import heapq
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from warden.context import AgentRole, RepositoryContext, is_sidecar, matches_any_pattern, normalize_path
from warden.errors import PlanError, PlannerError

JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


@dataclass(slots=True)
class Task:
    id: str
    agent: str
    objective: str
    depends_on: tuple[str, ...] = ()
    files: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "objective": self.objective,
            "depends_on": list(self.depends_on),
            "files": list(self.files),
        }


@dataclass(slots=True)
class Plan:
    summary: str
    tasks: list[Task] = field(default_factory=list)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "tasks": [task.to_dict() for task in self.tasks]}


@dataclass(slots=True)
class ValidatedPlan:
    plan: Plan
    order: list[Task]
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.plan.to_dict(),
            "order": [task.id for task in self.order],
            "warnings": list(self.warnings),
        }


def _balanced_objects(text: str) -> Iterator[str]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    yield text[start : index + 1]
                    break
        start = text.find("{", start + 1)


def _load_plan_payload(text: str, *, allow_wrapper: bool = True) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped:
        return None

    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        if "tasks" in payload:
            return payload
        if allow_wrapper and isinstance(payload.get("result"), str):
            return _load_plan_payload(payload["result"], allow_wrapper=False)

    for match in JSON_FENCE_PATTERN.finditer(stripped):
        try:
            fenced = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(fenced, dict) and "tasks" in fenced:
            return fenced

    for candidate in _balanced_objects(stripped):
        try:
            found = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(found, dict) and "tasks" in found:
            return found
    return None


def _string_list(value: Any, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise PlannerError(f"Planner output: {label} must be a list of strings.")
    return tuple(normalize_path(item) for item in value if item.strip())


def plan_from_dict(payload: dict[str, Any]) -> Plan:
    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list):
        raise PlannerError("Planner output: 'tasks' must be a list.")

    ids: list[str] = []
    for index, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            raise PlannerError(f"Planner output: task #{index} is not an object.")
        raw_id = raw.get("id")
        ids.append(str(raw_id).strip() if raw_id not in (None, "") else f"task-{index + 1}")

    tasks: list[Task] = []
    for index, raw in enumerate(raw_tasks):
        agent = raw.get("agent")
        if not isinstance(agent, str) or not agent.strip():
            raise PlannerError(f"Planner output: task #{index} has no agent.")
        objective = raw.get("objective", raw.get("instruction"))
        if not isinstance(objective, str) or not objective.strip():
            raise PlannerError(f"Planner output: task #{index} has no objective.")

        depends_on: list[str] = []
        raw_deps = raw.get("depends_on") or []
        if not isinstance(raw_deps, list):
            raise PlannerError(f"Planner output: task #{index} depends_on must be a list.")
        for dep in raw_deps:
            if isinstance(dep, bool) or not isinstance(dep, int | str):
                raise PlannerError(f"Planner output: task #{index} has an invalid dependency.")
            if isinstance(dep, int):
                depends_on.append(ids[dep] if 0 <= dep < len(ids) else f"#{dep}")
            else:
                depends_on.append(dep.strip())

        files = raw.get("files", raw.get("focus_files"))
        tasks.append(
            Task(
                id=ids[index],
                agent=agent.strip(),
                objective=objective.strip(),
                depends_on=tuple(depends_on),
                files=_string_list(files, f"task #{index} files"),
            )
        )
    return Plan(summary=str(payload.get("summary", "")).strip(), tasks=tasks)


def parse_plan_output(text: str) -> Plan:
    payload = _load_plan_payload(text)
    if payload is None:
        preview = text.strip()[:200]
        raise PlannerError(f"Planner did not return a JSON plan. Output began with: {preview!r}")
    return plan_from_dict(payload)


def topological_order(tasks: list[Task]) -> list[Task]:
    position = {task.id: index for index, task in enumerate(tasks)}
    indegree = {task.id: 0 for task in tasks}
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in set(task.depends_on):
            if dep not in position:
                raise PlanError(
                    f"Task '{task.id}' depends on unknown task '{dep}'.",
                    kind="unknown_dependency",
                    task_id=task.id,
                )
            indegree[task.id] += 1
            dependents[dep].append(task.id)

    ready = [position[task_id] for task_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[Task] = []
    while ready:
        task = tasks[heapq.heappop(ready)]
        ordered.append(task)
        for dependent in dependents[task.id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(tasks):
        stuck = [task.id for task in tasks if indegree[task.id] > 0]
        raise PlanError(
            f"Dependency cycle among tasks: {', '.join(stuck)}",
            kind="cycle",
            task_id=stuck[0],
        )
    return ordered


def hint_warnings(task: Task, context: RepositoryContext) -> list[str]:
    role = context.role_of(task.agent)
    if role is None or not task.files:
        return []
    match role:
        case AgentRole.SUBSYSTEM:
            patterns = context.patterns_for(task.agent)
            outside = [path for path in task.files if not matches_any_pattern(path, patterns)]
            return [
                f"{task.id}: {task.agent} hints at {path}, outside its subsystem patterns"
                for path in outside
            ]
        case AgentRole.SKIMSYSTEM:
            return [
                f"{task.id}: observer {task.agent} hints at non-sidecar file {path}"
                for path in task.files
                if not is_sidecar(path)
            ]


def validate_plan(plan: Plan, context: RepositoryContext) -> ValidatedPlan:
    seen: set[str] = set()
    for task in plan.tasks:
        if task.id in seen:
            raise PlanError(f"Duplicate task id '{task.id}'.", kind="duplicate_task", task_id=task.id)
        seen.add(task.id)

    for task in plan.tasks:
        if context.agent(task.agent) is None:
            raise PlanError(
                f"Task '{task.id}' is assigned to unknown agent '{task.agent}'.",
                kind="unknown_agent",
                task_id=task.id,
            )
        if task.id in task.depends_on:
            raise PlanError(
                f"Task '{task.id}' depends on itself.", kind="cycle", task_id=task.id
            )

    order = topological_order(plan.tasks)
    warnings = [warning for task in plan.tasks for warning in hint_warnings(task, context)]
    return ValidatedPlan(plan=plan, order=order, warnings=warnings)
