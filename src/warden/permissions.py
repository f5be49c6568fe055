from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from warden.context import AgentRole, RepositoryContext, is_sidecar, matches_any_pattern, normalize_path


class _HasAgent(Protocol):
    agent: str


@dataclass(slots=True, frozen=True)
class Violation:
    path: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "reason": self.reason}


@dataclass(slots=True)
class Verdict:
    agent: str
    violations: list[Violation] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.violations

    @property
    def offending_files(self) -> list[str]:
        files: list[str] = []
        for violation in self.violations:
            if violation.path is not None and violation.path not in files:
                files.append(violation.path)
        return files

    def describe(self) -> str:
        if self.allowed:
            return f"{self.agent}: allowed"
        details = "; ".join(
            f"{item.path}: {item.reason}" if item.path else item.reason for item in self.violations
        )
        return f"{self.agent}: {details}"


def _changed_path(item: Any) -> str:
    return normalize_path(item if isinstance(item, str) else item.path)


def check(
    task_or_agent: _HasAgent | str,
    changed_paths: Iterable[Any],
    context: RepositoryContext,
) -> Verdict:
    agent_name = task_or_agent if isinstance(task_or_agent, str) else task_or_agent.agent
    paths = list(dict.fromkeys(_changed_path(item) for item in changed_paths))
    verdict = Verdict(agent=agent_name)

    role = context.role_of(agent_name)
    if role is None:
        verdict.violations.append(
            Violation(None, f"agent '{agent_name}' is not registered in the repository context")
        )
        verdict.violations.extend(Violation(path, "unregistered agent") for path in paths)
        return verdict

    match role:
        case AgentRole.SUBSYSTEM:
            patterns = context.patterns_for(agent_name)
            if not patterns:
                verdict.violations.append(
                    Violation(None, f"subsystem agent '{agent_name}' owns no subsystem")
                )
                verdict.violations.extend(Violation(path, "agent owns no files") for path in paths)
                return verdict
            for path in paths:
                if not matches_any_pattern(path, patterns):
                    verdict.violations.append(
                        Violation(path, "outside the agent's subsystem ownership patterns")
                    )
        case AgentRole.SKIMSYSTEM:
            if not context.skimsystems_owned_by(agent_name):
                verdict.violations.append(
                    Violation(None, f"observer agent '{agent_name}' owns no skimsystem")
                )
                verdict.violations.extend(Violation(path, "agent owns no files") for path in paths)
                return verdict
            for path in paths:
                if not is_sidecar(path):
                    verdict.violations.append(
                        Violation(path, "observer agents may only modify annotation sidecar files")
                    )
    return verdict
