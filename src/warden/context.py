from __future__ import annotations

import fnmatch
import itertools
import json
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from warden.errors import ContextError

SIDECAR_SUFFIX = ".bog"
ALL_TARGETS = "all"


class AgentRole(str, Enum):
    SUBSYSTEM = "subsystem"
    SKIMSYSTEM = "skimsystem"


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


GLOBSTAR = "**/"


@lru_cache(maxsize=512)
def _pattern_variants(pattern: str) -> tuple[str, ...]:
    """Spell out every way a `**/` segment can match zero directories."""
    pieces = pattern.split(GLOBSTAR)
    if len(pieces) == 1:
        return (pattern,)
    variants = []
    for joints in itertools.product((GLOBSTAR, ""), repeat=len(pieces) - 1):
        variant = pieces[0]
        for joint, piece in zip(joints, pieces[1:]):
            variant += joint + piece
        variants.append(variant)
    return tuple(variants)


def matches_any_pattern(path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    normalized = normalize_path(path)
    return any(
        fnmatch.fnmatchcase(normalized, variant)
        for pattern in patterns
        for variant in _pattern_variants(pattern)
    )


def is_sidecar(path: str) -> bool:
    return normalize_path(path).endswith(SIDECAR_SUFFIX)


def sidecar_for(source_path: str) -> str:
    return f"{normalize_path(source_path)}{SIDECAR_SUFFIX}"


@dataclass(frozen=True, slots=True)
class Agent:
    name: str
    role: AgentRole
    description: str = ""


@dataclass(frozen=True, slots=True)
class Subsystem:
    name: str
    owner: str
    files: tuple[str, ...]
    status: str = "active"
    description: str = ""

    def owns(self, path: str) -> bool:
        return matches_any_pattern(path, self.files)


@dataclass(frozen=True, slots=True)
class Integration:
    name: str
    command: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class Skimsystem:
    name: str
    owner: str
    targets: str | tuple[str, ...] = ALL_TARGETS
    status: str = "active"
    principles: tuple[str, ...] = ()
    integrations: dict[str, Integration] = field(default_factory=dict)
    description: str = ""

    @property
    def targets_all(self) -> bool:
        return self.targets == ALL_TARGETS

    def covers(self, subsystem_name: str) -> bool:
        return self.targets_all or subsystem_name in self.targets


@dataclass(frozen=True, slots=True)
class WorkItem:
    id: str
    requested_by: str
    target: str
    target_file: str
    kind: str = "review"
    status: str = "pending"
    priority: str | None = None
    created: str = ""
    description: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


@dataclass(frozen=True, slots=True)
class RepositoryContext:
    root: Path
    agents: dict[str, Agent]
    subsystems: dict[str, Subsystem]
    skimsystems: dict[str, Skimsystem]
    work_items: tuple[WorkItem, ...] = ()

    def agent(self, name: str) -> Agent | None:
        return self.agents.get(name)

    def role_of(self, name: str) -> AgentRole | None:
        agent = self.agents.get(name)
        return agent.role if agent else None

    def subsystems_owned_by(self, agent_name: str) -> list[Subsystem]:
        return [sub for sub in self.subsystems.values() if sub.owner == agent_name]

    def skimsystems_owned_by(self, agent_name: str) -> list[Skimsystem]:
        return [skim for skim in self.skimsystems.values() if skim.owner == agent_name]

    def patterns_for(self, agent_name: str) -> list[str]:
        patterns: list[str] = []
        for subsystem in self.subsystems_owned_by(agent_name):
            for pattern in subsystem.files:
                if pattern not in patterns:
                    patterns.append(pattern)
        return patterns

    def subsystem_for_path(self, path: str) -> Subsystem | None:
        for subsystem in self.subsystems.values():
            if subsystem.owns(path):
                return subsystem
        return None

    def pending_work_items(self, requested_by: str | None = None) -> list[WorkItem]:
        return [
            item
            for item in self.work_items
            if item.is_pending and (requested_by is None or item.requested_by == requested_by)
        ]

    def format_agent_registry(self) -> str:
        lines = []
        for name in sorted(self.agents):
            agent = self.agents[name]
            description = agent.description or "(no description)"
            lines.append(f"- {name} (role: {agent.role.value}): {description}")
        return "\n".join(lines) or "(no agents registered)"

    def format_subsystem_summary(self) -> str:
        lines = [
            f"- {sub.name} (owner: {sub.owner}): files = {json.dumps(list(sub.files))}"
            for sub in self.subsystems.values()
        ]
        return "\n".join(lines) or "(no subsystems declared)"

    def format_skimsystem_summary(self) -> str:
        lines = []
        for skim in self.skimsystems.values():
            targets = ALL_TARGETS if skim.targets_all else json.dumps(list(skim.targets))
            lines.append(f"- {skim.name} (owner: {skim.owner}): targets = {targets}")
        return "\n".join(lines) or "(no skimsystems declared)"

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, root: Path) -> RepositoryContext:
        if not isinstance(data, dict):
            raise ContextError("Repository context must be a JSON object.")

        subsystems: dict[str, Subsystem] = {}
        for name, payload in _named_entries(data.get("subsystems"), "subsystems"):
            owner = _required_str(payload, "owner", f"subsystem '{name}'")
            files = payload.get("files", [])
            if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
                raise ContextError(f"subsystem '{name}': files must be a list of glob strings")
            subsystems[name] = Subsystem(
                name=name,
                owner=owner,
                files=tuple(normalize_path(item) for item in files),
                status=str(payload.get("status", "active")),
                description=str(payload.get("description", "")),
            )

        skimsystems: dict[str, Skimsystem] = {}
        for name, payload in _named_entries(data.get("skimsystems"), "skimsystems"):
            owner = _required_str(payload, "owner", f"skimsystem '{name}'")
            raw_targets = payload.get("targets", ALL_TARGETS)
            if raw_targets == ALL_TARGETS:
                targets: str | tuple[str, ...] = ALL_TARGETS
            elif isinstance(raw_targets, list):
                targets = tuple(str(item) for item in raw_targets)
                unknown = [item for item in targets if item not in subsystems]
                if unknown:
                    raise ContextError(
                        f"skimsystem '{name}' targets unknown subsystems: {', '.join(unknown)}"
                    )
            else:
                raise ContextError(f"skimsystem '{name}': targets must be 'all' or a list")
            integrations: dict[str, Integration] = {}
            raw_integrations = payload.get("integrations", {})
            if not isinstance(raw_integrations, dict):
                raise ContextError(f"skimsystem '{name}': integrations must be an object")
            for integration_name, entry in raw_integrations.items():
                if isinstance(entry, str):
                    entry = {"command": entry}
                if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
                    raise ContextError(
                        f"skimsystem '{name}': integration '{integration_name}' needs a command"
                    )
                integrations[integration_name] = Integration(
                    name=integration_name,
                    command=entry["command"],
                    description=str(entry.get("description", "")),
                )
            skimsystems[name] = Skimsystem(
                name=name,
                owner=owner,
                targets=targets,
                status=str(payload.get("status", "active")),
                principles=tuple(str(item) for item in payload.get("principles", [])),
                integrations=integrations,
                description=str(payload.get("description", "")),
            )

        agents = _derive_agents(data.get("agents"), subsystems, skimsystems)
        work_items = tuple(_work_item(payload) for payload in data.get("work_items", []) or [])
        return cls(
            root=root,
            agents=agents,
            subsystems=subsystems,
            skimsystems=skimsystems,
            work_items=work_items,
        )


def _named_entries(raw: Any, label: str) -> list[tuple[str, dict[str, Any]]]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        entries = list(raw.items())
    elif isinstance(raw, list):
        entries = []
        for item in raw:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ContextError(f"{label}: every entry needs a name")
            entries.append((item["name"], item))
    else:
        raise ContextError(f"{label} must be an object or a list")
    for name, payload in entries:
        if not isinstance(payload, dict):
            raise ContextError(f"{label}: entry '{name}' must be an object")
    return entries


def _required_str(payload: dict[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ContextError(f"{label}: missing '{key}'")
    return value.strip()


def _derive_agents(
    raw: Any,
    subsystems: dict[str, Subsystem],
    skimsystems: dict[str, Skimsystem],
) -> dict[str, Agent]:
    subsystem_owners = {sub.owner for sub in subsystems.values()}
    skim_owners = {skim.owner for skim in skimsystems.values()}
    both = sorted(subsystem_owners & skim_owners)
    if both:
        raise ContextError(
            f"Agents cannot own both subsystems and skimsystems: {', '.join(both)}"
        )

    agents: dict[str, Agent] = {}
    for name, payload in _named_entries(raw, "agents"):
        role_value = payload.get("role")
        if role_value is None:
            role_value = "skimsystem" if name in skim_owners else "subsystem"
        try:
            role = AgentRole(str(role_value).lower())
        except ValueError as exc:
            raise ContextError(f"agent '{name}': unknown role '{role_value}'") from exc
        agents[name] = Agent(name=name, role=role, description=str(payload.get("description", "")))

    for owner in sorted(subsystem_owners):
        agents.setdefault(owner, Agent(name=owner, role=AgentRole.SUBSYSTEM))
    for owner in sorted(skim_owners):
        agents.setdefault(owner, Agent(name=owner, role=AgentRole.SKIMSYSTEM))
    return agents


def _work_item(payload: Any) -> WorkItem:
    if not isinstance(payload, dict):
        raise ContextError("work_items entries must be objects")
    item_id = _required_str(payload, "id", "work item")
    return WorkItem(
        id=item_id,
        requested_by=_required_str(payload, "from", f"work item '{item_id}'")
        if "from" in payload
        else _required_str(payload, "requested_by", f"work item '{item_id}'"),
        target=str(payload.get("target", "")),
        target_file=normalize_path(str(payload.get("target_file", ""))),
        kind=str(payload.get("type", payload.get("kind", "review"))),
        status=str(payload.get("status", "pending")),
        priority=payload.get("priority"),
        created=str(payload.get("created", "")),
        description=str(payload.get("description", "")),
    )


def load_context(path: Path, root: Path | None = None) -> RepositoryContext:
    if not path.exists():
        raise ContextError(f"Repository context not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ContextError(f"{path}: invalid JSON ({exc})") from exc
    return RepositoryContext.from_dict(data, root=(root or path.parent).resolve())
