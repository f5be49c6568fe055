from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from warden.errors import ConfigError

BackendName = Literal["claude", "codex"]
MERGE_STRATEGIES = ("all-or-nothing", "incremental")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    context_path: str = ".warden/context.json"


@dataclass(slots=True)
class BackendConfig:
    name: BackendName = "claude"
    binary: str = ""
    model: str = ""
    planner_model: str = ""
    max_turns: int = 50


@dataclass(slots=True)
class OrchestrateSettings:
    max_replans: int = 2
    merge_strategy: str = "all-or-nothing"
    max_parallel_tasks: int = 4
    task_timeout_seconds: float = 300.0
    planner_timeout_seconds: float = 120.0


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = ".warden/workspaces"
    branch_prefix: str = "warden"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class WardenConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    orchestrate: OrchestrateSettings = field(default_factory=OrchestrateSettings)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> WardenConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WardenConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                backend=BackendConfig(**data.get("backend", {})),
                orchestrate=OrchestrateSettings(**data.get("orchestrate", {})),
                workspace=WorkspaceConfig(**data.get("workspace", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.backend.name not in {"claude", "codex"}:
            raise ConfigError(f"Unsupported backend: {self.backend.name}")
        if self.orchestrate.merge_strategy not in MERGE_STRATEGIES:
            raise ConfigError(
                f"Unsupported merge strategy '{self.orchestrate.merge_strategy}'. "
                f"Expected one of: {', '.join(MERGE_STRATEGIES)}"
            )
        if self.orchestrate.max_replans < 0:
            raise ConfigError("orchestrate.max_replans must be >= 0")
        if self.logging.level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unsupported log level: {self.logging.level}")

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "context_path": self.project.context_path,
            },
            "backend": {
                "name": self.backend.name,
                "binary": self.backend.binary,
                "model": self.backend.model,
                "planner_model": self.backend.planner_model,
                "max_turns": self.backend.max_turns,
            },
            "orchestrate": {
                "max_replans": self.orchestrate.max_replans,
                "merge_strategy": self.orchestrate.merge_strategy,
                "max_parallel_tasks": self.orchestrate.max_parallel_tasks,
                "task_timeout_seconds": self.orchestrate.task_timeout_seconds,
                "planner_timeout_seconds": self.orchestrate.planner_timeout_seconds,
            },
            "workspace": {
                "root": self.workspace.root,
                "branch_prefix": self.workspace.branch_prefix,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WardenConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "orchestrate", "workspace", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WardenConfig:
    if not path.exists():
        return WardenConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    return WardenConfig.from_dict(data)


def save_config(path: Path, config: WardenConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
