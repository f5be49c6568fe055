from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click

from warden.backends import AgentBackend, ClaudeCodeBackend, CodexBackend
from warden.config import MERGE_STRATEGIES, WardenConfig, load_config, save_config
from warden.context import RepositoryContext, load_context
from warden.errors import WardenError
from warden.orchestrator import MergeStrategy, OrchestrateConfig, Orchestrator
from warden.plan import Plan
from warden.planner import PlanningAgent, ReplanFeedback
from warden.runner import TaskRunner
from warden.skim import SkimCoordinator
from warden.workspace import STATE_DIRNAME, WorkspaceManager

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WardenConfig
    workspaces: WorkspaceManager
    backend: AgentBackend

    def load_context(self) -> RepositoryContext:
        return load_context(self.repo_root / self.config.project.context_path, root=self.repo_root)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def _build_backend(config: WardenConfig) -> AgentBackend:
    if config.backend.name == "codex":
        return CodexBackend(binary=config.backend.binary)
    return ClaudeCodeBackend(binary=config.backend.binary)


def _load_runtime(repo_root: Path, config_value: str) -> Runtime:
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    workspaces = WorkspaceManager(
        repo_root,
        root=config.workspace.root,
        branch_prefix=config.workspace.branch_prefix,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        workspaces=workspaces,
        backend=_build_backend(config),
    )


def _event_printer(verbose: bool) -> Callable[[dict[str, Any]], None]:
    def _hook(event: dict[str, Any]) -> None:
        name = event.get("event", "")
        if verbose or name in {"state", "permission_violation", "merged", "task_failed"}:
            details = {key: value for key, value in event.items() if key not in {"event", "run_id"}}
            click.echo(f"[{name}] {json.dumps(details, ensure_ascii=False)}", err=True)

    return _hook


def _build_orchestrator(
    runtime: Runtime,
    context: RepositoryContext,
    settings: OrchestrateConfig,
    verbose: bool,
) -> Orchestrator:
    hook = _event_printer(verbose)
    runner = TaskRunner(
        runtime.backend,
        runtime.workspaces,
        timeout_seconds=runtime.config.orchestrate.task_timeout_seconds,
        model=runtime.config.backend.model,
        max_turns=runtime.config.backend.max_turns,
        event_hook=hook,
    )
    return Orchestrator(context, runtime.workspaces, runner, settings, event_hook=hook)


def _emit_report(payload: dict[str, Any], *, ok: bool, as_json: bool) -> None:
    if as_json or not ok:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        click.echo(f"Run {payload['run_id']}: {payload['status']}")
        merged = payload.get("merged_task_ids") or []
        click.echo(f"Merged tasks: {', '.join(merged) if merged else '(none)'}")
    if not ok:
        raise SystemExit(1)


def _command_error(exc: WardenError, *, as_json: bool) -> NoReturn:
    if as_json:
        payload = {"status": "error", "reason": exc.reason, "message": str(exc)}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        raise SystemExit(1) from exc
    raise click.ClickException(f"{exc.reason}: {exc}") from exc


@click.group()
def cli() -> None:
    """Warden: permission-enforcing orchestration of code-editing agents."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except WardenError as exc:
        raise click.ClickException(f"{exc.reason}: {exc}") from exc
    if backend:
        config.backend.name = backend  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / STATE_DIRNAME).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized warden in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.name}")


@cli.command("run")
@click.argument("request")
@click.option("--path", "path_value", default=".", show_default=True)
@click.option("--plan-only", is_flag=True, default=False)
@click.option("--max-replans", type=click.IntRange(min=0), default=None)
@click.option("--merge-strategy", type=click.Choice(list(MERGE_STRATEGIES)), default=None)
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def run_command(
    request: str,
    path_value: str,
    plan_only: bool,
    max_replans: int | None,
    merge_strategy: str | None,
    max_parallel: int | None,
    as_json: bool,
    verbose: bool,
    config_value: str,
) -> None:
    repo_root = Path(path_value).resolve()
    try:
        runtime = _load_runtime(repo_root, config_value)
        _configure_logging(runtime.config.logging.level, verbose)
        settings = OrchestrateConfig.from_settings(runtime.config.orchestrate)
        if max_replans is not None:
            settings.max_replans = max_replans
        if merge_strategy is not None:
            settings.merge_strategy = MergeStrategy.parse(merge_strategy)
        if max_parallel is not None:
            settings.max_parallel_tasks = max_parallel

        context = runtime.load_context()
        planner = PlanningAgent(
            runtime.backend,
            model=runtime.config.backend.planner_model or runtime.config.backend.model,
            timeout_seconds=runtime.config.orchestrate.planner_timeout_seconds,
            max_turns=runtime.config.backend.max_turns,
        )

        async def plan_source(feedback: ReplanFeedback | None) -> Plan:
            return await planner.plan(request, context, feedback)

        orchestrator = _build_orchestrator(runtime, context, settings, verbose)
        if plan_only:
            validated = asyncio.run(orchestrator.plan_only(plan_source))
            click.echo(json.dumps(validated.to_dict(), ensure_ascii=False, indent=2))
            return
        outcome = asyncio.run(orchestrator.run(plan_source))
    except WardenError as exc:
        _command_error(exc, as_json=as_json)

    _emit_report(outcome.to_dict(), ok=outcome.ok, as_json=as_json)


@cli.command("skim")
@click.argument("observer")
@click.option("--action", default=None)
@click.option("--path", "path_value", default=".", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def skim_command(
    observer: str,
    action: str | None,
    path_value: str,
    as_json: bool,
    verbose: bool,
    config_value: str,
) -> None:
    repo_root = Path(path_value).resolve()
    try:
        runtime = _load_runtime(repo_root, config_value)
        _configure_logging(runtime.config.logging.level, verbose)
        settings = OrchestrateConfig.from_settings(runtime.config.orchestrate)
        coordinator = SkimCoordinator(
            runtime.load_context,
            lambda context: _build_orchestrator(runtime, context, settings, verbose),
        )
        report = asyncio.run(coordinator.run(observer, action))
    except WardenError as exc:
        _command_error(exc, as_json=as_json)

    _emit_report(report.to_dict(), ok=report.ok, as_json=as_json)


@cli.command("sweep")
@click.option("--path", "path_value", default=".", show_default=True)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def sweep_command(path_value: str, config_value: str) -> None:
    repo_root = Path(path_value).resolve()
    try:
        runtime = _load_runtime(repo_root, config_value)
        report = runtime.workspaces.sweep()
    except WardenError as exc:
        raise click.ClickException(f"{exc.reason}: {exc}") from exc

    if report.empty:
        click.echo("No orphaned workspaces found.")
        return
    for run_id in report.runs:
        click.echo(f"Reclaimed {run_id}")
    click.echo(
        f"Removed {len(report.branches)} branches and {len(report.directories)} directories."
    )
