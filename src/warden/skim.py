from __future__ import annotations

import asyncio
import logging
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from warden.context import Integration, RepositoryContext, Skimsystem, WorkItem, sidecar_for
from warden.errors import ContextError
from warden.orchestrator import Orchestrator, RunOutcome, RunState, new_run_id
from warden.plan import Plan, Task
from warden.planner import ReplanFeedback
from warden.prompts import work_item_objective
from warden.workspace import safe_ref_component

LOGGER = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


@dataclass(slots=True)
class IntegrationRun:
    name: str
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
        }


@dataclass(slots=True)
class WorkPacket:
    subsystem: str
    agent: str
    items: list[WorkItem] = field(default_factory=list)

    @property
    def files(self) -> tuple[str, ...]:
        paths: list[str] = []
        for item in self.items:
            for path in (item.target_file, sidecar_for(item.target_file)):
                if path not in paths:
                    paths.append(path)
        return tuple(paths)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subsystem": self.subsystem,
            "agent": self.agent,
            "items": [item.id for item in self.items],
        }


@dataclass(slots=True)
class SkimReport:
    observer: str
    integrations: list[IntegrationRun] = field(default_factory=list)
    packets: list[WorkPacket] = field(default_factory=list)
    outcome: RunOutcome | None = None
    still_pending: list[str] = field(default_factory=list)
    unowned: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is not None and self.outcome.ok

    def to_dict(self) -> dict[str, Any]:
        outcome = self.outcome.to_dict() if self.outcome is not None else {}
        return {
            **outcome,
            "observer": self.observer,
            "integrations": [run.to_dict() for run in self.integrations],
            "packets": [packet.to_dict() for packet in self.packets],
            "still_pending": list(self.still_pending),
            "unowned": list(self.unowned),
        }


def run_command(command: str, cwd: Path) -> tuple[int, str, str]:
    command_text = command.strip()
    if not command_text:
        return 1, "", "Command is empty."

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return 127, "", str(exc)
    return proc.returncode, proc.stdout, proc.stderr


CommandRunner = Callable[[str, Path], tuple[int, str, str]]
ContextLoader = Callable[[], RepositoryContext]
OrchestratorFactory = Callable[[RepositoryContext], Orchestrator]


class SkimCoordinator:
    def __init__(
        self,
        context_loader: ContextLoader,
        orchestrator_factory: OrchestratorFactory,
        command_runner: CommandRunner = run_command,
    ) -> None:
        self.context_loader = context_loader
        self.orchestrator_factory = orchestrator_factory
        self.command_runner = command_runner

    @staticmethod
    def _observer(context: RepositoryContext, observer: str) -> Skimsystem:
        skim = context.skimsystems.get(observer)
        if skim is None:
            known = ", ".join(sorted(context.skimsystems)) or "none"
            raise ContextError(f"Unknown skimsystem '{observer}'. Known: {known}")
        return skim

    async def run_integration(
        self,
        context: RepositoryContext,
        observer: str,
        action: str | None = None,
    ) -> list[IntegrationRun]:
        skim = self._observer(context, observer)
        if action is not None:
            integration = skim.integrations.get(action)
            if integration is None:
                raise ContextError(f"Skimsystem '{observer}' has no integration named '{action}'.")
            selected: list[Integration] = [integration]
        else:
            selected = list(skim.integrations.values())

        runs: list[IntegrationRun] = []
        for integration in selected:
            LOGGER.info("Running %s integration %s", observer, integration.name)
            exit_code, stdout, stderr = await asyncio.to_thread(
                self.command_runner, integration.command, context.root
            )
            if exit_code != 0:
                LOGGER.warning("Integration %s exited with %s", integration.name, exit_code)
            runs.append(
                IntegrationRun(
                    name=integration.name,
                    command=integration.command,
                    exit_code=exit_code,
                    stdout_tail=stdout.strip()[-1000:],
                    stderr_tail=stderr.strip()[-1000:],
                )
            )
        return runs

    def _scoped_items(
        self, context: RepositoryContext, observer: str
    ) -> tuple[dict[str, list[WorkItem]], list[WorkItem]]:
        skim = self._observer(context, observer)
        grouped: dict[str, list[WorkItem]] = {}
        unowned: list[WorkItem] = []
        for item in context.pending_work_items(requested_by=skim.owner):
            subsystem = context.subsystem_for_path(item.target_file)
            if subsystem is None:
                unowned.append(item)
                continue
            if not skim.covers(subsystem.name):
                continue
            grouped.setdefault(subsystem.name, []).append(item)
        return grouped, unowned

    def collect_work_packets(self, context: RepositoryContext, observer: str) -> list[WorkPacket]:
        grouped, unowned = self._scoped_items(context, observer)
        for item in unowned:
            LOGGER.warning("Work item %s targets %s, which no subsystem owns", item.id, item.target_file)
        return [
            WorkPacket(
                subsystem=name,
                agent=context.subsystems[name].owner,
                items=grouped[name],
            )
            for name in sorted(grouped)
        ]

    @staticmethod
    def build_task(packet: WorkPacket, feedback: ReplanFeedback | None = None) -> Task:
        objective = work_item_objective(packet.subsystem, packet.items)
        if feedback is not None:
            objective = (
                f"{objective}\n## PREVIOUS ATTEMPT FAILED (attempt {feedback.attempt})\n"
                f"{feedback.render()}\n"
            )
        return Task(
            id=f"skim-{safe_ref_component(packet.subsystem)}",
            agent=packet.agent,
            objective=objective,
            files=packet.files,
        )

    async def run(self, observer: str, action: str | None = None) -> SkimReport:
        context = self.context_loader()
        self._observer(context, observer)
        report = SkimReport(observer=observer)
        report.integrations = await self.run_integration(context, observer, action)

        context = self.context_loader()
        report.packets = self.collect_work_packets(context, observer)
        report.unowned = [item.id for item in self._scoped_items(context, observer)[1]]
        if not report.packets:
            LOGGER.info("No pending work items for %s; nothing to delegate.", observer)
            report.outcome = RunOutcome(
                run_id=new_run_id(),
                status=RunState.DONE,
                state_history=[RunState.DONE],
            )
            return report

        async def plan_source(feedback: ReplanFeedback | None) -> Plan:
            packets = report.packets
            if feedback is not None:
                packets = self.collect_work_packets(self.context_loader(), observer)
            total = sum(len(packet.items) for packet in packets)
            return Plan(
                summary=f"Resolve {total} pending work items raised by {observer}",
                tasks=[self.build_task(packet, feedback) for packet in packets],
            )

        orchestrator = self.orchestrator_factory(context)
        report.outcome = await orchestrator.run(plan_source)

        grouped, _ = self._scoped_items(self.context_loader(), observer)
        report.still_pending = [item.id for items in grouped.values() for item in items]
        return report
