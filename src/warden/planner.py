from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from warden.backends.base import READ_TOOLS, AgentBackend, AgentInvocation, BackendExecutionError, EventHook
from warden.context import RepositoryContext
from warden.errors import PlannerError
from warden.permissions import Verdict
from warden.plan import Plan, parse_plan_output
from warden.prompts import planner_prompt, replan_prompt

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReplanFeedback:
    """What went wrong in the previous attempt, rendered into the next planning call."""

    attempt: int
    violations: list[Verdict] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    plan_error: str | None = None

    def render(self) -> str:
        lines: list[str] = []
        if self.violations:
            lines.append("Your previous plan was rejected due to permission violations:")
            for verdict in self.violations:
                lines.append(f"\nAgent '{verdict.agent}' violated permissions:")
                for violation in verdict.violations:
                    target = violation.path or "(agent)"
                    lines.append(f"  - {target}: {violation.reason}")
        if self.plan_error:
            lines.append(f"Your previous plan was structurally invalid: {self.plan_error}")
        if self.failures:
            lines.append("Failures in the previous attempt:")
            lines.extend(f"  - {failure}" for failure in self.failures)
        return "\n".join(lines) or "The previous attempt did not complete."


class PlanningAgent:
    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str = "",
        timeout_seconds: float = 120.0,
        max_turns: int = 50,
        event_hook: EventHook | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_turns = max_turns
        self.event_hook = event_hook

    async def plan(
        self,
        request: str,
        context: RepositoryContext,
        feedback: ReplanFeedback | None = None,
    ) -> Plan:
        if feedback is None:
            system_prompt = planner_prompt(context)
        else:
            system_prompt = replan_prompt(context, feedback, feedback.attempt)
        invocation = AgentInvocation(
            prompt=request,
            system_prompt=system_prompt,
            working_directory=context.root,
            read_only=True,
            allowed_tools=READ_TOOLS,
            model=self.model,
            max_turns=self.max_turns,
            label="planner",
        )
        LOGGER.info("Planning%s", f" (replan after attempt {feedback.attempt})" if feedback else "")
        try:
            output = await asyncio.wait_for(
                self.backend.execute(invocation, self.event_hook),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise PlannerError(
                f"Planning agent timed out after {self.timeout_seconds:.0f}s."
            ) from exc
        except BackendExecutionError as exc:
            raise PlannerError(f"Planning agent failed: {exc}") from exc
        return parse_plan_output(output.content)
