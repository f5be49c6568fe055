from __future__ import annotations

from typing import TYPE_CHECKING

from warden.context import ALL_TARGETS, AgentRole, RepositoryContext, WorkItem, sidecar_for
from warden.plan import Task

if TYPE_CHECKING:
    from warden.planner import ReplanFeedback

PLAN_SCHEMA = """{
  "summary": "what you plan to do",
  "tasks": [
    {
      "id": "short-unique-id",
      "agent": "agent name from the registry",
      "objective": "specific, actionable instruction for this agent",
      "files": ["file paths the agent should focus on"],
      "depends_on": ["id of a task that must finish first"]
    }
  ]
}"""

WORK_ITEM_FORMAT = """#[change_requests {{
  #[request(
    id = "unique-id",
    from = "{agent}",
    target = fn(function_name),
    type = review,
    status = pending,
    created = "YYYY-MM-DD",
    description = "what needs to change and why"
  )]
}}]"""


def planner_prompt(context: RepositoryContext) -> str:
    sections = [
        "You are the planning agent of a multi-agent orchestrator.\n\n"
        "Turn the user's request into a structured execution plan that delegates work to "
        "registered agents. You are READ-ONLY: do not modify any files.",
        f"## Agent Registry\n\n{context.format_agent_registry()}",
        f"## Subsystem Ownership\n\n{context.format_subsystem_summary()}",
        f"## Observer Coverage\n\n{context.format_skimsystem_summary()}",
        "## Rules\n\n"
        "1. Subsystem agents can ONLY modify files matching their subsystem's glob patterns.\n"
        "2. Observer (skimsystem) agents can ONLY modify *.bog sidecar files, never source files.\n"
        "3. Every task must name a registered agent.\n"
        "4. A task may depend on earlier tasks by listing their ids in depends_on; "
        "dependencies must not form a cycle.\n"
        "5. Objectives should be specific and actionable.\n"
        "6. files should list the specific paths the agent is expected to touch.",
        "## Output Format\n\n"
        "Respond with ONLY a JSON object matching this schema (no markdown, no explanation):\n"
        f"{PLAN_SCHEMA}",
    ]
    return "\n\n".join(sections)


def replan_prompt(context: RepositoryContext, feedback: ReplanFeedback, attempt: int) -> str:
    return (
        f"{planner_prompt(context)}\n\n"
        f"## PREVIOUS ATTEMPT FAILED (attempt {attempt})\n\n"
        f"{feedback.render()}\n\n"
        "Produce a corrected plan. Ensure each agent only targets files within its declared scope."
    )


def _task_section(task: Task) -> str:
    focus = "\n".join(f"- {path}" for path in task.files) or "(none specified)"
    return f"## Task\n{task.objective}\n\n## Focus Files\n{focus}"


def subsystem_agent_prompt(context: RepositoryContext, task: Task) -> str:
    identity = [
        f"You are {task.agent}, a subsystem agent in a multi-agent orchestrator.",
        "",
        "## Your Subsystems",
    ]
    for subsystem in context.subsystems_owned_by(task.agent):
        identity.append(f"### {subsystem.name} ({subsystem.status})")
        if subsystem.description:
            identity.append(subsystem.description)
        identity.append(f"Files: {', '.join(subsystem.files)}")

    pending = [
        item
        for item in context.pending_work_items()
        if (owner := context.subsystem_for_path(item.target_file)) is not None
        and owner.owner == task.agent
    ]
    sections = ["\n".join(identity)]
    if pending:
        sections.append(
            "## Pending Change Requests\n"
            + "\n".join(f"- [{item.id}] {item.target_file}: {item.description}" for item in pending)
        )

    patterns = "\n".join(f"- {pattern}" for pattern in context.patterns_for(task.agent))
    sections.append(
        "## File Boundary (STRICT)\n"
        f"You may ONLY modify files matching these patterns:\n{patterns}\n\n"
        "STRICT BOUNDARY: If you modify any file outside these patterns, "
        "your entire run will be rejected."
    )
    sections.append(_task_section(task))
    sections.append(
        "## Guidelines\n"
        "- Make targeted, minimal changes to accomplish the task.\n"
        "- You may read any file for context, but only write to files you own.\n"
        "- If you need changes in files you don't own, say so in your final answer; "
        "the orchestrator coordinates cross-boundary work.\n"
        "- Leave your changes in the working tree; the orchestrator commits them."
    )
    return "\n\n".join(sections)


def observer_agent_prompt(context: RepositoryContext, task: Task) -> str:
    skimsystems = context.skimsystems_owned_by(task.agent)
    identity = [
        f"You are {task.agent}, a skimsystem (observer) agent in a multi-agent orchestrator.",
        "",
        "## Your Skimsystems",
    ]
    principles: list[str] = []
    for skim in skimsystems:
        targets = ALL_TARGETS if skim.targets_all else ", ".join(skim.targets)
        identity.append(f"### {skim.name} ({skim.status}, targets: {targets})")
        if skim.description:
            identity.append(skim.description)
        principles.extend(f"- [{skim.name}] {principle}" for principle in skim.principles)

    sections = [
        "\n".join(identity),
        "## Principles\n" + ("\n".join(principles) or "(none)"),
        "## STRICT BOUNDARY\n"
        "You may ONLY modify *.bog sidecar files. You must NEVER modify source files.\n"
        "Your changes should be change_requests addressed to the owners of the affected subsystems.\n\n"
        "If you modify any non-.bog file, your entire run will be rejected.\n\n"
        "## Change Request Format\n"
        "In .bog files, use this format:\n" + WORK_ITEM_FORMAT.format(agent=task.agent),
        _task_section(task),
    ]
    return "\n\n".join(sections)


def agent_prompt(context: RepositoryContext, task: Task) -> str:
    role = context.role_of(task.agent)
    match role:
        case AgentRole.SUBSYSTEM:
            return subsystem_agent_prompt(context, task)
        case AgentRole.SKIMSYSTEM:
            return observer_agent_prompt(context, task)
        case None:
            raise ValueError(f"Agent '{task.agent}' is not registered.")


def work_item_objective(subsystem: str, items: list[WorkItem]) -> str:
    lines = [
        f"Resolve the following change requests in the {subsystem} subsystem. "
        "For each one, fix the code in the source file, then update the matching "
        "change_request in the .bog sidecar file: change `status = pending` to "
        "`status = closed`. If you cannot resolve an item, set `status = denied` "
        "and add a note explaining why.",
        "",
    ]
    by_file: dict[str, list[WorkItem]] = {}
    for item in items:
        by_file.setdefault(item.target_file, []).append(item)
    for target_file, file_items in by_file.items():
        lines.append(f"### {target_file} (sidecar: {sidecar_for(target_file)})")
        lines.extend(f"- [{item.id}] {item.description}" for item in file_items)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
