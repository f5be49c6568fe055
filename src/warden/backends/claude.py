from __future__ import annotations

import asyncio
import logging
from typing import Any

from warden.backends.base import (
    STREAM_LIMIT,
    WRITE_ONLY_TOOLS,
    AgentBackend,
    AgentInvocation,
    AgentOutput,
    BackendExecutionError,
    BackendProcessError,
    EventHook,
    iter_json_events,
    scrubbed_environment,
    terminate_process,
)

LOGGER = logging.getLogger(__name__)


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary or "claude"

    def build_command(self, invocation: AgentInvocation) -> list[str]:
        command = [
            self.binary,
            "-p",
            invocation.prompt,
            "--system-prompt",
            invocation.system_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(invocation.max_turns),
            "--allowedTools",
            ",".join(invocation.allowed_tools),
            "--permission-mode",
            "plan" if invocation.read_only else "acceptEdits",
        ]
        if invocation.read_only:
            command.extend(["--disallowedTools", ",".join(WRITE_ONLY_TOOLS)])
        if invocation.model.strip():
            command.extend(["--model", invocation.model.strip()])
        return command

    @staticmethod
    def _extract_text(message: dict[str, Any]) -> str:
        content = message.get("content")
        if isinstance(content, str):
            return content
        parts: list[str] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
        return "".join(parts)

    @staticmethod
    def _tool_uses(message: dict[str, Any]) -> list[str]:
        content = message.get("content")
        if not isinstance(content, list):
            return []
        return [
            str(item.get("name", "tool"))
            for item in content
            if isinstance(item, dict) and item.get("type") == "tool_use"
        ]

    async def execute(
        self,
        invocation: AgentInvocation,
        event_hook: EventHook | None = None,
    ) -> AgentOutput:
        def emit(payload: dict[str, Any]) -> None:
            if event_hook is not None:
                event_hook({"agent": invocation.label, **payload})

        command = self.build_command(invocation)
        emit({"event": "claude_cli_start", "read_only": invocation.read_only})
        LOGGER.debug("Starting claude for %s in %s", invocation.label, invocation.working_directory)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(invocation.working_directory),
                env=scrubbed_environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        texts: list[str] = []
        result_text: str | None = None
        turns = 0
        tool_calls = 0
        reported_turns: int | None = None
        cost_usd: float | None = None
        is_error = False
        try:
            async for event in iter_json_events(process.stdout, emit=emit, backend="claude"):
                event_type = str(event.get("type", ""))
                if event_type == "assistant":
                    message = event.get("message")
                    if not isinstance(message, dict):
                        continue
                    turns += 1
                    emit({"event": "agent_turn", "turn": turns})
                    for tool_name in self._tool_uses(message):
                        tool_calls += 1
                        emit({"event": "agent_tool", "tool": tool_name})
                    text = self._extract_text(message)
                    if text:
                        texts.append(text)
                elif event_type == "result":
                    result = event.get("result")
                    if isinstance(result, str):
                        result_text = result
                    if isinstance(event.get("num_turns"), int):
                        reported_turns = event["num_turns"]
                    cost = event.get("total_cost_usd", event.get("cost_usd"))
                    if isinstance(cost, int | float):
                        cost_usd = float(cost)
                    is_error = bool(event.get("is_error", False))

            return_code = await process.wait()
        except BaseException:
            await terminate_process(process)
            emit({"event": "claude_cli_killed"})
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        emit({"event": "claude_cli_exit", "exit_code": return_code})
        if return_code != 0 or is_error:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: "
                f"{stderr_output or result_text or ''}".rstrip(),
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
        return AgentOutput(
            content=(result_text if result_text is not None else "\n".join(texts)).strip(),
            exit_code=return_code,
            turns=reported_turns if reported_turns is not None else turns,
            tool_calls=tool_calls,
            cost_usd=cost_usd,
            stderr=stderr_output,
        )
