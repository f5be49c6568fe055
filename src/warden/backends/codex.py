from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from warden.backends.base import (
    STREAM_LIMIT,
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


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex") -> None:
        self.binary = binary or "codex"

    def build_command(self, invocation: AgentInvocation) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--sandbox",
            "read-only" if invocation.read_only else "workspace-write",
            "--cd",
            str(invocation.working_directory),
            "-c",
            f"instructions={json.dumps(invocation.system_prompt, ensure_ascii=False)}",
        ]
        if invocation.model.strip():
            command.extend(["-m", invocation.model.strip()])
        command.append(invocation.prompt)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") in {"agent_message", "assistant_message"}:
            text = item.get("text")
            if isinstance(text, str):
                return text

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for part in content:
                if isinstance(part, dict):
                    text = part.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content

        return ""

    @staticmethod
    def _is_tool_event(event: dict[str, Any]) -> bool:
        item = event.get("item")
        if event.get("type") != "item.completed" or not isinstance(item, dict):
            return False
        return item.get("type") in {"command_execution", "file_change", "mcp_tool_call"}

    async def execute(
        self,
        invocation: AgentInvocation,
        event_hook: EventHook | None = None,
    ) -> AgentOutput:
        def emit(payload: dict[str, Any]) -> None:
            if event_hook is not None:
                event_hook({"agent": invocation.label, **payload})

        command = self.build_command(invocation)
        emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "read_only": invocation.read_only,
                "model": invocation.model or None,
            }
        )
        LOGGER.debug("Starting codex for %s in %s", invocation.label, invocation.working_directory)
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
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
            )

        chunks: list[str] = []
        turns = 0
        tool_calls = 0
        try:
            async for event in iter_json_events(process.stdout, emit=emit, backend="codex"):
                event_type = str(event.get("type", ""))
                if event_type in {"turn.completed", "turn.started"}:
                    if event_type == "turn.completed":
                        turns += 1
                        emit({"event": "agent_turn", "turn": turns})
                    continue
                if self._is_tool_event(event):
                    tool_calls += 1
                    emit({"event": "agent_tool", "tool": str(event["item"].get("type"))})
                    continue
                content = self._extract_content(event)
                emit({"event": "codex_json_event", "type": event_type, "has_content": bool(content)})
                if content:
                    chunks.append(content)

            return_code = await process.wait()
        except BaseException:
            await terminate_process(process)
            emit({"event": "codex_cli_killed"})
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            emit({"event": "codex_cli_exit", "exit_code": return_code, "stderr": stderr_output[:400]})
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
        emit({"event": "codex_cli_exit", "exit_code": 0})
        return AgentOutput(
            content="".join(chunks).strip(),
            exit_code=return_code,
            turns=turns,
            tool_calls=tool_calls,
            stderr=stderr_output,
        )
