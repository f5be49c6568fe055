from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

EventHook = Callable[[dict[str, Any]], None]

# Variables that let a child agent recognize it runs under an orchestrator.
ORCHESTRATION_MARKERS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "WARDEN_RUN_ID", "WARDEN_ACTIVE")

READ_TOOLS = ("Read", "Grep", "Glob", "Bash")
EDIT_TOOLS = ("Bash", "Edit", "Read", "Write", "Grep", "Glob")
WRITE_ONLY_TOOLS = ("Edit", "Write", "NotebookEdit")

# Per-line read limit for agent output streams.
STREAM_LIMIT = 16 * 1024 * 1024


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    reason = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""

    reason = "timeout"


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentInvocation:
    prompt: str
    system_prompt: str
    working_directory: Path
    read_only: bool = False
    allowed_tools: tuple[str, ...] = EDIT_TOOLS
    model: str = ""
    max_turns: int = 50
    label: str = "agent"


@dataclass(slots=True)
class AgentOutput:
    content: str
    exit_code: int = 0
    turns: int = 0
    tool_calls: int = 0
    cost_usd: float | None = None
    stderr: str = ""


def scrubbed_environment() -> dict[str, str]:
    env = os.environ.copy()
    for name in ORCHESTRATION_MARKERS:
        env.pop(name, None)
    return env


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_json_events(
    stream: Any,
    *,
    emit: Callable[[dict[str, Any]], None],
    backend: str,
) -> AsyncIterator[dict[str, Any]]:
    parse_buffer = ""
    try:
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if appears_partial_json(candidate):
                    parse_buffer = candidate
                    emit({"event": f"{backend}_json_partial", "bytes": len(candidate)})
                    continue
                parse_buffer = ""
                emit({"event": f"{backend}_json_parse_fallback", "line": line[:200]})
                continue
            if isinstance(event, dict):
                yield event
    except (ValueError, asyncio.LimitOverrunError) as exc:
        raise BackendProcessError(
            f"{backend} emitted an output line that could not be read: {exc}",
            backend=backend,
            retriable=False,
        ) from exc

    if parse_buffer:
        emit({"event": f"{backend}_json_buffer_flush", "bytes": len(parse_buffer)})


async def terminate_process(process: Any) -> None:
    if getattr(process, "returncode", None) is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


class AgentBackend(ABC):
    name = "agent"

    @abstractmethod
    async def execute(
        self,
        invocation: AgentInvocation,
        event_hook: EventHook | None = None,
    ) -> AgentOutput:
        """Run one agent invocation to completion and return its final output."""
