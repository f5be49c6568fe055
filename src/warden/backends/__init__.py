from warden.backends.base import (
    AgentBackend,
    AgentInvocation,
    AgentOutput,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    scrubbed_environment,
)
from warden.backends.claude import ClaudeCodeBackend
from warden.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "AgentInvocation",
    "AgentOutput",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "scrubbed_environment",
]
