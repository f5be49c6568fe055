from __future__ import annotations


class WardenError(RuntimeError):
    """Base class for orchestration errors surfaced to the caller."""

    reason = "error"


class ConfigError(WardenError):
    reason = "config"


class ContextError(WardenError):
    reason = "context"


class PlanError(WardenError):
    """Raised when a plan is structurally unsound."""

    reason = "plan_error"

    def __init__(self, message: str, *, kind: str, task_id: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.task_id = task_id


class PlannerError(WardenError):
    """Raised when the planning process fails or returns malformed output."""

    reason = "planner_failed"


class WorkspaceError(WardenError):
    reason = "workspace_error"


class MergeError(WardenError):
    reason = "merge_conflict"

    def __init__(self, message: str, *, branch: str, conflicted_files: list[str]) -> None:
        super().__init__(message)
        self.branch = branch
        self.conflicted_files = conflicted_files


class NestedRunError(WardenError):
    reason = "nested_run"
