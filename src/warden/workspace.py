from __future__ import annotations

import json
import logging
import os
import re
import shutil
import socket
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from warden.errors import MergeError, WorkspaceError

LOGGER = logging.getLogger(__name__)

STATE_DIRNAME = ".warden"
ORCHESTRATOR_IDENTITY = "warden"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def safe_ref_component(name: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]+", "-", name.strip())
    safe = re.sub(r"\.{2,}", ".", safe).strip(".-")
    if safe.endswith(".lock"):
        safe = safe[: -len(".lock")]
    return safe or "task"


class WorkspaceState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    INSPECTED = "inspected"
    MERGED = "merged"
    DISCARDED = "discarded"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class FileChange:
    path: str
    change: ChangeType

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "change": self.change.value}


@dataclass(slots=True)
class Workspace:
    name: str
    run_id: str
    path: Path
    branch: str
    base_commit: str
    state: WorkspaceState = WorkspaceState.CREATED
    tip: str = ""

    @property
    def revision(self) -> str:
        return self.tip or self.branch


@dataclass(slots=True)
class SweepReport:
    runs: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.runs or self.branches or self.directories)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": list(self.runs),
            "branches": list(self.branches),
            "directories": list(self.directories),
        }


_NAME_STATUS = {
    "A": ChangeType.ADDED,
    "M": ChangeType.MODIFIED,
    "T": ChangeType.MODIFIED,
    "D": ChangeType.DELETED,
}


class WorkspaceManager:
    def __init__(
        self,
        repo_root: Path,
        *,
        root: str = ".warden/workspaces",
        branch_prefix: str = "warden",
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.branch_prefix = branch_prefix.strip("/") or "warden"
        root_path = Path(root)
        self.workspace_root = root_path if root_path.is_absolute() else self.repo_root / root_path
        self.leases_dir = self.repo_root / STATE_DIRNAME / "leases"
        self._lock = threading.Lock()
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        if proc.returncode != 0 or proc.stdout.strip() != "true":
            raise WorkspaceError(f"Not a git repository: {self.repo_root}")
        self._ensure_excluded()

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _identity(label: str) -> list[str]:
        return ["-c", f"user.name={label}", "-c", f"user.email={label}@warden.invalid"]

    def _ensure_excluded(self) -> None:
        common_dir = Path(self._run_git(["rev-parse", "--git-common-dir"]).stdout.strip())
        if not common_dir.is_absolute():
            common_dir = self.repo_root / common_dir
        exclude_file = common_dir / "info" / "exclude"
        entries = [f"/{STATE_DIRNAME}/"]
        try:
            relative_root = self.workspace_root.resolve().relative_to(self.repo_root)
        except ValueError:
            relative_root = None
        if relative_root is not None and relative_root.parts[0] != STATE_DIRNAME:
            entries.append(f"/{relative_root.as_posix()}/")

        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        missing = [entry for entry in entries if entry not in existing.splitlines()]
        if not missing:
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_file.open("a", encoding="utf-8") as handle:
            handle.write(prefix + "\n".join(missing) + "\n")

    def branch_name(self, run_id: str, name: str) -> str:
        return f"{self.branch_prefix}/{run_id}/{safe_ref_component(name)}"

    def workspace_path(self, run_id: str, name: str) -> Path:
        return self.workspace_root / run_id / safe_ref_component(name)

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def create(
        self,
        run_id: str,
        name: str,
        base_revision: str,
        include_branches: tuple[str, ...] | list[str] = (),
    ) -> Workspace:
        branch = self.branch_name(run_id, name)
        path = self.workspace_path(run_id, name)
        with self._lock:
            if self._branch_exists(branch):
                raise WorkspaceError(f"Workspace branch already exists: {branch}")
            if path.exists():
                raise WorkspaceError(f"Workspace directory already exists: {path}")
            path.parent.mkdir(parents=True, exist_ok=True)
            self._run_git(["worktree", "add", "-b", branch, str(path), base_revision])
            workspace = Workspace(
                name=safe_ref_component(name),
                run_id=run_id,
                path=path,
                branch=branch,
                base_commit="",
            )
            for predecessor in include_branches:
                proc = self._run_git(
                    [
                        *self._identity(ORCHESTRATOR_IDENTITY),
                        "merge",
                        "--no-ff",
                        "--no-edit",
                        "-m",
                        f"warden: include {predecessor}",
                        predecessor,
                    ],
                    check=False,
                    cwd=path,
                )
                if proc.returncode != 0:
                    self._run_git(["merge", "--abort"], check=False, cwd=path)
                    self._remove(workspace)
                    raise WorkspaceError(
                        f"Could not bring {predecessor} into workspace {branch}: "
                        f"{proc.stderr.strip() or proc.stdout.strip()}"
                    )
            workspace.base_commit = self._run_git(["rev-parse", "HEAD"], cwd=path).stdout.strip()
        LOGGER.debug("Created workspace %s at %s", branch, path)
        return workspace

    def _verify_head(self, workspace: Workspace) -> None:
        expected = f"refs/heads/{workspace.branch}"
        proc = self._run_git(["symbolic-ref", "-q", "HEAD"], check=False, cwd=workspace.path)
        head_ref = proc.stdout.strip()
        if head_ref != expected:
            raise WorkspaceError(
                f"Workspace {workspace.name} is no longer on {workspace.branch} "
                f"(HEAD is {head_ref or 'detached'})"
            )

    def snapshot(self, workspace: Workspace, message: str, *, author: str | None = None) -> str | None:
        """Commit everything in the worktree and pin the branch tip that diff and merge will use."""
        self._verify_head(workspace)
        self._run_git(["add", "-A"], cwd=workspace.path)
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False, cwd=workspace.path)
        commit = None
        if staged.returncode != 0:
            identity = self._identity(safe_ref_component(author or workspace.name))
            self._run_git([*identity, "commit", "--no-verify", "-m", message], cwd=workspace.path)
            commit = self._run_git(["rev-parse", "HEAD"], cwd=workspace.path).stdout.strip()
        workspace.tip = self._run_git(
            ["rev-parse", "--verify", f"refs/heads/{workspace.branch}"], cwd=workspace.path
        ).stdout.strip()
        return commit

    def diff(self, workspace: Workspace) -> list[FileChange]:
        changes: dict[str, ChangeType] = {}
        args = ["diff", "--name-status", "--no-renames", workspace.base_commit]
        if workspace.tip:
            args.append(workspace.tip)
        proc = self._run_git(args, cwd=workspace.path)
        for line in proc.stdout.splitlines():
            status, _, path = line.partition("\t")
            if not path:
                continue
            changes[path.strip()] = _NAME_STATUS.get(status.strip()[:1], ChangeType.MODIFIED)
        if not workspace.tip:
            untracked = self._run_git(["ls-files", "--others", "--exclude-standard"], cwd=workspace.path)
            for line in untracked.stdout.splitlines():
                if line.strip():
                    changes[line.strip()] = ChangeType.ADDED
        if workspace.state in (WorkspaceState.CREATED, WorkspaceState.ACTIVE):
            workspace.state = WorkspaceState.INSPECTED
        return [FileChange(path=path, change=changes[path]) for path in sorted(changes)]

    def patch_text(self, workspace: Workspace) -> str:
        args = ["diff", "--no-renames", workspace.base_commit]
        if workspace.tip:
            args.append(workspace.tip)
        return self._run_git(args, cwd=workspace.path).stdout

    def merge(self, workspace: Workspace, message: str) -> str:
        with self._lock:
            identity = self._identity(ORCHESTRATOR_IDENTITY)
            proc = self._run_git(
                [*identity, "merge", "--no-ff", "--no-edit", "-m", message, workspace.revision],
                check=False,
            )
            if proc.returncode != 0:
                conflicted = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
                conflicted_files = [line.strip() for line in conflicted.stdout.splitlines() if line.strip()]
                self._run_git(["merge", "--abort"], check=False)
                raise MergeError(
                    f"Merging {workspace.branch} failed: {proc.stderr.strip() or proc.stdout.strip()}",
                    branch=workspace.branch,
                    conflicted_files=conflicted_files,
                )
            workspace.state = WorkspaceState.MERGED
            head = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        LOGGER.info("Merged %s", workspace.branch)
        return head

    def rollback_to(self, commit: str) -> None:
        with self._lock:
            self._run_git(["reset", "--keep", commit])
        LOGGER.warning("Rolled back to %s", commit[:12])

    def _remove(self, workspace: Workspace) -> None:
        if workspace.path.exists():
            self._run_git(["worktree", "remove", "--force", str(workspace.path)], check=False)
            if workspace.path.exists():
                shutil.rmtree(workspace.path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        if self._branch_exists(workspace.branch):
            self._run_git(["branch", "-D", workspace.branch])
        run_dir = workspace.path.parent
        if run_dir.exists() and not any(run_dir.iterdir()):
            run_dir.rmdir()

    def cleanup(self, workspace: Workspace) -> None:
        with self._lock:
            self._remove(workspace)
        if workspace.state != WorkspaceState.MERGED:
            workspace.state = WorkspaceState.DISCARDED

    def _run_branches(self, run_id: str | None = None) -> list[str]:
        namespace = f"refs/heads/{self.branch_prefix}/"
        if run_id is not None:
            namespace += f"{run_id}/"
        proc = self._run_git(["for-each-ref", "--format=%(refname)", namespace], check=False)
        prefix = "refs/heads/"
        return [line.strip()[len(prefix) :] for line in proc.stdout.splitlines() if line.strip()]

    def _display_path(self, path: Path) -> str:
        if path.is_relative_to(self.repo_root):
            return path.relative_to(self.repo_root).as_posix()
        return str(path)

    def cleanup_run(self, run_id: str) -> SweepReport:
        report = SweepReport(runs=[run_id])
        run_dir = self.workspace_root / run_id
        with self._lock:
            if run_dir.exists():
                for child in sorted(run_dir.iterdir()):
                    self._run_git(["worktree", "remove", "--force", str(child)], check=False)
                    report.directories.append(self._display_path(child))
                shutil.rmtree(run_dir, ignore_errors=True)
            self._run_git(["worktree", "prune"], check=False)
            for branch in self._run_branches(run_id):
                self._run_git(["branch", "-D", branch])
                report.branches.append(branch)
        return report

    def _lease_path(self, run_id: str) -> Path:
        return self.leases_dir / f"{run_id}.json"

    def acquire_lease(self, run_id: str) -> None:
        self.leases_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "started_at": _utcnow_iso(),
        }
        self._lease_path(run_id).write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def release_lease(self, run_id: str) -> None:
        self._lease_path(run_id).unlink(missing_ok=True)

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def lease_alive(self, run_id: str) -> bool:
        lease_path = self._lease_path(run_id)
        if not lease_path.exists():
            return False
        try:
            payload = json.loads(lease_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return False
        if payload.get("host") != socket.gethostname():
            # Liveness of a process on another host cannot be checked from here.
            return True
        pid = payload.get("pid")
        return isinstance(pid, int) and self._pid_alive(pid)

    def _known_runs(self) -> list[str]:
        runs: set[str] = set()
        prefix = f"{self.branch_prefix}/"
        for branch in self._run_branches():
            run_id = branch[len(prefix) :].split("/", 1)[0]
            if run_id:
                runs.add(run_id)
        if self.workspace_root.exists():
            runs.update(child.name for child in self.workspace_root.iterdir() if child.is_dir())
        return sorted(runs)

    def list_orphans(self) -> list[str]:
        return [run_id for run_id in self._known_runs() if not self.lease_alive(run_id)]

    def sweep(self) -> SweepReport:
        report = SweepReport()
        for run_id in self.list_orphans():
            LOGGER.info("Reclaiming orphaned run %s", run_id)
            reclaimed = self.cleanup_run(run_id)
            report.runs.append(run_id)
            report.branches.extend(reclaimed.branches)
            report.directories.extend(reclaimed.directories)
            self.release_lease(run_id)
        if self.leases_dir.exists():
            for lease in sorted(self.leases_dir.glob("*.json")):
                if not self.lease_alive(lease.stem):
                    lease.unlink(missing_ok=True)
        return report
