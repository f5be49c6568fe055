from pathlib import Path

from warden.context import RepositoryContext
from warden.permissions import check
from warden.plan import Task
from warden.workspace import ChangeType, FileChange


def _context(tmp_path: Path) -> RepositoryContext:
    return RepositoryContext.from_dict(
        {
            "agents": {"idle-agent": {"role": "subsystem"}},
            "subsystems": {
                "core": {"owner": "core-agent", "files": ["src/core/*"]},
                "cli": {"owner": "cli-agent", "files": ["src/cli.rs"]},
            },
            "skimsystems": {"quality": {"owner": "quality-agent"}},
        },
        root=tmp_path,
    )


def test_subsystem_agent_editing_foreign_file_is_flagged(tmp_path: Path) -> None:
    task = Task(id="t1", agent="core-agent", objective="x")
    changes = [
        FileChange("src/core/engine.rs", ChangeType.MODIFIED),
        FileChange("src/cli.rs", ChangeType.MODIFIED),
    ]

    verdict = check(task, changes, _context(tmp_path))

    assert not verdict.allowed
    assert verdict.offending_files == ["src/cli.rs"]
    assert "src/cli.rs" in verdict.describe()


def test_subsystem_agent_within_patterns_is_allowed(tmp_path: Path) -> None:
    verdict = check("core-agent", ["src/core/engine.rs", "./src/core/io.rs"], _context(tmp_path))

    assert verdict.allowed


def test_subsystem_agent_with_no_changes_is_allowed(tmp_path: Path) -> None:
    assert check("core-agent", [], _context(tmp_path)).allowed


def test_observer_editing_sidecar_is_allowed(tmp_path: Path) -> None:
    verdict = check("quality-agent", ["src/core/engine.rs.bog", "docs/notes.bog"], _context(tmp_path))

    assert verdict.allowed


def test_observer_editing_source_is_flagged(tmp_path: Path) -> None:
    verdict = check("quality-agent", ["src/core/engine.rs.bog", "src/core/engine.rs"], _context(tmp_path))

    assert verdict.offending_files == ["src/core/engine.rs"]


def test_unknown_agent_is_flagged_even_without_changes(tmp_path: Path) -> None:
    verdict = check("ghost-agent", [], _context(tmp_path))

    assert not verdict.allowed
    assert verdict.offending_files == []


def test_agent_without_owned_subsystem_cannot_write(tmp_path: Path) -> None:
    verdict = check("idle-agent", ["src/core/engine.rs"], _context(tmp_path))

    assert not verdict.allowed
    assert verdict.offending_files == ["src/core/engine.rs"]


def test_duplicate_paths_are_reported_once(tmp_path: Path) -> None:
    verdict = check("cli-agent", ["README.md", "./README.md"], _context(tmp_path))

    assert verdict.offending_files == ["README.md"]
    assert len(verdict.violations) == 1


def test_glob_patterns_name_only_the_foreign_file(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(
        {
            "subsystems": {"core": {"owner": "core-agent", "files": ["src/ast.*", "src/parser.*"]}},
            "skimsystems": {"code-quality": {"owner": "code-quality-agent"}},
        },
        root=tmp_path,
    )

    verdict = check("core-agent", ["src/ast.rs", "src/cli.rs"], context)
    observer = check("code-quality-agent", ["src/parser.rs.bog"], context)

    assert verdict.offending_files == ["src/cli.rs"]
    assert observer.allowed


def test_globstar_pattern_covers_files_at_every_depth(tmp_path: Path) -> None:
    context = RepositoryContext.from_dict(
        {"subsystems": {"core": {"owner": "core-agent", "files": ["src/**/*.rs"]}}},
        root=tmp_path,
    )

    verdict = check("core-agent", ["src/ast.rs", "src/sub/x.rs", "src/a/b/c.rs", "lib/a.rs"], context)

    assert verdict.offending_files == ["lib/a.rs"]
