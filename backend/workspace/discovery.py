"""Project-command discovery.

Detects the project's toolchain from marker files in the project root and
returns the build, lint and test commands used by verification.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProjectCommands:
    """Commands for the detected toolchain. None means not available."""

    build: str | None = None
    lint: str | None = None
    test: str | None = None
    toolchain: str = "unknown"


# Checked in order; the first toolchain whose marker file exists wins.
_TOOLCHAINS: tuple[tuple[str, tuple[str, ...], ProjectCommands], ...] = (
    (
        "rust",
        ("Cargo.toml",),
        ProjectCommands(build="cargo check", lint="cargo clippy", test="cargo test", toolchain="rust"),
    ),
    (
        "python",
        ("pyproject.toml", "setup.py", "requirements.txt"),
        ProjectCommands(
            build="python3 -m compileall -q .",
            lint="ruff check .",
            test="pytest",
            toolchain="python",
        ),
    ),
    (
        "go",
        ("go.mod",),
        ProjectCommands(build="go build ./...", lint="go vet ./...", test="go test ./...", toolchain="go"),
    ),
    (
        "node",
        ("package.json",),
        ProjectCommands(build="npm run build", lint="npm run lint", test="npm test", toolchain="node"),
    ),
    (
        "make",
        ("Makefile",),
        ProjectCommands(build="make build", lint="make lint", test="make test", toolchain="make"),
    ),
)


def discover_project_commands(
    project_root: str | Path,
    *,
    build_override: str | None = None,
    lint_override: str | None = None,
) -> ProjectCommands:
    """Detect build/lint/test commands for a project.

    Args:
        project_root: Project directory to inspect.
        build_override: Configured build command, used instead of the detected one.
        lint_override: Configured lint command, used instead of the detected one.

    Returns:
        ProjectCommands; `build` is None when nothing could be detected
        and no override is configured.
    """
    root = Path(project_root)
    detected = ProjectCommands()
    for _toolchain, markers, commands in _TOOLCHAINS:
        if any((root / marker).exists() for marker in markers):
            detected = commands
            break

    result = ProjectCommands(
        build=build_override or detected.build,
        lint=lint_override or detected.lint,
        test=detected.test,
        toolchain=detected.toolchain,
    )
    logger.debug(
        "project_commands_discovered",
        project_root=str(root),
        toolchain=result.toolchain,
        build=result.build,
        lint=result.lint,
    )
    return result
