"""Local project workspace used by agent tools.

ProjectWorkspace performs file and shell operations directly against the
user's project directory. Every path argument is re-checked against the
project root here as well, so the workspace stays confined even when called
outside the guarded tool path.
"""

import asyncio
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from workspace.security import resolve_in_root, sanitize_output

logger = structlog.get_logger()

# Directories skipped by recursive listing, search and metrics.
DEFAULT_IGNORED_DIR_NAMES: set[str] = {
    "node_modules",
    ".git",
    ".flowcoder",
    ".next",
    "dist",
    "build",
    "out",
    "target",
    "coverage",
    ".turbo",
    ".cache",
    ".venv",
    "venv",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
}

MAX_SEARCH_FILE_BYTES = 1_000_000


@dataclass
class FileInfo:
    """Information about a file or directory in the project."""

    name: str
    path: str
    is_directory: bool
    size: int = 0


@dataclass
class CommandResult:
    """Result of executing a shell command in the project."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def combined_output(self) -> str:
        """Merge stdout and stderr into one transcript."""
        clean_stdout = self.stdout.strip()
        clean_stderr = self.stderr.strip()
        if clean_stdout and clean_stderr:
            return f"STDOUT:\n{clean_stdout}\n\nSTDERR:\n{clean_stderr}"
        return clean_stdout or clean_stderr


class ProjectWorkspace:
    """File and shell operations confined to one project directory.

    Attributes:
        root: Absolute, resolved project root.
        max_output_chars: Cap applied to command output.
    """

    def __init__(self, project_root: str | Path, max_output_chars: int = 20000) -> None:
        self.root = Path(project_root).resolve()
        self.max_output_chars = max_output_chars

    def resolve(self, path: str) -> Path:
        """Resolve a user/agent path inside the project root.

        Raises:
            ValueError: If the path escapes the project root.
        """
        resolved = resolve_in_root(self.root, path or ".")
        if resolved is None:
            raise ValueError(f"Access outside project root is forbidden: {path}")
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix() or "."

    async def read_file(self, path: str) -> str:
        """Read a UTF-8 text file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the path escapes the project root.
        """
        target = self.resolve(path)
        return await asyncio.get_running_loop().run_in_executor(
            None, lambda: target.read_text(encoding="utf-8", errors="replace")
        )

    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories as needed."""
        target = self.resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.get_running_loop().run_in_executor(None, _write)
        logger.debug("file_written", path=self.relative(target), size=len(content))

    async def patch_file(self, path: str, search: str, replace: str) -> None:
        """Replace exactly one occurrence of `search` with `replace`.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If `search` is empty, missing, or ambiguous.
        """
        if not search:
            raise ValueError("Search text cannot be empty")

        original = await self.read_file(path)
        occurrences = original.count(search)
        if occurrences == 0:
            raise ValueError(f"Search text not found in {path}")
        if occurrences > 1:
            raise ValueError(
                f"Search text is ambiguous in {path}: {occurrences} occurrences"
            )

        await self.write_file(path, original.replace(search, replace, 1))

    async def list_files(self, path: str = ".") -> list[FileInfo]:
        """List the direct children of a directory, directories first."""
        target = self.resolve(path)

        def _list() -> list[FileInfo]:
            if not target.is_dir():
                raise NotADirectoryError(f"Not a directory: {path}")
            entries = []
            for child in target.iterdir():
                is_dir = child.is_dir()
                entries.append(
                    FileInfo(
                        name=child.name,
                        path=self.relative(child),
                        is_directory=is_dir,
                        size=0 if is_dir else child.stat().st_size,
                    )
                )
            return sorted(entries, key=lambda e: (not e.is_directory, e.name))

        return await asyncio.get_running_loop().run_in_executor(None, _list)

    def iter_files(
        self,
        path: str = ".",
        *,
        ignored_dir_names: set[str] | None = None,
        max_entries: int = 5000,
    ) -> list[Path]:
        """Recursively collect files under `path`, pruning ignored directories.

        This is a blocking call; async callers run it in an executor.
        """
        base = self.resolve(path)
        ignored = ignored_dir_names or DEFAULT_IGNORED_DIR_NAMES
        if base.is_file():
            return [base]

        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in ignored)
            for filename in sorted(filenames):
                files.append(Path(dirpath) / filename)
                if len(files) >= max_entries:
                    return files
        return files

    async def search(self, query: str, path: str = ".", max_matches: int = 100) -> list[str]:
        """Case-insensitive regex search across project files.

        Returns:
            Matches formatted as ``relative/path:line: text``.

        Raises:
            ValueError: If `query` is not a valid regular expression.
        """
        try:
            pattern = re.compile(query, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"Invalid search pattern: {e}") from e

        def _search() -> list[str]:
            matches: list[str] = []
            for file_path in self.iter_files(path):
                try:
                    if file_path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                        continue
                    text = file_path.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                for lineno, line in enumerate(text.splitlines(), start=1):
                    if pattern.search(line):
                        matches.append(f"{self.relative(file_path)}:{lineno}: {line.strip()[:200]}")
                        if len(matches) >= max_matches:
                            return matches
            return matches

        return await asyncio.get_running_loop().run_in_executor(None, _search)

    async def run_command(self, command: str, timeout: int = 60) -> CommandResult:
        """Run a shell command with the project root as working directory.

        A command exceeding `timeout` is killed and reported with exit code
        124, matching coreutils `timeout`.
        """
        start_time = time.time()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("command_timeout", command=command[:50], timeout=timeout)
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

        result = CommandResult(
            stdout=sanitize_output(
                stdout_bytes.decode("utf-8", errors="replace"), self.max_output_chars
            ),
            stderr=sanitize_output(
                stderr_bytes.decode("utf-8", errors="replace"), self.max_output_chars
            ),
            exit_code=process.returncode if process.returncode is not None else 1,
        )
        logger.debug(
            "command_executed",
            command=command[:50],
            exit_code=result.exit_code,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return result

    async def git_context(self) -> str:
        """Summarize working-tree state: branch, short status and diff stat."""
        if not (self.root / ".git").exists():
            return "Not a git repository."

        branch = await self.run_command("git rev-parse --abbrev-ref HEAD", timeout=15)
        status = await self.run_command("git status --short", timeout=15)
        diff = await self.run_command("git diff --stat", timeout=15)

        sections = [f"Branch: {branch.stdout.strip() or 'unknown'}"]
        sections.append("Status:\n" + (status.stdout.strip() or "clean"))
        if diff.stdout.strip():
            sections.append("Diff stat:\n" + diff.stdout.strip())
        return "\n\n".join(sections)
