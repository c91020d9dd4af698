"""Code-size metrics handed to the debugger when a build breaks."""

import asyncio
from dataclasses import dataclass, field

from workspace.project import ProjectWorkspace

SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".py", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
        ".rs", ".go", ".java", ".kt", ".c", ".h", ".cpp", ".hpp",
        ".cs", ".rb", ".php", ".swift", ".vue", ".svelte",
    }
)


@dataclass
class FileMetric:
    file: str
    lines: int


@dataclass
class CodeMetricsReport:
    """Line counts for the project's source files."""

    total_lines: int = 0
    per_file: list[FileMetric] = field(default_factory=list)

    def largest(self, top_n: int = 5) -> list[FileMetric]:
        return sorted(self.per_file, key=lambda m: (-m.lines, m.file))[:top_n]

    def format(self, top_n: int = 5) -> str:
        """Render the report as the text block given to the debugger."""
        lines = [
            "Code Metrics:",
            f"Total lines: {self.total_lines} across {len(self.per_file)} files",
        ]
        largest = self.largest(top_n)
        if largest:
            lines.append(f"Largest {len(largest)} files:")
            lines.extend(f"- {m.file}: {m.lines} lines" for m in largest)
        return "\n".join(lines)


def _count_lines(text: str) -> int:
    if not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


async def collect_code_metrics(workspace: ProjectWorkspace) -> CodeMetricsReport:
    """Count lines of every recognized source file in the project."""

    def _collect() -> CodeMetricsReport:
        report = CodeMetricsReport()
        for path in workspace.iter_files("."):
            if path.suffix.lower() not in SOURCE_EXTENSIONS:
                continue
            try:
                line_count = _count_lines(path.read_text(encoding="utf-8"))
            except (UnicodeDecodeError, OSError):
                continue
            report.per_file.append(FileMetric(file=workspace.relative(path), lines=line_count))
            report.total_lines += line_count
        return report

    return await asyncio.get_running_loop().run_in_executor(None, _collect)
