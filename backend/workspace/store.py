"""Session context store: project summary and scratchpad.

Agents share continuity across phases through a markdown scratchpad kept in
the project's state directory (``.flowcoder/context/scratchpad.md``). The
project summary comes from ``.flowcoder/project.json`` when present.
"""

import asyncio
import json
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()


class SessionContextStore(Protocol):
    """Storage for cross-phase agent context."""

    async def get_project_summary(self) -> str: ...

    async def read_scratchpad(self) -> str: ...

    async def write_scratchpad(self, text: str) -> None: ...


class FileSessionStore:
    """SessionContextStore backed by the project's state directory."""

    def __init__(self, project_root: str | Path, state_dir_name: str = ".flowcoder") -> None:
        self.project_root = Path(project_root).resolve()
        self.state_dir = self.project_root / state_dir_name
        self.scratchpad_path = self.state_dir / "context" / "scratchpad.md"
        self.project_path = self.state_dir / "project.json"

    def _summary_from_disk(self) -> str:
        if not self.project_path.exists():
            return f"Project: {self.project_root.name}"

        try:
            data = json.loads(self.project_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("project_state_unreadable", path=str(self.project_path), error=str(e))
            return f"Project: {self.project_root.name}"

        if not isinstance(data, dict):
            return f"Project: {self.project_root.name}"

        lines = [f"Project: {data.get('name') or self.project_root.name}"]
        for key, label in (("goals", "Goals"), ("conventions", "Conventions")):
            values = data.get(key)
            if isinstance(values, list) and values:
                lines.append(f"{label}:")
                lines.extend(f"- {v}" for v in values)
        return "\n".join(lines)

    async def get_project_summary(self) -> str:
        return await asyncio.get_running_loop().run_in_executor(None, self._summary_from_disk)

    async def read_scratchpad(self) -> str:
        def _read() -> str:
            if not self.scratchpad_path.exists():
                return ""
            return self.scratchpad_path.read_text(encoding="utf-8")

        return await asyncio.get_running_loop().run_in_executor(None, _read)

    async def write_scratchpad(self, text: str) -> None:
        """Replace the scratchpad content.

        Raises:
            OSError: If the state directory cannot be written.
        """

        def _write() -> None:
            self.scratchpad_path.parent.mkdir(parents=True, exist_ok=True)
            self.scratchpad_path.write_text(text, encoding="utf-8")

        await asyncio.get_running_loop().run_in_executor(None, _write)
        logger.debug("scratchpad_written", path=str(self.scratchpad_path), size=len(text))
