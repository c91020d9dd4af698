"""Local project workspace: guarded file/shell access and project context.

This module provides the CommandGuard that validates agent tool calls, the
ProjectWorkspace that executes them against the project directory, and the
discovery, metrics and scratchpad collaborators used during verification.
"""

from workspace.discovery import ProjectCommands, discover_project_commands
from workspace.project import CommandResult, FileInfo, ProjectWorkspace
from workspace.security import CommandGuard, ValidationResult
from workspace.store import FileSessionStore, SessionContextStore

__all__ = [
    "CommandGuard",
    "CommandResult",
    "FileInfo",
    "FileSessionStore",
    "ProjectCommands",
    "ProjectWorkspace",
    "SessionContextStore",
    "ValidationResult",
    "discover_project_commands",
]
