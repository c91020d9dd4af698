"""Command guard for agent tool calls.

Every tool call an agent requests passes through `CommandGuard.validate`
before execution. Filesystem tools are confined to the project root and the
shell tool is checked against a catastrophic-command denylist. Tools with
side effects outside the working tree additionally need a human yes/no via
`CommandGuard.confirm`.
"""

import posixpath
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from agents.human import HumanInterface

logger = structlog.get_logger()

# Tools whose `path` argument must resolve inside the project root.
PATH_SCOPED_TOOLS: frozenset[str] = frozenset(
    {"read_file", "list_files", "write_file", "patch_file"}
)

# Tools that always require an explicit human confirmation unless the
# current batch was approved wholesale.
DANGEROUS_TOOLS: frozenset[str] = frozenset(
    {
        "run_cmd",
        "fetch_url",
        "cache_global_ref",
        "scaffold_project",
        "git_commit",
        "git_push",
        "install_package",
        "remove_package",
    }
)

# Shell commands that are never allowed, whatever the approval mode.
_CATASTROPHIC_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:shutdown|reboot|halt|poweroff)\b", re.IGNORECASE),
    re.compile(r"\bmkfs(?:\.\w+)?\b", re.IGNORECASE),
    re.compile(r"\bdd\b[^|;&]*\bof=/dev/(?!null\b)", re.IGNORECASE),
    re.compile(r">\s*/dev/(?:sd|hd|nvme|vd|xvd|disk|mmcblk)\w*"),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
)

# Splits a command line into simple commands, including the bodies of
# subshells and command substitutions.
_COMMAND_SEPARATORS = re.compile(r"\|\||&&|\$\(|[;|&`()\n]")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of guard validation for a single tool call."""

    safe: bool
    reason: str = ""


def resolve_in_root(project_root: str | Path, target: str) -> Path | None:
    """Resolve `target` against the project root.

    Relative paths are joined to the root, absolute paths are taken as-is.
    Symlinks and `..` components are resolved before the containment check.

    Returns:
        The resolved absolute path, or None when it escapes the root.
    """
    root = Path(project_root).resolve()
    try:
        candidate = Path(target)
        resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()
        resolved.relative_to(root)
    except (ValueError, OSError):
        return None
    return resolved


def _is_root_or_home(target: str) -> bool:
    """True for `/`, `/.`, `/*`, `//`, `~`, `$HOME/` and similar spellings."""
    target = target.replace("${HOME}", "~").replace("$HOME", "~")
    if target.startswith("~"):
        rest = target[1:]
        if rest and not rest.startswith("/"):
            return False
        target = "/" + rest
    elif not target.startswith("/"):
        return False
    target = target.rstrip("*")
    return posixpath.normpath(target).strip("/") == ""


def _is_recursive_flag(option: str) -> bool:
    if option == "--recursive":
        return True
    return not option.startswith("--") and ("r" in option or "R" in option)


def _rm_targets_root(tokens: list[str]) -> bool:
    """Scan one simple command for a recursive `rm` of the root or home dir.

    GNU rm accepts options after operands, so every token following `rm` is
    inspected, up to an explicit `--`.
    """
    for index, token in enumerate(tokens):
        if posixpath.basename(token) != "rm":
            continue
        recursive = False
        operands: list[str] = []
        end_of_options = False
        for arg in tokens[index + 1 :]:
            if end_of_options or not arg.startswith("-") or arg == "-":
                operands.append(arg)
            elif arg == "--":
                end_of_options = True
            else:
                recursive = recursive or _is_recursive_flag(arg)
        if recursive and any(_is_root_or_home(operand) for operand in operands):
            return True
    return False


def _deletes_root_or_home(command: str, depth: int = 0) -> bool:
    for segment in _COMMAND_SEPARATORS.split(command):
        try:
            tokens = shlex.split(segment)
        except ValueError:
            # Unbalanced quotes after splitting on separators.
            tokens = segment.replace('"', " ").replace("'", " ").split()
        if _rm_targets_root(tokens):
            return True
        # Quoted scripts such as `bash -c 'rm -rf /'`.
        if depth < 3 and any(
            _deletes_root_or_home(token, depth + 1)
            for token in tokens
            if any(ch.isspace() for ch in token)
        ):
            return True
    return False


def is_catastrophic_command(command: str) -> bool:
    """Check a shell command string against the denylist."""
    if _deletes_root_or_home(command):
        return True
    return any(pattern.search(command) for pattern in _CATASTROPHIC_COMMAND_PATTERNS)


def sanitize_output(output: str, max_length: int = 20000) -> str:
    """Cap tool output before it is re-injected into model context.

    Args:
        output: The raw tool output.
        max_length: Maximum allowed length before truncation.

    Returns:
        The capped output string.
    """
    if not output:
        return ""

    output = output.replace("\x00", "")
    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output


class CommandGuard:
    """Validates agent tool calls against the project path and command policy.

    Args:
        project_root: Directory that filesystem tools are confined to.
        human: Presentation port used for dangerous-tool confirmation.
    """

    def __init__(self, project_root: str | Path, human: "HumanInterface") -> None:
        self.project_root = Path(project_root).resolve()
        self._human = human

    def is_path_safe(self, target: str) -> bool:
        """Return True when `target` resolves inside the project root."""
        return resolve_in_root(self.project_root, target) is not None

    def is_dangerous(self, name: str) -> bool:
        return name in DANGEROUS_TOOLS

    def validate(self, name: str, parameters: dict[str, Any]) -> ValidationResult:
        """Validate a tool call before it is executed.

        Args:
            name: Tool name.
            parameters: Tool arguments as parsed from the agent output.

        Returns:
            ValidationResult with `safe=False` and a reason when rejected.

        Examples:
            >>> guard.validate("read_file", {"path": "src/app.py"})
            ValidationResult(safe=True, reason='')
            >>> guard.validate("read_file", {"path": "../secrets"})
            ValidationResult(safe=False, reason='Access outside project root is forbidden: ../secrets')
        """
        if name in PATH_SCOPED_TOOLS:
            raw_path = parameters.get("path", ".")
            path = "." if raw_path is None else str(raw_path)
            if "\x00" in path or not self.is_path_safe(path):
                logger.warning("guard_path_rejected", tool=name, path=path)
                return ValidationResult(
                    safe=False,
                    reason=f"Access outside project root is forbidden: {path}",
                )

        if name == "run_cmd":
            command = str(parameters.get("command") or "")
            if not command.strip():
                return ValidationResult(safe=False, reason="Command cannot be empty.")
            if is_catastrophic_command(command):
                logger.warning("guard_command_rejected", command=command[:200])
                return ValidationResult(
                    safe=False, reason="Command is explicitly forbidden."
                )

        return ValidationResult(safe=True)

    async def confirm(self, description: str) -> bool:
        """Ask the human whether a dangerous call may run."""
        approved = await self._human.confirm(
            f"[SECURITY] Agent wants to run: {description}\nAllow?"
        )
        logger.info("guard_confirmation", description=description[:200], approved=approved)
        return approved
