"""Tool collaborators invoked by the coordinator and investigators.

Models call tools through ``<use_tool>`` tags; the loops treat every tool as
opaque: a call goes in, text (or an error fed back as text) comes out.

Two servers ship with bugsquad:
1. GitToolServer - version-control operations, plus branch+worktree creation
   for the coordinator's branch manager
2. FilesystemToolServer - read/write/list/search files and run commands,
   confined to the caller's worktree

ToolExecutor adds the caller's policy on top: investigators may not create
branches. A violation is a PolicyError fed back to the model, never fatal.
"""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from bugsquad.core.errors import PolicyError, ToolError
from bugsquad.core.parser import ToolCall
from bugsquad.core.utils import resolve_in_root, truncate_output

logger = logging.getLogger(__name__)


class ExecutionResult(BaseModel):
    """Result of a subprocess execution."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


def run_command(
    command: list[str],
    cwd: Path,
    timeout: float = 60,
    env: dict[str, str] | None = None,
) -> ExecutionResult:
    """Run a command without a shell and capture its output."""
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=timeout,
            env=env,
        )
        return ExecutionResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    except subprocess.TimeoutExpired:
        return ExecutionResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        return ExecutionResult(returncode=127, stdout="", stderr=str(e))


def _number_arg(arguments: dict[str, Any], key: str, default: float, kind: type = int) -> Any:
    value = arguments.get(key, default)
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ToolError(f"'{key}' must be a number, got {value!r}")


def _ref_arg(value: Any, key: str) -> str:
    """A revision or branch name; option-like values would be read by git as flags."""
    text = str(value)
    if text.startswith("-"):
        raise ToolError(f"'{key}' must not start with '-': {text!r}")
    return text


class ToolServer(Protocol):
    """Interface every tool collaborator implements."""

    name: str

    def tools(self) -> list[str]: ...

    def call(self, tool: str, arguments: dict[str, Any], cwd: Path) -> str: ...


class GitToolServer:
    """Version-control collaborator backed by the git binary."""

    name = "git"
    # Local git operations should complete quickly, but can hang on
    # corrupted repos or busy filesystems
    GIT_TIMEOUT = 30

    TOOLS = (
        "git_status",
        "git_diff",
        "git_log",
        "git_show",
        "git_add",
        "git_commit",
        "git_checkout",
        "git_branch",
        "git_create_branch",
    )

    def tools(self) -> list[str]:
        return list(self.TOOLS)

    def _git(self, args: list[str], cwd: Path) -> str:
        result = run_command(["git", *args], cwd=cwd, timeout=self.GIT_TIMEOUT)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise ToolError(f"git {args[0]} failed (exit {result.returncode}): {detail}")
        return result.stdout

    def call(self, tool: str, arguments: dict[str, Any], cwd: Path) -> str:
        if tool == "git_status":
            return self._git(["status", "--short", "--branch"], cwd)
        if tool == "git_diff":
            args = ["diff"]
            if arguments.get("staged"):
                args.append("--staged")
            if arguments.get("target"):
                args.append(_ref_arg(arguments["target"], "target"))
            return self._git(args, cwd) or "(no differences)"
        if tool == "git_log":
            max_count = _number_arg(arguments, "max_count", 10)
            if max_count < 1:
                raise ToolError(f"'max_count' must be positive, got {max_count}")
            return self._git(["log", "--oneline", f"-n{max_count}"], cwd)
        if tool == "git_show":
            revision = _ref_arg(arguments.get("revision", "HEAD"), "revision")
            return self._git(["show", "--stat", "--patch", revision], cwd)
        if tool == "git_add":
            files = arguments.get("files") or ["."]
            return self._git(["add", "--", *[str(f) for f in files]], cwd) or "Staged."
        if tool == "git_commit":
            message = arguments.get("message")
            if not message:
                raise ToolError("git_commit requires a 'message' argument")
            return self._git(["commit", "-m", str(message)], cwd)
        if tool == "git_checkout":
            branch = arguments.get("branch_name") or arguments.get("branch")
            if not branch:
                raise ToolError("git_checkout requires a 'branch_name' argument")
            return self._git(["checkout", _ref_arg(branch, "branch_name")], cwd) or f"Switched to {branch}"
        if tool == "git_branch":
            return self._git(["branch", "--list"], cwd)
        if tool == "git_create_branch":
            branch = arguments.get("branch_name") or arguments.get("branch")
            if not branch:
                raise ToolError("git_create_branch requires a 'branch_name' argument")
            return self._git(["branch", _ref_arg(branch, "branch_name")], cwd) or f"Created branch {branch}"
        raise ToolError(f"Unknown git tool '{tool}'. Available: {', '.join(self.TOOLS)}")

    # --- Used by the branch manager only ---

    def create_and_checkout_branch(self, name: str, repo_path: Path, worktree_path: Path) -> Path:
        """Create branch ``name`` from HEAD and check it out in its own worktree."""
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._git(["worktree", "add", "-b", name, str(worktree_path), "HEAD"], repo_path)
        return worktree_path

    def remove_worktree(self, repo_path: Path, worktree_path: Path) -> None:
        self._git(["worktree", "remove", "--force", str(worktree_path)], repo_path)


class FilesystemToolServer:
    """Filesystem/terminal collaborator confined to the caller's worktree."""

    name = "files"
    MAX_SEARCH_MATCHES = 200

    TOOLS = ("read_file", "write_file", "list_directory", "search_files", "execute_command")

    def __init__(self, command_timeout: float = 60):
        self.command_timeout = command_timeout

    def tools(self) -> list[str]:
        return list(self.TOOLS)

    def _path(self, arguments: dict[str, Any], cwd: Path, key: str = "path", default: str | None = None) -> Path:
        value = arguments.get(key, default)
        if value is None:
            raise ToolError(f"Missing '{key}' argument")
        try:
            return resolve_in_root(str(value), cwd)
        except ValueError as e:
            raise ToolError(str(e))

    def call(self, tool: str, arguments: dict[str, Any], cwd: Path) -> str:
        if tool == "read_file":
            path = self._path(arguments, cwd)
            if not path.is_file():
                raise ToolError(f"No such file: {arguments.get('path')}")
            return path.read_text(encoding="utf-8", errors="replace")

        if tool == "write_file":
            path = self._path(arguments, cwd)
            content = arguments.get("content")
            if content is None:
                raise ToolError("write_file requires a 'content' argument")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(str(content), encoding="utf-8")
            return f"Wrote {len(str(content))} chars to {path.relative_to(cwd.resolve())}"

        if tool == "list_directory":
            path = self._path(arguments, cwd, default=".")
            if not path.is_dir():
                raise ToolError(f"No such directory: {arguments.get('path', '.')}")
            entries = sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir() if p.name != ".git")
            return "\n".join(entries) or "(empty)"

        if tool == "search_files":
            return self._search(arguments, cwd)

        if tool == "execute_command":
            return self._execute(arguments, cwd)

        raise ToolError(f"Unknown files tool '{tool}'. Available: {', '.join(self.TOOLS)}")

    def _search(self, arguments: dict[str, Any], cwd: Path) -> str:
        pattern = arguments.get("pattern")
        if not pattern:
            raise ToolError("search_files requires a 'pattern' argument")
        try:
            regex = re.compile(str(pattern))
        except re.error as e:
            raise ToolError(f"Invalid search pattern: {e}")

        root = self._path(arguments, cwd, default=".")
        glob = str(arguments.get("glob", "*"))
        if Path(glob).is_absolute() or ".." in Path(glob).parts:
            raise ToolError(f"glob must stay inside the search directory: {glob!r}")
        workspace = cwd.resolve()
        matches: list[str] = []
        for file in sorted(root.rglob(glob)):
            if not file.is_file() or ".git" in file.parts:
                continue
            if not file.resolve().is_relative_to(workspace):
                continue
            try:
                lines = file.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            for lineno, line in enumerate(lines, start=1):
                if regex.search(line):
                    matches.append(f"{file.relative_to(cwd.resolve())}:{lineno}: {line.strip()}")
                    if len(matches) >= self.MAX_SEARCH_MATCHES:
                        return "\n".join(matches) + "\n(match limit reached)"
        return "\n".join(matches) or "(no matches)"

    def _execute(self, arguments: dict[str, Any], cwd: Path) -> str:
        command = arguments.get("command")
        if not command:
            raise ToolError("execute_command requires a 'command' argument")
        if isinstance(command, list):
            argv = command
        else:
            try:
                argv = shlex.split(str(command))
            except ValueError as e:
                raise ToolError(f"Cannot parse command {command!r}: {e}")
        timeout = _number_arg(arguments, "timeout", self.command_timeout, kind=float)
        result = run_command([str(a) for a in argv], cwd=cwd, timeout=min(timeout, self.command_timeout))
        if result.timed_out:
            raise ToolError(result.stderr)
        return f"exit code: {result.returncode}\nstdout:\n{result.stdout}\nstderr:\n{result.stderr}"


# --- Policy ---

# Global options may sit between "git" and the subcommand (git -C dir branch x).
# Short flags may carry their value attached (git checkout -bfix).
_GIT_GLOBAL_OPTIONS = r"(?:\s+(?:-[Cc]\s+\S+|-\S+))*"
_BRANCH_CREATING_COMMAND = re.compile(
    r"\bgit" + _GIT_GLOBAL_OPTIONS + r"\s+("
    r"checkout\s+(.*\s)?(-b|-B|--orphan)"
    r"|switch\s+(.*\s)?(-c|-C|--create|--force-create|--orphan)"
    r"|branch\s+(?!-)\S"
    r"|branch\s+(.*\s)?(-c|-C|-m|-M|--copy|--move)\b"
    r"|worktree\s+add\b"
    r")"
)


def creates_branch(call: ToolCall) -> bool:
    """True if a tool call would create (or rename into) a branch."""
    if call.tool == "git_create_branch":
        return True
    if call.tool in ("git_checkout", "git_switch"):
        if call.arguments.get("create") or call.arguments.get("new_branch"):
            return True
        branch = call.arguments.get("branch_name") or call.arguments.get("branch") or ""
        # An option in place of the name (-bfix, --orphan=x) is a creation request
        if str(branch).startswith("-"):
            return True
    if call.tool == "execute_command":
        command = call.arguments.get("command", "")
        text = " ".join(str(c) for c in command) if isinstance(command, list) else str(command)
        return bool(_BRANCH_CREATING_COMMAND.search(text))
    return False


@dataclass
class ToolOutcome:
    """Result of one tool call, always representable as feedback text."""

    call: ToolCall
    ok: bool
    output: str
    policy_violation: bool = False

    def as_feedback(self) -> str:
        status = "OK" if self.ok else ("POLICY ERROR" if self.policy_violation else "ERROR")
        return f"[{self.call.describe()}] {status}\n{self.output}"


class ToolExecutor:
    """Dispatch parsed tool calls to collaborators, applying the caller's policy."""

    SERVER_ALIASES = {
        "git-mcp": "git",
        "filesystem": "files",
        "terminal": "files",
        "desktop-commander": "files",
    }

    def __init__(
        self,
        servers: list[ToolServer],
        forbid_branch_creation: bool = False,
        max_output_chars: int = 8000,
    ):
        self.servers = {server.name: server for server in servers}
        self.forbid_branch_creation = forbid_branch_creation
        self.max_output_chars = max_output_chars

    def _server(self, name: str) -> ToolServer:
        key = self.SERVER_ALIASES.get(name, name)
        server = self.servers.get(key)
        if server is None:
            raise ToolError(f"Unknown tool server '{name}'. Available: {', '.join(sorted(self.servers))}")
        return server

    def check_policy(self, call: ToolCall) -> None:
        if self.forbid_branch_creation and creates_branch(call):
            raise PolicyError(
                "Branch creation is not allowed here. You are already on your own "
                "isolated branch; make and commit changes on it."
            )

    def execute(self, call: ToolCall, cwd: Path) -> ToolOutcome:
        try:
            self.check_policy(call)
            output = self._server(call.server).call(call.tool, call.arguments, cwd)
        except PolicyError as e:
            logger.info(f"Policy rejected {call.describe()}: {e}")
            return ToolOutcome(call=call, ok=False, output=str(e), policy_violation=True)
        except ToolError as e:
            return ToolOutcome(call=call, ok=False, output=truncate_output(str(e), self.max_output_chars))
        except OSError as e:
            return ToolOutcome(call=call, ok=False, output=f"{type(e).__name__}: {e}")
        except (ValueError, TypeError) as e:
            # Model-supplied arguments; fed back like any other tool error
            logger.warning(f"Invalid arguments for {call.describe()}: {e}")
            return ToolOutcome(call=call, ok=False, output=f"Invalid arguments: {type(e).__name__}: {e}")
        return ToolOutcome(call=call, ok=True, output=truncate_output(output, self.max_output_chars))

    def describe_tools(self) -> dict[str, list[str]]:
        return {name: server.tools() for name, server in sorted(self.servers.items())}


def default_tool_servers(command_timeout: float = 60) -> list[ToolServer]:
    return [GitToolServer(), FilesystemToolServer(command_timeout=command_timeout)]
