# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the bugsquad test suite.

This module provides foundational fixtures used across all test modules:
- Temporary repositories (plain and real git)
- A data directory, log store and fast-running configuration
- A scripted stand-in for the LLM adapter
- Command factories that launch short-lived real child processes

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from bugsquad.config import BugsquadConfig, LimitsConfig, RetryConfig
from bugsquad.core.errors import AuthError
from bugsquad.core.llm import ProviderConfig
from bugsquad.core.models import Message
from bugsquad.core.sessions import SessionContext
from bugsquad.core.store import LogStore, project_id_for

# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary project with a small buggy module.

    Creates:
        - src/app.py with an off-by-one bug
        - README.md

    Returns:
        Path to the project root (not a git repository).
    """
    repo = tmp_path / "repo"
    src_dir = repo / "src"
    src_dir.mkdir(parents=True)
    (src_dir / "app.py").write_text(
        '"""App module."""\n\n'
        "def last_item(items):\n"
        "    return items[len(items)]\n"
    )
    (repo / "README.md").write_text("# Test Project\n")
    return repo


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Only use when you need real git
    operations (branches, worktrees, commits).

    Returns:
        Path to git-initialized repository with one commit.
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")

    try:
        for args in (
            ["git", "init"],
            ["git", "config", "user.email", "test@example.com"],
            ["git", "config", "user.name", "Test User"],
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
        ):
            subprocess.run(args, cwd=temp_repo, check=True, capture_output=True)
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")
    return temp_repo


def git_branches(repo: Path) -> list[str]:
    """List local branch names of a repository."""
    result = subprocess.run(
        ["git", "branch", "--format=%(refname:short)"],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


# =============================================================================
# Store and Configuration Fixtures
# =============================================================================


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Empty bugsquad data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def store(data_dir: Path) -> LogStore:
    return LogStore(data_dir)


@pytest.fixture
def config(data_dir: Path) -> BugsquadConfig:
    """Configuration with credentials set and every wait shortened.

    Retry delays are zero so retry paths run instantly.
    """
    provider = ProviderConfig(provider="anthropic", api_key="test-key")
    return BugsquadConfig(
        data_dir=data_dir,
        coordinator=provider,
        investigator=provider,
        limits=LimitsConfig(
            max_runtime_seconds=60,
            investigator_timeout_seconds=10,
            termination_grace_seconds=1,
            poll_interval_seconds=0.05,
            tool_timeout_seconds=10,
            max_idle_turns=3,
        ),
        retry=RetryConfig(max_attempts=3, initial_delay=0, max_delay=0, jitter=0),
    )


@pytest.fixture
def session_ctx(repo_with_git: Path) -> SessionContext:
    """In-memory context for a session on the git fixture repository."""
    return SessionContext(
        session_id="session-test",
        repo_path=repo_with_git,
        project_id=project_id_for(repo_with_git),
        language="python",
    )


# =============================================================================
# LLM Adapter Stand-in
# =============================================================================


class ScriptedAdapter:
    """Replays canned replies in order.

    Each item is either reply text or an exception instance to raise. Once
    the script is exhausted, ``default`` is returned if given, otherwise an
    AuthError (not retryable) ends the calling loop.
    """

    def __init__(self, replies: list[str | Exception], default: str | None = None):
        self.replies = list(replies)
        self.default = default
        self.calls: list[list[Message]] = []
        self._lock = threading.Lock()

    def call(self, messages: list[Message], config: ProviderConfig) -> str:
        with self._lock:
            self.calls.append(list(messages))
            if self.replies:
                item = self.replies.pop(0)
            elif self.default is not None:
                item = self.default
            else:
                item = AuthError("script exhausted")
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        pass


@pytest.fixture
def scripted_adapter():
    """Factory for ScriptedAdapter instances."""
    return ScriptedAdapter


# =============================================================================
# Child Process Helpers
# =============================================================================


def sleeper_command(seconds: float = 30):
    """Command factory launching a child that just sleeps."""

    def factory(ctx, instance_id, hypothesis, branch, worktree):
        return [sys.executable, "-c", f"import time; time.sleep({seconds})"]

    return factory


def stubborn_command(seconds: float = 30):
    """Command factory launching a child that ignores SIGTERM."""

    def factory(ctx, instance_id, hypothesis, branch, worktree):
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            f"time.sleep({seconds})\n"
        )
        return [sys.executable, "-c", code]

    return factory


def reporting_command(store: LogStore, confirmed: bool = True, confidence: float = 90):
    """Command factory launching a child that writes its report and exits."""

    def factory(ctx, instance_id, hypothesis, branch, worktree):
        path = store.session_paths(ctx.session_id).report(instance_id)
        report = {
            "hypothesis": hypothesis,
            "confirmed": confirmed,
            "investigation": f"checked on {branch}",
            "changes": "",
            "confidence": confidence,
        }
        code = (
            "import os, pathlib, sys\n"
            "path = pathlib.Path(sys.argv[1])\n"
            "path.parent.mkdir(parents=True, exist_ok=True)\n"
            "tmp = path.with_name('.' + path.name + '.tmp')\n"
            "tmp.write_text(sys.argv[2])\n"
            "os.replace(tmp, path)\n"
        )
        return [sys.executable, "-c", code, str(path), json.dumps(report)]

    return factory


def pid_alive(pid: int) -> bool:
    """True if a process exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    status_file = Path(f"/proc/{pid}/status")
    if status_file.exists():
        for line in status_file.read_text().splitlines():
            if line.startswith("State:"):
                return "Z" not in line.split(":", 1)[1].split()[0]
    return True


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "git: marks tests requiring git")
