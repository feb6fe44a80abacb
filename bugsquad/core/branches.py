"""Branch isolation for investigators.

Each investigator works on its own ``debug-<sessionId>-<counter>`` branch,
checked out in its own git worktree so concurrent investigators never share
a working tree. The coordinator is the sole allocator; counters are scoped
per session and never reused, even for cancelled instances.
"""

import logging
import threading
from pathlib import Path

from bugsquad.core.errors import BranchError, ToolError
from bugsquad.core.tools import GitToolServer

logger = logging.getLogger(__name__)


class BranchManager:
    """Allocates branch names and materializes them as worktrees."""

    def __init__(self, git: GitToolServer | None = None):
        self.git = git or GitToolServer()
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()

    def allocate(self, session_id: str) -> tuple[int, str]:
        """Return the next (counter, branch name) for a session."""
        with self._lock:
            counter = self._counters.get(session_id, 0) + 1
            self._counters[session_id] = counter
        return counter, branch_name(session_id, counter)

    def materialize(self, branch: str, repo_path: Path, worktree_path: Path) -> Path:
        """Create the branch and check it out in a dedicated worktree.

        Raises:
            BranchError: On any git failure. Never degrades to a shared checkout.
        """
        if worktree_path.exists():
            raise BranchError(f"Worktree path already exists for {branch}: {worktree_path}")
        try:
            path = self.git.create_and_checkout_branch(branch, Path(repo_path), worktree_path)
        except ToolError as e:
            raise BranchError(f"Failed to create branch {branch}: {e}") from e
        logger.debug(f"Materialized {branch} at {path}")
        return path

    def release(self, repo_path: Path, worktree_path: Path) -> None:
        """Remove a worktree after its session ends. The branch is kept for inspection."""
        if not worktree_path.exists():
            return
        try:
            self.git.remove_worktree(Path(repo_path), worktree_path)
        except ToolError as e:
            logger.warning(f"Failed to remove worktree {worktree_path}: {e}")

    def forget(self, session_id: str) -> None:
        """Drop a finished session's counter. Its names are already spent in git."""
        with self._lock:
            self._counters.pop(session_id, None)


def branch_name(session_id: str, counter: int) -> str:
    return f"debug-{session_id}-{counter}"
