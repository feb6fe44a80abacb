"""Session registry and cooperative cancellation.

The registry is an explicit object owned by the service; every component that
needs a session receives its ``SessionContext``. Cancellation is a token value
checked at loop-turn boundaries and before spawning, plus graceful-then-forceful
termination of every tracked investigator process.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from bugsquad.core.errors import ProcessError
from bugsquad.core.models import utc_now

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-way cancellation flag shared by a session's loop and its supervisor."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if cancelled."""
        return self._event.wait(timeout)


# --- Process termination ---


def _signal(pid: int, sig: int) -> bool:
    """Signal a process group (falling back to the process). False if already gone."""
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        try:
            os.kill(pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            return False


def _wait_exit(proc: subprocess.Popen | None, pid: int, timeout: float) -> bool:
    """Wait until the process has exited. Returns True if it did."""
    if proc is not None:
        try:
            proc.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    deadline = time.monotonic() + timeout
    while True:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.05)


def terminate_process(proc: subprocess.Popen | None, pid: int, grace: float) -> str:
    """SIGTERM, then SIGKILL if still alive after ``grace`` seconds.

    Returns one of "already_exited", "terminated", "killed". Signalling an
    already-dead process is not an error.
    """
    if proc is not None and proc.poll() is not None:
        return "already_exited"
    if not _signal(pid, signal.SIGTERM):
        return "already_exited"
    if _wait_exit(proc, pid, grace):
        return "terminated"
    logger.warning(f"Process {pid} ignored SIGTERM for {grace}s, killing")
    _signal(pid, signal.SIGKILL)
    _wait_exit(proc, pid, 5.0)
    return "killed"


def terminate_processes(processes: dict[int, subprocess.Popen | None], grace: float) -> None:
    """Terminate several processes with one shared grace window."""
    # SIGTERM everyone first so the grace windows overlap
    for pid, proc in processes.items():
        if proc is None or proc.poll() is None:
            _signal(pid, signal.SIGTERM)
    deadline = time.monotonic() + grace
    for pid, proc in processes.items():
        if not _wait_exit(proc, pid, max(0.0, deadline - time.monotonic())):
            logger.warning(f"Process {pid} survived SIGTERM, killing")
            _signal(pid, signal.SIGKILL)
            _wait_exit(proc, pid, 5.0)


# --- Sessions ---


@dataclass
class SessionContext:
    """Everything one session's components share. Lives only in memory."""

    session_id: str
    repo_path: Path
    project_id: str
    language: str | None = None
    file_path: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    token: CancellationToken = field(default_factory=CancellationToken)
    _processes: dict[int, subprocess.Popen | None] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def track(self, pid: int, proc: subprocess.Popen | None = None) -> None:
        """Add a live process.

        A pid released earlier in the session may come back once the OS
        recycles it; only a pid that is still tracked is a conflict.

        Raises:
            ProcessError: pid is currently tracked
        """
        with self._lock:
            if pid in self._processes:
                raise ProcessError(f"pid {pid} is already tracked in session {self.session_id}")
            self._processes[pid] = proc

    def untrack(self, pid: int, proc: subprocess.Popen | None = None) -> bool:
        """Remove a pid. True only for the first removal.

        With ``proc`` given, a later process that reused the pid is left alone.
        """
        with self._lock:
            if pid not in self._processes:
                return False
            if proc is not None and self._processes[pid] not in (None, proc):
                return False
            del self._processes[pid]
            return True

    def tracked_pids(self) -> list[int]:
        with self._lock:
            return sorted(self._processes)

    def drain(self) -> dict[int, subprocess.Popen | None]:
        """Atomically take every tracked process out of the set."""
        with self._lock:
            taken = dict(self._processes)
            self._processes.clear()
            return taken


class SessionRegistry:
    """Tracks cancellation tokens and process sets of live sessions."""

    def __init__(self, grace_seconds: float = 5.0):
        self.grace_seconds = grace_seconds
        self._sessions: dict[str, SessionContext] = {}
        self._lock = threading.Lock()

    def open(
        self,
        session_id: str,
        repo_path: Path,
        project_id: str,
        language: str | None = None,
        file_path: str | None = None,
    ) -> SessionContext:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} is already open")
            ctx = SessionContext(
                session_id=session_id,
                repo_path=Path(repo_path),
                project_id=project_id,
                language=language,
                file_path=file_path,
            )
            self._sessions[session_id] = ctx
        return ctx

    def get(self, session_id: str) -> SessionContext | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def cancel(self, session_id: str) -> list[int] | None:
        """Signal the token and terminate every tracked process.

        Returns the pids that were tracked, or None for an unknown session
        (a no-op). Never touches logs or reports.
        """
        with self._lock:
            ctx = self._sessions.pop(session_id, None)
        if ctx is None:
            return None

        ctx.token.cancel()
        processes = ctx.drain()
        terminate_processes(processes, self.grace_seconds)
        logger.info(f"Cancelled session {session_id} ({len(processes)} processes terminated)")
        return sorted(processes)

    def close(self, session_id: str) -> None:
        """Remove a naturally finished session without signalling anything."""
        with self._lock:
            self._sessions.pop(session_id, None)
