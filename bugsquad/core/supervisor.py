"""Investigator process lifecycle.

Spawning returns immediately. Completion is never reported through a return
value: the supervisor writes spawn/exit markers to the coordinator log and
the investigator writes its own report, and callers read both from the store.

Each instance gets a watcher thread that enforces its deadline:
1. Wait for the process up to the deadline
2. On expiry: SIGTERM, SIGKILL after the grace window
3. Remove the pid from the session's tracked set (exactly once)
4. Log the outcome
"""

import logging
import os
import subprocess
import sys
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

from bugsquad.config import BugsquadConfig
from bugsquad.core.errors import ProcessError
from bugsquad.core.models import EventType, InvestigatorInstance, LogEntry, LogLevel, utc_now
from bugsquad.core.sessions import SessionContext, terminate_process, terminate_processes
from bugsquad.core.store import LogStore

logger = logging.getLogger(__name__)

SUPERVISOR_ACTOR = "supervisor"
CHILD_CONFIG_ENV = "BUGSQUAD_CHILD_CONFIG"

CommandFactory = Callable[[SessionContext, str, str, str, Path], list[str]]


def instance_id_for(counter: int) -> str:
    return f"inv-{counter}"


class InvestigatorSupervisor:
    """Spawns, watches and terminates investigator subprocesses."""

    def __init__(
        self,
        store: LogStore,
        config: BugsquadConfig,
        command_factory: CommandFactory | None = None,
    ):
        self.store = store
        self.config = config
        self.command_factory = command_factory or self.investigate_command
        self._watchers: dict[str, list[threading.Thread]] = {}
        self._lock = threading.Lock()

    @property
    def timeout(self) -> float:
        return self.config.limits.investigator_timeout_seconds

    @property
    def grace(self) -> float:
        return self.config.limits.termination_grace_seconds

    def investigate_command(
        self,
        ctx: SessionContext,
        instance_id: str,
        hypothesis: str,
        branch: str,
        worktree: Path,
    ) -> list[str]:
        """Command line of the hidden ``bugsquad investigate`` entry point."""
        return [
            sys.executable,
            "-m",
            "bugsquad",
            "investigate",
            "--session-id",
            ctx.session_id,
            "--instance-id",
            instance_id,
            "--repo",
            str(ctx.repo_path),
            "--branch",
            branch,
            "--worktree",
            str(worktree),
            "--data-dir",
            str(self.store.data_dir),
            "--hypothesis",
            hypothesis,
        ]

    def _log(
        self,
        ctx: SessionContext,
        message: str,
        event: EventType,
        level: LogLevel = LogLevel.INFO,
        **data,
    ) -> None:
        self.store.append(
            self.store.session_paths(ctx.session_id).coordinator_log,
            LogEntry(
                actor=SUPERVISOR_ACTOR,
                level=level,
                message=message,
                data={"event": event.value, **data},
            ),
        )

    def spawn(
        self,
        ctx: SessionContext,
        hypothesis: str,
        branch: str,
        worktree: Path,
        counter: int,
    ) -> InvestigatorInstance:
        """Launch one investigator and return without waiting for it.

        Raises:
            ProcessError: Session already cancelled, or the process failed to start
        """
        if ctx.token.cancelled:
            raise ProcessError(f"Session {ctx.session_id} is cancelled, not spawning")

        instance_id = instance_id_for(counter)
        paths = self.store.session_paths(ctx.session_id)
        paths.ensure()
        command = self.command_factory(ctx, instance_id, hypothesis, branch, Path(worktree))

        env = self.config.child_environment()
        env[CHILD_CONFIG_ENV] = self.config.to_child_json()

        try:
            with open(paths.investigator_stderr(instance_id), "ab") as stderr:
                proc = subprocess.Popen(
                    command,
                    cwd=worktree,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                    env=env,
                    start_new_session=True,  # Own process group, killed as a unit
                )
        except OSError as e:
            raise ProcessError(f"Failed to start investigator {instance_id}: {e}") from e

        try:
            ctx.track(proc.pid, proc)
        except ProcessError:
            # Nothing else knows about this child; stop it before giving up
            terminate_process(proc, proc.pid, self.grace)
            raise
        spawned_at = utc_now()
        instance = InvestigatorInstance(
            instance_id=instance_id,
            session_id=ctx.session_id,
            hypothesis=hypothesis,
            branch=branch,
            worktree=str(worktree),
            pid=proc.pid,
            spawned_at=spawned_at,
            deadline=spawned_at + timedelta(seconds=self.timeout),
        )
        self._log(
            ctx,
            f"Spawned investigator {instance_id} on {branch}",
            EventType.INVESTIGATOR_SPAWNED,
            instance_id=instance_id,
            hypothesis=hypothesis,
            branch=branch,
            worktree=str(worktree),
            pid=proc.pid,
            spawned_at=spawned_at.isoformat(),
            deadline=instance.deadline.isoformat(),
        )
        logger.info(f"[{ctx.session_id}] spawned {instance_id} (pid {proc.pid}) on {branch}")

        # Cancelled between the check above and tracking: the registry has
        # already drained the set, so this process is ours to stop
        if ctx.token.cancelled and ctx.untrack(proc.pid, proc):
            terminate_process(proc, proc.pid, self.grace)

        watcher = threading.Thread(
            target=self._watch,
            args=(ctx, instance, proc),
            name=f"watch-{ctx.session_id}-{instance_id}",
            daemon=True,
        )
        with self._lock:
            watchers = self._watchers.setdefault(ctx.session_id, [])
            watchers[:] = [t for t in watchers if t.is_alive()]
            watchers.append(watcher)
        watcher.start()
        return instance

    def _watch(self, ctx: SessionContext, instance: InvestigatorInstance, proc: subprocess.Popen) -> None:
        remaining = max(0.0, (instance.deadline - utc_now()).total_seconds())
        timed_out = False
        try:
            proc.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            timed_out = True
            outcome = terminate_process(proc, proc.pid, self.grace)
            logger.warning(f"[{ctx.session_id}] {instance.instance_id} timed out ({outcome})")
            if proc.returncode is None:
                proc.wait()

        ctx.untrack(proc.pid, proc)

        if timed_out:
            self._log(
                ctx,
                f"Investigator {instance.instance_id} terminated by timeout",
                EventType.INVESTIGATOR_TIMEOUT,
                level=LogLevel.WARN,
                instance_id=instance.instance_id,
                pid=proc.pid,
            )
            reason = "timeout"
        elif ctx.token.cancelled:
            reason = "cancelled"
        else:
            reason = "exited"

        reported = self.store.session_paths(ctx.session_id).report(instance.instance_id).exists()
        if reported:
            message = f"Investigator {instance.instance_id} exited with a report"
            level = LogLevel.INFO
        else:
            message = f"Investigator {instance.instance_id} exited without a report (code {proc.returncode})"
            level = LogLevel.WARN
        self._log(
            ctx,
            message,
            EventType.INVESTIGATOR_EXITED,
            level=level,
            instance_id=instance.instance_id,
            pid=proc.pid,
            returncode=proc.returncode,
            reason=reason,
            reported=reported,
        )

    def terminate_all(self, ctx: SessionContext) -> list[int]:
        """Graceful-then-forceful termination of every tracked process."""
        processes = ctx.drain()
        if processes:
            terminate_processes(processes, self.grace)
            logger.info(f"[{ctx.session_id}] terminated {len(processes)} investigators")
        return sorted(processes)

    def join(self, session_id: str, timeout: float | None = None) -> None:
        """Wait for a session's watcher threads to log their exit markers."""
        with self._lock:
            watchers = list(self._watchers.get(session_id, []))
        for watcher in watchers:
            watcher.join(timeout)
        with self._lock:
            alive = [t for t in self._watchers.get(session_id, []) if t.is_alive()]
            if alive:
                self._watchers[session_id] = alive
            else:
                self._watchers.pop(session_id, None)


def child_config_from_env() -> str | None:
    return os.environ.get(CHILD_CONFIG_ENV)
