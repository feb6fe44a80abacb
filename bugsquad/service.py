"""Boundary operations: start, check, cancel, add_observation.

DebugService owns the process-wide objects (session registry, supervisor,
branch manager, LLM adapter) and passes them explicitly into each session.
Each coordinator loop runs in its own background thread; investigators are
separate OS processes.
"""

import logging
import threading
import time
import uuid
from pathlib import Path

from bugsquad.config import BugsquadConfig
from bugsquad.core.branches import BranchManager
from bugsquad.core.coordinator import CoordinatorLoop
from bugsquad.core.errors import SessionNotFoundError
from bugsquad.core.llm import LLMAdapter
from bugsquad.core.models import (
    CancelAck,
    EventType,
    LogEntry,
    LogLevel,
    Observation,
    ObservationAck,
    Pulse,
    SessionMetadata,
    SessionStatus,
)
from bugsquad.core.sessions import SessionRegistry
from bugsquad.core.status import StatusReconstructor
from bugsquad.core.store import COORDINATOR_ACTOR, LogStore, project_id_for, sanitize_id
from bugsquad.core.supervisor import InvestigatorSupervisor
from bugsquad.core.tools import ToolExecutor, run_command

logger = logging.getLogger(__name__)

SERVICE_ACTOR = "service"


def new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"


class DebugService:
    """Entry point for clients (CLI, HTTP server, tests)."""

    def __init__(
        self,
        config: BugsquadConfig,
        store: LogStore | None = None,
        adapter: LLMAdapter | None = None,
        registry: SessionRegistry | None = None,
        supervisor: InvestigatorSupervisor | None = None,
        branches: BranchManager | None = None,
        coordinator_tools: ToolExecutor | None = None,
    ):
        self.config = config
        self.store = store or LogStore(config.resolved_data_dir)
        self._adapter = adapter
        self.registry = registry or SessionRegistry(grace_seconds=config.limits.termination_grace_seconds)
        self.supervisor = supervisor or InvestigatorSupervisor(self.store, config)
        self.branches = branches or BranchManager()
        self.coordinator_tools = coordinator_tools
        self.status = StatusReconstructor(self.store)
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            self._adapter = LLMAdapter()
        return self._adapter

    # --- Boundary operations ---

    def start(
        self,
        error: str,
        repo_path: str | Path,
        context: str | None = None,
        language: str | None = None,
        file_path: str | None = None,
    ) -> str:
        """Start a session and return its id without waiting for any progress.

        Raises:
            ValueError: Empty error or a repo path that is not a git work tree
            ConfigError: A model credential is missing
        """
        if not error or not error.strip():
            raise ValueError("error must not be empty")
        repo = Path(repo_path).expanduser().resolve()
        if not repo.is_dir():
            raise ValueError(f"Repository path does not exist: {repo_path}")
        inside = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=repo, timeout=30)
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            raise ValueError(f"Not a git repository: {repo}")
        self.config.validate_credentials()

        session_id = new_session_id()
        project_id = project_id_for(repo)
        self.store.write_metadata(
            SessionMetadata(
                session_id=session_id,
                project_id=project_id,
                repo_path=str(repo),
                error=error,
                context=context,
                language=language,
                file_path=file_path,
            )
        )
        ctx = self.registry.open(session_id, repo, project_id, language=language, file_path=file_path)
        loop = CoordinatorLoop(
            ctx,
            error,
            store=self.store,
            adapter=self.adapter,
            config=self.config,
            supervisor=self.supervisor,
            branches=self.branches,
            context=context,
            tools=self.coordinator_tools,
        )

        thread = threading.Thread(
            target=self._run_coordinator,
            args=(loop,),
            name=f"coordinator-{session_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[session_id] = thread
        thread.start()
        logger.info(f"Started session {session_id} for {repo}")
        return session_id

    def check(self, session_id: str) -> Pulse:
        """Current pulse. Always answers, even for unknown or malformed ids."""
        try:
            return self.status.pulse(session_id)
        except ValueError as e:
            return Pulse(session_id=session_id, status=SessionStatus.UNKNOWN, reason=str(e))

    def cancel(self, session_id: str) -> CancelAck:
        """Cancel a live session. Idempotent: unknown or finished sessions get a no-op ack."""
        pids = self.registry.cancel(session_id)
        if pids is None:
            return CancelAck(session_id=session_id, cancelled=False)

        self.store.append(
            self.store.session_paths(session_id).coordinator_log,
            LogEntry(
                actor=SERVICE_ACTOR,
                level=LogLevel.WARN,
                message="Session cancelled by client",
                data={
                    "event": EventType.SESSION_CANCELLED.value,
                    "stage": "cancelled",
                    "terminated_pids": pids,
                },
            ),
        )
        return CancelAck(session_id=session_id, cancelled=True, terminated_pids=pids)

    def add_observation(
        self,
        observation: str,
        session_id: str,
        agent_id: str = COORDINATOR_ACTOR,
        author: str = "client",
    ) -> ObservationAck:
        """Append an observation for an agent (the coordinator or an instance id).

        Raises:
            ValueError: Empty observation or invalid agent id
            SessionNotFoundError: No such session
        """
        if not observation or not observation.strip():
            raise ValueError("observation must not be empty")
        sanitize_id(agent_id)
        if self.store.read_metadata(session_id) is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")

        entry = Observation(author=author, text=observation)
        self.store.append_observation(session_id, agent_id, entry)
        return ObservationAck(session_id=session_id, agent_id=agent_id, timestamp=entry.timestamp)

    # --- Lifecycle ---

    def _run_coordinator(self, loop: CoordinatorLoop) -> None:
        session_id = loop.ctx.session_id
        try:
            loop.run()
        except Exception as e:
            # A crashed loop still has to leave a terminal entry behind
            logger.exception(f"Coordinator for {session_id} crashed")
            self.supervisor.terminate_all(loop.ctx)
            loop.log(
                f"Session failed: unexpected error: {e}",
                event=EventType.SESSION_FAILED,
                level=LogLevel.ERROR,
                stage="failed",
                reason=f"unexpected error: {type(e).__name__}: {e}",
            )
        finally:
            self.registry.close(session_id)

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until a session's coordinator thread ends. True if it did."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self) -> None:
        """Cancel every live session and release the HTTP client."""
        for session_id in self.registry.active():
            self.cancel(session_id)
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(self.config.limits.termination_grace_seconds + 5)
        if self._adapter is not None:
            self._adapter.close()
