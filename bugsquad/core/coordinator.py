"""Coordinator decision loop.

States: RUNNING -> (AWAITING_MODEL <-> ACTING) -> {DONE, CANCELLED, FAILED}

Each turn checks cancellation and the max-runtime deadline, folds new
observations and investigator reports into the conversation, calls the model
and acts on the parsed reply with this precedence:

1. Tool calls (+ hypotheses): run the tools, discard the hypotheses
2. Hypotheses only: spawn one investigator each, wait for the batch, feed
   the reports back
3. Solution only: accept if confidence >= threshold and nothing is pending,
   otherwise it is ordinary output
4. Nothing usable: nudge the model (bounded, then FAILED)

Every transition is written to the coordinator log; status is reconstructed
from that log, never from this object.
"""

import logging
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from bugsquad.config import BugsquadConfig
from bugsquad.core.branches import BranchManager
from bugsquad.core.errors import BranchError, ProcessError, ProviderError
from bugsquad.core.llm import LLMAdapter
from bugsquad.core.loop import AgentLoop, LoopCancelled, RetryPolicy
from bugsquad.core.models import EventType, InvestigatorInstance, LogLevel, Message
from bugsquad.core.parser import Hypothesis, ParsedReply, Solution, parse_reply
from bugsquad.core.prompts import initial_task, render_prompt
from bugsquad.core.sessions import SessionContext
from bugsquad.core.store import COORDINATOR_ACTOR, LogStore, ObservationCursor
from bugsquad.core.supervisor import InvestigatorSupervisor
from bugsquad.core.tools import ToolExecutor, default_tool_servers

logger = logging.getLogger(__name__)

HYPOTHESES_NOTE = "hypotheses"
PROGRESS_NOTE = "progress"

NUDGE = (
    "Your reply contained no usable tag. Call a tool, emit one or more "
    "<hypothesis> blocks (without tool calls), or give a <solution>."
)


class CoordinatorState(str, Enum):
    RUNNING = "running"
    AWAITING_MODEL = "awaiting_model"
    ACTING = "acting"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CoordinatorLoop(AgentLoop):
    """Drives one debugging session. Exactly one per session."""

    def __init__(
        self,
        ctx: SessionContext,
        error: str,
        store: LogStore,
        adapter: LLMAdapter,
        config: BugsquadConfig,
        supervisor: InvestigatorSupervisor,
        branches: BranchManager,
        context: str | None = None,
        tools: ToolExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if tools is None:
            tools = ToolExecutor(
                default_tool_servers(config.limits.tool_timeout_seconds),
                max_output_chars=config.limits.max_tool_output_chars,
            )
        super().__init__(
            actor=COORDINATOR_ACTOR,
            store=store,
            log_path=store.session_paths(ctx.session_id).coordinator_log,
            adapter=adapter,
            provider=config.coordinator,
            tools=tools,
            cwd=ctx.repo_path,
            retry=RetryPolicy.from_config(config.retry),
            token=ctx.token,
        )
        self.ctx = ctx
        self.error = error
        self.context = context
        self.config = config
        self.supervisor = supervisor
        self.branches = branches
        self.clock = clock
        self.state = CoordinatorState.RUNNING
        self.cursor = ObservationCursor(store, ctx.session_id, COORDINATOR_ACTOR)
        self.instances: list[InvestigatorInstance] = []
        self.delivered: set[str] = set()
        self.worktrees: list[Path] = []
        self.deadline = clock() + config.limits.max_runtime_seconds

    @property
    def threshold(self) -> float:
        return self.config.limits.solution_confidence_threshold

    # --- Entry point ---

    def run(self) -> CoordinatorState:
        """Run the session to a terminal state."""
        try:
            self._start()
            return self._loop()
        except LoopCancelled:
            return self._stop_cancelled()
        finally:
            self._cleanup()

    def _start(self) -> None:
        notes = "\n".join(
            text
            for text in (
                self.store.read_note(self.ctx.project_id, PROGRESS_NOTE),
                self.store.read_note(self.ctx.project_id, HYPOTHESES_NOTE),
            )
            if text
        )
        self.messages = [
            Message(
                role="system",
                content=render_prompt(
                    "coordinator.j2",
                    repo_path=str(self.ctx.repo_path),
                    language=self.ctx.language,
                    file_path=self.ctx.file_path,
                    threshold=f"{self.threshold:g}",
                    tools=self.tools.describe_tools(),
                    notes=notes,
                ),
            ),
            Message(
                role="user",
                content=initial_task(self.error, self.context, self.ctx.language, self.ctx.file_path),
            ),
        ]
        self.log(
            "Coordinator started",
            event=EventType.SESSION_STARTED,
            stage="started",
            error=self.error,
        )

    def _loop(self) -> CoordinatorState:
        idle = 0
        turn = 0
        while True:
            self.checkpoint()
            if self.clock() >= self.deadline:
                return self._fail("max runtime exceeded")

            turn += 1
            self.state = CoordinatorState.AWAITING_MODEL
            self.log(f"Turn {turn}", event=EventType.TURN_STARTED, stage="awaiting_model", turn=turn)
            self.consume_observations(self.cursor)
            self._deliver_reports()

            try:
                reply = self.call_model()
            except ProviderError as e:
                return self._fail(f"model call failed: {e}", error_type=type(e).__name__)

            self.state = CoordinatorState.ACTING
            self.messages.append(Message(role="assistant", content=reply))
            parsed = self._parse(reply)

            if not parsed.is_actionable:
                idle += 1
                if idle >= self.config.limits.max_idle_turns:
                    return self._fail(f"no actionable reply after {idle} turns")
                self.log("Reply had no usable tag", level=LogLevel.WARN, idle_turns=idle)
                self.messages.append(Message(role="user", content=NUDGE))
                self.sleep(self.retry.get_delay(idle - 1))
                continue
            idle = 0

            if self._act(parsed):
                return self.state

    def _parse(self, reply: str) -> ParsedReply:
        parsed = parse_reply(reply)
        self.log_skipped(parsed)
        return parsed

    # --- Acting ---

    def _act(self, parsed: ParsedReply) -> bool:
        """Apply the precedence rules. True when the session reached DONE."""
        if parsed.tool_calls:
            if parsed.hypotheses:
                self.log(
                    f"Discarded {len(parsed.hypotheses)} hypotheses: reply also contains tool calls",
                    event=EventType.HYPOTHESES_DISCARDED,
                    level=LogLevel.WARN,
                    hypotheses=[h.text for h in parsed.hypotheses],
                )
            for solution in parsed.solutions:
                self._reject(solution, "reply also contains tool calls")
            self.log(f"Running {len(parsed.tool_calls)} tool calls", stage="running_tools")
            self.messages.append(Message(role="user", content=self.run_tools(parsed.tool_calls)))
            return False

        if parsed.hypotheses:
            spawned = self._spawn_batch(parsed.hypotheses)
            for solution in parsed.solutions:
                self._reject(solution, "investigators were spawned in the same reply")
            if spawned:
                self._await_batch(spawned)
            self._deliver_reports(force=True)
            return False

        if parsed.solutions:
            solution = parsed.solutions[0]
            pending = self._pending()
            if pending:
                self._reject(solution, f"investigators still running: {', '.join(i.instance_id for i in pending)}")
            elif solution.confidence is None or solution.confidence < self.threshold:
                confidence = "missing" if solution.confidence is None else f"{solution.confidence:g}%"
                self._reject(solution, f"confidence {confidence} is below {self.threshold:g}%")
            else:
                self._complete(solution)
                return True
            return False

        # Only report tags (investigator syntax) in a coordinator reply
        self.log("Reply contained no coordinator action", level=LogLevel.WARN)
        self.messages.append(Message(role="user", content=NUDGE))
        return False

    def _reject(self, solution: Solution, reason: str) -> None:
        self.log(
            f"Solution not accepted: {reason}",
            event=EventType.SOLUTION_REJECTED,
            level=LogLevel.WARN,
            reason=reason,
            confidence=solution.confidence,
        )
        self.messages.append(
            Message(role="user", content=f"Your solution was not accepted ({reason}). Continue the investigation.")
        )

    # --- Investigators ---

    def _spawn_batch(self, hypotheses: list[Hypothesis]) -> list[InvestigatorInstance]:
        spawned: list[InvestigatorInstance] = []
        failures: list[str] = []
        self.log(f"Spawning {len(hypotheses)} investigators", stage="investigating")
        for hypothesis in hypotheses:
            self.checkpoint()
            counter, branch = self.branches.allocate(self.ctx.session_id)
            worktree = self.store.worktree_root(self.ctx.session_id) / branch
            try:
                self.branches.materialize(branch, self.ctx.repo_path, worktree)
                self.worktrees.append(worktree)
                instance = self.supervisor.spawn(self.ctx, hypothesis.text, branch, worktree, counter)
            except (BranchError, ProcessError) as e:
                self.log(f"Could not start investigator on {branch}: {e}", level=LogLevel.ERROR, branch=branch)
                failures.append(f"- {hypothesis.text}: {e}")
                continue
            spawned.append(instance)
            self.instances.append(instance)
            self._note(HYPOTHESES_NOTE, f"- [{self.ctx.session_id}] {branch}: {hypothesis.text}")

        if failures:
            self.messages.append(
                Message(role="user", content="These hypotheses could not be investigated:\n" + "\n".join(failures))
            )
        return spawned

    def _exited_ids(self) -> set[str]:
        return {
            entry.data["instance_id"]
            for entry in self.store.read(self.log_path)
            if entry.event == EventType.INVESTIGATOR_EXITED and entry.data.get("instance_id")
        }

    def _concluded(self, instance: InvestigatorInstance, exited: set[str]) -> bool:
        report = self.store.session_paths(self.ctx.session_id).report(instance.instance_id)
        return instance.instance_id in exited or report.exists()

    def _pending(self) -> list[InvestigatorInstance]:
        exited = self._exited_ids()
        return [i for i in self.instances if not self._concluded(i, exited)]

    def _await_batch(self, batch: list[InvestigatorInstance]) -> None:
        """Wait until each instance has reported or exited, bounded by its deadline."""
        limits = self.config.limits
        wait_until = min(
            self.clock() + limits.investigator_timeout_seconds + limits.termination_grace_seconds,
            self.deadline,
        )
        self.log(
            f"Waiting for {len(batch)} investigators",
            stage="awaiting_investigators",
            instances=[i.instance_id for i in batch],
        )
        while True:
            exited = self._exited_ids()
            if all(self._concluded(i, exited) for i in batch):
                return
            if self.clock() >= wait_until:
                self.log("Stopped waiting for investigators", level=LogLevel.WARN)
                return
            self.sleep(limits.poll_interval_seconds)

    def _deliver_reports(self, force: bool = False) -> None:
        """Feed newly concluded investigators back to the model.

        With ``force``, instances still running are mentioned as such.
        """
        exited = self._exited_ids()
        paths = self.store.session_paths(self.ctx.session_id)
        sections: list[str] = []
        running: list[str] = []
        for instance in self.instances:
            if instance.instance_id in self.delivered:
                continue
            report = self.store.read_report(paths.report(instance.instance_id))
            if report is not None:
                verdict = {True: "CONFIRMED", False: "REFUTED", None: "UNKNOWN"}[report.confirmed]
                sections.append(
                    f"Investigator {instance.instance_id} ({instance.branch}) {verdict}, "
                    f"confidence {report.confidence:g}%\n"
                    f"HYPOTHESIS: {report.hypothesis}\n"
                    f"INVESTIGATION: {report.investigation}\n"
                    f"CHANGES MADE: {report.changes or 'none'}"
                )
                self._note(
                    PROGRESS_NOTE,
                    f"- [{self.ctx.session_id}] {verdict.lower()} ({report.confidence:g}%): {report.hypothesis}",
                )
            elif instance.instance_id in exited:
                sections.append(
                    f"Investigator {instance.instance_id} ({instance.branch}) ended without a report.\n"
                    f"HYPOTHESIS: {instance.hypothesis}"
                )
            else:
                running.append(instance.instance_id)
                continue
            self.delivered.add(instance.instance_id)

        if force and running:
            sections.append(f"Still running: {', '.join(running)}. Their reports will follow.")
        if sections:
            self.messages.append(Message(role="user", content="Investigator results:\n\n" + "\n\n".join(sections)))

    # --- Terminal states ---

    def _complete(self, solution: Solution) -> None:
        self.state = CoordinatorState.DONE
        self.log(
            "Session completed",
            event=EventType.SESSION_COMPLETED,
            stage="completed",
            solution=solution.text,
            confidence=solution.confidence,
        )
        self._note(PROGRESS_NOTE, f"- [{self.ctx.session_id}] solved: {solution.text}")
        logger.info(f"[{self.ctx.session_id}] completed with confidence {solution.confidence:g}%")

    def _fail(self, reason: str, **data) -> CoordinatorState:
        self.state = CoordinatorState.FAILED
        terminated = self.supervisor.terminate_all(self.ctx)
        self.log(
            f"Session failed: {reason}",
            event=EventType.SESSION_FAILED,
            level=LogLevel.ERROR,
            stage="failed",
            reason=reason,
            terminated_pids=terminated,
            **data,
        )
        logger.error(f"[{self.ctx.session_id}] failed: {reason}")
        return self.state

    def _stop_cancelled(self) -> CoordinatorState:
        self.state = CoordinatorState.CANCELLED
        terminated = self.supervisor.terminate_all(self.ctx)
        self.log(
            "Coordinator stopped after cancellation",
            event=EventType.COORDINATOR_STOPPED,
            level=LogLevel.WARN,
            stage="cancelled",
            state=self.state.value,
            terminated_pids=terminated,
        )
        logger.info(f"[{self.ctx.session_id}] cancelled")
        return self.state

    def _cleanup(self) -> None:
        self.branches.forget(self.ctx.session_id)
        if self.config.keep_worktrees or not self.worktrees:
            return
        self.supervisor.join(self.ctx.session_id, timeout=self.config.limits.termination_grace_seconds + 1)
        if self.ctx.tracked_pids():
            self.log("Investigators still running, keeping their worktrees", level=LogLevel.WARN)
            return
        for worktree in self.worktrees:
            self.branches.release(self.ctx.repo_path, worktree)

    # --- Durable notes ---

    def _note(self, name: str, text: str) -> None:
        try:
            self.store.append_note(self.ctx.project_id, name, text)
        except OSError as e:
            # filelock.Timeout is an OSError too
            self.log(f"Could not append to {name} note: {e}", level=LogLevel.WARN)
