"""Investigator instance loop.

Runs inside its own OS process (``bugsquad investigate``), confined to one
branch checked out in its own worktree. The loop cannot spawn anything and
any branch-creating tool call is rejected with a PolicyError fed back to the
model. It ends in exactly one of three ways:
- a report is written (once) and the process exits 0
- replies stay unusable after bounded retries: failure entry, exit 1, no report
- cancellation (SIGTERM): exit 143, no report
"""

import logging
import signal
from pathlib import Path

from bugsquad.config import BugsquadConfig
from bugsquad.core.errors import ProviderError, ReportExistsError
from bugsquad.core.llm import LLMAdapter
from bugsquad.core.loop import AgentLoop, LoopCancelled, RetryPolicy
from bugsquad.core.models import EventType, LogLevel, Message, Report
from bugsquad.core.parser import parse_reply
from bugsquad.core.prompts import render_prompt
from bugsquad.core.sessions import CancellationToken
from bugsquad.core.store import LogStore, ObservationCursor
from bugsquad.core.tools import ToolExecutor, default_tool_servers

logger = logging.getLogger(__name__)

EXIT_REPORTED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 143

NUDGE = (
    "Your reply contained no usable tag. Either call a tool with <use_tool>, "
    "or conclude with a single <report> block and no tool calls."
)


class InvestigatorLoop(AgentLoop):
    """Tests one hypothesis and writes at most one report."""

    def __init__(
        self,
        session_id: str,
        instance_id: str,
        hypothesis: str,
        branch: str,
        worktree: Path,
        store: LogStore,
        adapter: LLMAdapter,
        config: BugsquadConfig,
        tools: ToolExecutor | None = None,
        token: CancellationToken | None = None,
        repo_path: Path | None = None,
    ):
        paths = store.session_paths(session_id)
        if tools is None:
            tools = ToolExecutor(
                default_tool_servers(config.limits.tool_timeout_seconds),
                forbid_branch_creation=True,
                max_output_chars=config.limits.max_tool_output_chars,
            )
        super().__init__(
            actor=instance_id,
            store=store,
            log_path=paths.investigator_log(instance_id),
            adapter=adapter,
            provider=config.investigator,
            tools=tools,
            cwd=worktree,
            retry=RetryPolicy.from_config(config.retry),
            token=token,
        )
        self.session_id = session_id
        self.instance_id = instance_id
        self.hypothesis = hypothesis
        self.branch = branch
        self.repo_path = repo_path
        self.report_path = paths.report(instance_id)
        self.cursor = ObservationCursor(store, session_id, instance_id)

    def run(self) -> int:
        """Run until a report is written, retries run out, or cancellation."""
        self.messages = [
            Message(
                role="system",
                content=render_prompt(
                    "investigator.j2",
                    hypothesis=self.hypothesis,
                    worktree=str(self.cwd),
                    branch=self.branch,
                    tools=self.tools.describe_tools(),
                ),
            ),
            Message(role="user", content=f"Investigate this hypothesis:\n{self.hypothesis}"),
        ]
        self.log(
            f"Investigating on {self.branch}",
            event=EventType.SESSION_STARTED,
            hypothesis=self.hypothesis,
            branch=self.branch,
            repo_path=str(self.repo_path) if self.repo_path else None,
        )

        try:
            return self._loop()
        except LoopCancelled:
            self.log("Investigator cancelled", event=EventType.SESSION_CANCELLED, level=LogLevel.WARN)
            return EXIT_CANCELLED

    def _loop(self) -> int:
        unusable = 0
        turn = 0
        while True:
            self.checkpoint()
            turn += 1
            self.log(f"Turn {turn}", event=EventType.TURN_STARTED, turn=turn)
            self.consume_observations(self.cursor)

            try:
                reply = self.call_model()
            except ProviderError as e:
                return self._fail(f"Model call failed: {e}", error_type=type(e).__name__)

            self.messages.append(Message(role="assistant", content=reply))
            parsed = parse_reply(reply)
            self.log_skipped(parsed)

            if parsed.tool_calls:
                if parsed.reports:
                    self.log(
                        "Report ignored: reply also contains tool calls",
                        level=LogLevel.WARN,
                    )
                self.messages.append(Message(role="user", content=self.run_tools(parsed.tool_calls)))
                unusable = 0
                continue

            if parsed.reports:
                if len(parsed.reports) > 1:
                    self.log(
                        f"Reply contains {len(parsed.reports)} reports, keeping the first",
                        level=LogLevel.WARN,
                    )
                return self._write_report(parsed.reports[0].report)

            unusable += 1
            if unusable >= self.retry.max_attempts:
                return self._fail(f"No usable reply after {unusable} attempts")
            delay = self.retry.get_delay(unusable - 1)
            self.log(
                f"Reply had no usable tag, retrying in {delay:.1f}s",
                level=LogLevel.WARN,
                attempt=unusable,
            )
            self.sleep(delay)
            self.messages.append(Message(role="user", content=NUDGE))

    def _write_report(self, report: Report) -> int:
        if not report.hypothesis:
            report = report.model_copy(update={"hypothesis": self.hypothesis})
        try:
            self.store.write_report_once(self.report_path, report)
        except ReportExistsError as e:
            return self._fail(str(e))
        self.log(
            f"Report written (confirmed={report.confirmed}, confidence={report.confidence:g})",
            event=EventType.REPORT_WRITTEN,
            confirmed=report.confirmed,
            confidence=report.confidence,
        )
        return EXIT_REPORTED

    def _fail(self, reason: str, **data) -> int:
        self.log(reason, event=EventType.INVESTIGATOR_FAILED, level=LogLevel.ERROR, reason=reason, **data)
        logger.error(f"[{self.instance_id}] {reason}")
        return EXIT_FAILED


def run_investigator(
    session_id: str,
    instance_id: str,
    hypothesis: str,
    branch: str,
    worktree: Path,
    config: BugsquadConfig,
    repo_path: Path | None = None,
    adapter: LLMAdapter | None = None,
) -> int:
    """Process entry point. Must run on the main thread (installs SIGTERM handling)."""
    token = CancellationToken()
    signal.signal(signal.SIGTERM, lambda signum, frame: token.cancel())

    own_adapter = adapter is None
    adapter = adapter or LLMAdapter()
    try:
        loop = InvestigatorLoop(
            session_id=session_id,
            instance_id=instance_id,
            hypothesis=hypothesis,
            branch=branch,
            worktree=worktree,
            store=LogStore(config.resolved_data_dir),
            adapter=adapter,
            config=config,
            token=token,
            repo_path=repo_path,
        )
        return loop.run()
    finally:
        if own_adapter:
            adapter.close()
