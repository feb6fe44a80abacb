"""Machinery shared by the coordinator and investigator loops.

Both loops follow the same turn shape: call the model (with bounded retry),
parse tags, execute tool calls, feed results back. Everything a loop does is
written to its own log file, so the log is the loop's causal history.
"""

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bugsquad.config import RetryConfig
from bugsquad.core.errors import ProviderError
from bugsquad.core.llm import LLMAdapter, ProviderConfig
from bugsquad.core.models import EventType, LogEntry, LogLevel, Message
from bugsquad.core.parser import ParsedReply, ToolCall
from bugsquad.core.sessions import CancellationToken
from bugsquad.core.store import LogStore, ObservationCursor
from bugsquad.core.tools import ToolExecutor
from bugsquad.core.utils import truncate_output

logger = logging.getLogger(__name__)

LOGGED_REPLY_CHARS = 4000


class LoopCancelled(Exception):
    """Cancellation was observed at a checkpoint. Internal control flow only."""

    pass


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


class AgentLoop:
    """Base for a model-driven loop writing to a single log file."""

    def __init__(
        self,
        actor: str,
        store: LogStore,
        log_path: Path,
        adapter: LLMAdapter,
        provider: ProviderConfig,
        tools: ToolExecutor,
        cwd: Path,
        retry: RetryPolicy | None = None,
        token: CancellationToken | None = None,
    ):
        self.actor = actor
        self.store = store
        self.log_path = log_path
        self.adapter = adapter
        self.provider = provider
        self.tools = tools
        self.cwd = Path(cwd)
        self.retry = retry or RetryPolicy()
        self.token = token or CancellationToken()
        self.messages: list[Message] = []

    # --- Logging ---

    def log(
        self,
        message: str,
        event: EventType | None = None,
        level: LogLevel = LogLevel.INFO,
        **data: Any,
    ) -> None:
        payload = dict(data)
        if event is not None:
            payload["event"] = event.value
        self.store.append(
            self.log_path,
            LogEntry(actor=self.actor, level=level, message=message, data=payload or None),
        )

    # --- Checkpoints ---

    def checkpoint(self) -> None:
        if self.token.cancelled:
            raise LoopCancelled()

    def sleep(self, seconds: float) -> None:
        """Interruptible sleep."""
        if self.token.wait(seconds):
            raise LoopCancelled()

    # --- Model calls ---

    def call_model(self) -> str:
        """Call the model, retrying retryable provider errors with backoff.

        Raises:
            ProviderError: Non-retryable error, or retries exhausted
            LoopCancelled: Cancelled while backing off
        """
        for attempt in range(self.retry.max_attempts):
            self.checkpoint()
            try:
                reply = self.adapter.call(self.messages, self.provider)
            except ProviderError as e:
                if not e.retryable or attempt >= self.retry.max_attempts - 1:
                    raise
                delay = self.retry.get_delay(attempt)
                self.log(
                    f"Model call failed ({type(e).__name__}), retrying in {delay:.1f}s",
                    level=LogLevel.WARN,
                    error=str(e),
                    attempt=attempt + 1,
                )
                self.sleep(delay)
                continue

            self.log(
                "Model replied",
                event=EventType.MODEL_REPLY,
                reply=truncate_output(reply, LOGGED_REPLY_CHARS),
            )
            return reply

        # range() is never empty (max_attempts >= 1); kept for type checkers
        raise ProviderError("Model call retries exhausted")

    # --- Tags and tools ---

    def log_skipped(self, parsed: ParsedReply) -> None:
        for tag in parsed.skipped:
            self.log(
                f"Skipped malformed tag: {tag.reason}",
                event=EventType.TAG_SKIPPED,
                level=LogLevel.WARN,
                raw=tag.raw,
            )

    def run_tools(self, calls: list[ToolCall]) -> str:
        """Execute tool calls in order and return the feedback message text."""
        feedback: list[str] = []
        for call in calls:
            self.checkpoint()
            outcome = self.tools.execute(call, self.cwd)
            if outcome.ok:
                event, level = EventType.TOOL_EXECUTED, LogLevel.INFO
            elif outcome.policy_violation:
                event, level = EventType.POLICY_REJECTED, LogLevel.WARN
            else:
                event, level = EventType.TOOL_FAILED, LogLevel.WARN
            self.log(
                f"Tool {call.describe()} {'succeeded' if outcome.ok else 'failed'}",
                event=event,
                level=level,
                server=call.server,
                tool=call.tool,
                arguments=call.arguments,
                output=truncate_output(outcome.output, 1000),
            )
            feedback.append(outcome.as_feedback())
        return "Tool results:\n\n" + "\n\n".join(feedback)

    def consume_observations(self, cursor: ObservationCursor) -> int:
        """Append new observations to the conversation. Returns how many."""
        observations = cursor.poll()
        for observation in observations:
            self.messages.append(
                Message(
                    role="user",
                    content=f"Observation from {observation.author}:\n{observation.text}",
                )
            )
            self.log(
                f"Consumed observation from {observation.author}",
                event=EventType.OBSERVATION_CONSUMED,
                author=observation.author,
                text=observation.text,
            )
        return len(observations)
