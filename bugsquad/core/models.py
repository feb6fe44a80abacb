"""Data models for the debugging supervisor.

Uses Pydantic for everything that crosses a file or process boundary:
log entries, reports, observations, session metadata and the pulse.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class SessionStatus(str, Enum):
    """Derived status of a debugging session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    UNKNOWN = "unknown"  # No trail found for the session id


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventType(str, Enum):
    """Structured markers carried in ``LogEntry.data["event"]``.

    Status reconstruction only looks at these, never at message text.
    """

    # Coordinator lifecycle
    SESSION_STARTED = "session_started"
    TURN_STARTED = "turn_started"
    MODEL_REPLY = "model_reply"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_CANCELLED = "session_cancelled"
    COORDINATOR_STOPPED = "coordinator_stopped"

    # Tool execution
    TOOL_EXECUTED = "tool_executed"
    TOOL_FAILED = "tool_failed"
    POLICY_REJECTED = "policy_rejected"
    TAG_SKIPPED = "tag_skipped"

    # Decisions
    HYPOTHESES_DISCARDED = "hypotheses_discarded"
    SOLUTION_REJECTED = "solution_rejected"
    OBSERVATION_CONSUMED = "observation_consumed"

    # Investigator lifecycle
    INVESTIGATOR_SPAWNED = "investigator_spawned"
    INVESTIGATOR_EXITED = "investigator_exited"
    INVESTIGATOR_TIMEOUT = "investigator_timeout"
    REPORT_WRITTEN = "report_written"
    INVESTIGATOR_FAILED = "investigator_failed"


class LogEntry(BaseModel):
    """Immutable entry in an append-only log."""

    timestamp: datetime = Field(default_factory=utc_now)
    actor: str
    level: LogLevel = LogLevel.INFO
    message: str
    data: dict[str, Any] | None = None

    @property
    def event(self) -> EventType | None:
        """Structured event marker, if any (unknown values are ignored)."""
        if not self.data:
            return None
        try:
            return EventType(self.data.get("event"))
        except ValueError:
            return None


class Report(BaseModel):
    """Investigator conclusion. Write-once per instance."""

    hypothesis: str
    confirmed: bool | None = None  # None = unknown
    investigation: str = ""
    changes: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)


class Observation(BaseModel):
    """Externally appended note, consumed by the addressed agent."""

    timestamp: datetime = Field(default_factory=utc_now)
    author: str
    text: str


class Message(BaseModel):
    """One turn in the provider-neutral chat history."""

    role: Literal["system", "user", "assistant"]
    content: str


class SessionMetadata(BaseModel):
    """Durable description of a session, written once at start."""

    session_id: str
    project_id: str
    repo_path: str
    error: str
    context: str | None = None
    language: str | None = None
    file_path: str | None = None
    started_at: datetime = Field(default_factory=utc_now)


class InvestigatorInstance(BaseModel):
    """A live investigator process. Becomes history once it exits."""

    instance_id: str
    session_id: str
    hypothesis: str
    branch: str
    worktree: str
    pid: int
    spawned_at: datetime
    deadline: datetime


# --- Status reconstruction ---


class InvestigatorState(str, Enum):
    REPORTED = "reported"
    RUNNING = "running"
    TERMINATED_UNREPORTED = "terminated/unreported"


class InvestigatorSummary(BaseModel):
    instance_id: str
    hypothesis: str
    branch: str | None = None
    state: InvestigatorState
    confirmed: bool | None = None
    summary: str | None = None
    confidence: float | None = None


class Pulse(BaseModel):
    """Status summary computed from the log trail."""

    session_id: str
    status: SessionStatus
    stage: str | None = None
    solution: str | None = None
    reason: str | None = None
    started_at: datetime | None = None
    elapsed_seconds: float | None = None
    investigators: list[InvestigatorSummary] = Field(default_factory=list)

    @property
    def running(self) -> list[InvestigatorSummary]:
        return [i for i in self.investigators if i.state == InvestigatorState.RUNNING]

    @property
    def reported(self) -> list[InvestigatorSummary]:
        return [i for i in self.investigators if i.state == InvestigatorState.REPORTED]


# --- Boundary acknowledgements ---


class CancelAck(BaseModel):
    session_id: str
    cancelled: bool  # False when the session was unknown or already finished
    terminated_pids: list[int] = Field(default_factory=list)


class ObservationAck(BaseModel):
    session_id: str
    agent_id: str
    timestamp: datetime
