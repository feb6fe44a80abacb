"""Status reconstruction ("pulse") from the log trail.

A pulse is a pure function of durable state: the session metadata, the
coordinator log (which also carries the supervisor's spawn/exit markers) and
the report files. Nothing is cached between calls, so two calls with no
writes in between return the same pulse and a new entry is visible to the
very next call.

Status priority:
1. FAILED / CANCELLED (the first terminal entry of either kind)
2. COMPLETED (a session_completed entry carrying the solution)
3. IN_PROGRESS
"""

import logging
from datetime import datetime

from bugsquad.core.models import (
    EventType,
    InvestigatorState,
    InvestigatorSummary,
    LogEntry,
    Pulse,
    SessionStatus,
    utc_now,
)
from bugsquad.core.store import LogStore

logger = logging.getLogger(__name__)

SUMMARY_CHARS = 300


def _parse_time(value) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _is_cancel_marker(entry: LogEntry) -> bool:
    if entry.event == EventType.SESSION_CANCELLED:
        return True
    return entry.event == EventType.COORDINATOR_STOPPED and (entry.data or {}).get("state") == "cancelled"


def _summarize(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= SUMMARY_CHARS else text[: SUMMARY_CHARS - 3] + "..."


class StatusReconstructor:
    """Computes pulses on demand. Safe to recreate at any time."""

    def __init__(self, store: LogStore):
        self.store = store

    def pulse(self, session_id: str, now: datetime | None = None) -> Pulse:
        """Best-effort status summary. Never raises for an unknown or damaged session."""
        now = now or utc_now()
        paths = self.store.session_paths(session_id)
        metadata = self.store.read_metadata(session_id)
        entries = self.store.read(paths.coordinator_log)

        if metadata is None and not entries:
            return Pulse(
                session_id=session_id,
                status=SessionStatus.UNKNOWN,
                reason=f"No session found with id {session_id}",
            )

        stage: str | None = None
        terminal: LogEntry | None = None
        completed: LogEntry | None = None
        spawned: dict[str, LogEntry] = {}
        terminated: set[str] = set()

        for entry in entries:
            data = entry.data or {}
            if "stage" in data:
                stage = data["stage"]

            event = entry.event
            if event == EventType.INVESTIGATOR_SPAWNED and data.get("instance_id"):
                spawned.setdefault(data["instance_id"], entry)
            elif event in (EventType.INVESTIGATOR_EXITED, EventType.INVESTIGATOR_TIMEOUT):
                if data.get("instance_id"):
                    terminated.add(data["instance_id"])
            elif event == EventType.SESSION_COMPLETED and completed is None:
                completed = entry
            elif (event == EventType.SESSION_FAILED or _is_cancel_marker(entry)) and terminal is None:
                terminal = entry

        if terminal is not None:
            data = terminal.data or {}
            if terminal.event == EventType.SESSION_FAILED:
                status = SessionStatus.FAILED
                reason = data.get("reason") or terminal.message
                stage = "failed"
            else:
                status = SessionStatus.CANCELLED
                reason = data.get("reason") or "cancelled by client"
                stage = "cancelled"
            ended_at = terminal.timestamp
            solution = None
        elif completed is not None:
            status = SessionStatus.COMPLETED
            reason = None
            stage = "completed"
            ended_at = completed.timestamp
            solution = (completed.data or {}).get("solution")
        else:
            status = SessionStatus.IN_PROGRESS
            reason = None
            stage = stage or "starting"
            ended_at = None
            solution = None

        started_at = metadata.started_at if metadata else entries[0].timestamp
        elapsed = ((ended_at or now) - started_at).total_seconds()

        # Once the session has failed or been cancelled its investigators are
        # terminated before the terminal entry is written
        session_over = status in (SessionStatus.FAILED, SessionStatus.CANCELLED)
        investigators = [
            self._summarize_instance(session_id, instance_id, entry, instance_id in terminated or session_over, now)
            for instance_id, entry in spawned.items()
        ]

        return Pulse(
            session_id=session_id,
            status=status,
            stage=stage,
            solution=solution,
            reason=reason,
            started_at=started_at,
            elapsed_seconds=max(0.0, elapsed),
            investigators=investigators,
        )

    def _summarize_instance(
        self,
        session_id: str,
        instance_id: str,
        spawn: LogEntry,
        terminated: bool,
        now: datetime,
    ) -> InvestigatorSummary:
        data = spawn.data or {}
        hypothesis = data.get("hypothesis", "")
        branch = data.get("branch")

        report = self.store.read_report(self.store.session_paths(session_id).report(instance_id))
        if report is not None:
            return InvestigatorSummary(
                instance_id=instance_id,
                hypothesis=report.hypothesis or hypothesis,
                branch=branch,
                state=InvestigatorState.REPORTED,
                confirmed=report.confirmed,
                summary=_summarize(report.investigation) if report.investigation else None,
                confidence=report.confidence,
            )

        deadline = _parse_time(data.get("deadline"))
        expired = deadline is not None and deadline <= now
        state = InvestigatorState.TERMINATED_UNREPORTED if terminated or expired else InvestigatorState.RUNNING
        return InvestigatorSummary(
            instance_id=instance_id,
            hypothesis=hypothesis,
            branch=branch,
            state=state,
        )
