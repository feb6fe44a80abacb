"""Tests for pulse reconstruction from the log trail.

The reconstructor is a pure function of the files on disk, so these tests
write log entries and reports directly and never run a loop.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from bugsquad.core.models import (
    EventType,
    InvestigatorState,
    LogEntry,
    Report,
    SessionMetadata,
    SessionStatus,
)
from bugsquad.core.status import StatusReconstructor
from bugsquad.core.store import LogStore

SESSION = "session-status"
STARTED = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def trail(store: LogStore):
    """Helper writing entries into one session's coordinator log."""
    store.write_metadata(
        SessionMetadata(session_id=SESSION, project_id="p", repo_path="/repo", error="boom", started_at=STARTED)
    )
    log_path = store.session_paths(SESSION).coordinator_log

    def write(event: EventType | None, actor: str = "coordinator", offset: float = 0, message: str = "", **data):
        payload = dict(data)
        if event is not None:
            payload["event"] = event.value
        store.append(
            log_path,
            LogEntry(
                timestamp=STARTED + timedelta(seconds=offset),
                actor=actor,
                message=message or (event.value if event else "note"),
                data=payload or None,
            ),
        )

    return write


def spawn(trail, instance_id: str, hypothesis: str = "h", deadline_offset: float = 300, offset: float = 1):
    trail(
        EventType.INVESTIGATOR_SPAWNED,
        actor="supervisor",
        offset=offset,
        instance_id=instance_id,
        hypothesis=hypothesis,
        branch=f"debug-{SESSION}-{instance_id[-1]}",
        pid=4242,
        deadline=(STARTED + timedelta(seconds=deadline_offset)).isoformat(),
    )


@pytest.fixture
def reconstructor(store: LogStore) -> StatusReconstructor:
    return StatusReconstructor(store)


# =============================================================================
# Session Status
# =============================================================================


class TestSessionStatus:
    def test_unknown_session(self, reconstructor: StatusReconstructor):
        pulse = reconstructor.pulse("no-such-session")
        assert pulse.status == SessionStatus.UNKNOWN
        assert "no-such-session" in pulse.reason
        assert pulse.investigators == []

    def test_metadata_only_is_in_progress(self, reconstructor, trail):
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=5))
        assert pulse.status == SessionStatus.IN_PROGRESS
        assert pulse.stage == "starting"
        assert pulse.elapsed_seconds == pytest.approx(5)

    def test_latest_stage_wins(self, reconstructor, trail):
        trail(EventType.SESSION_STARTED, stage="started")
        trail(EventType.TURN_STARTED, stage="awaiting_model", offset=1)
        trail(None, stage="investigating", offset=2)
        trail(EventType.MODEL_REPLY, offset=3)
        assert reconstructor.pulse(SESSION).stage == "investigating"

    def test_completed_with_solution(self, reconstructor, trail):
        trail(EventType.SESSION_STARTED, stage="started")
        trail(EventType.SESSION_COMPLETED, offset=30, stage="completed", solution="Use items[-1]", confidence=97)

        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(hours=1))
        assert pulse.status == SessionStatus.COMPLETED
        assert pulse.solution == "Use items[-1]"
        assert pulse.stage == "completed"
        # Elapsed time stops at the terminal entry
        assert pulse.elapsed_seconds == pytest.approx(30)

    def test_failed(self, reconstructor, trail):
        trail(EventType.SESSION_FAILED, offset=10, stage="failed", reason="max runtime exceeded")
        pulse = reconstructor.pulse(SESSION)
        assert pulse.status == SessionStatus.FAILED
        assert pulse.reason == "max runtime exceeded"
        assert pulse.solution is None

    def test_failed_outranks_completed(self, reconstructor, trail):
        trail(EventType.SESSION_COMPLETED, offset=5, solution="fix")
        trail(EventType.SESSION_FAILED, offset=6, reason="late failure")
        assert reconstructor.pulse(SESSION).status == SessionStatus.FAILED

    def test_cancelled_by_client(self, reconstructor, trail):
        trail(EventType.SESSION_CANCELLED, actor="service", offset=4, stage="cancelled", terminated_pids=[1])
        pulse = reconstructor.pulse(SESSION)
        assert pulse.status == SessionStatus.CANCELLED
        assert pulse.stage == "cancelled"

    def test_coordinator_stop_marker_counts_as_cancelled(self, reconstructor, trail):
        trail(EventType.COORDINATOR_STOPPED, offset=4, state="cancelled")
        assert reconstructor.pulse(SESSION).status == SessionStatus.CANCELLED

    def test_first_terminal_entry_wins(self, reconstructor, trail):
        trail(EventType.SESSION_CANCELLED, actor="service", offset=4)
        trail(EventType.SESSION_FAILED, offset=5, reason="after cancel")
        assert reconstructor.pulse(SESSION).status == SessionStatus.CANCELLED

    def test_log_without_metadata(self, store: LogStore, reconstructor):
        """A log trail alone is enough; start time falls back to the first entry."""
        path = store.session_paths("orphan").coordinator_log
        store.append(path, LogEntry(timestamp=STARTED, actor="coordinator", message="x", data={"stage": "started"}))
        pulse = reconstructor.pulse("orphan", now=STARTED + timedelta(seconds=2))
        assert pulse.status == SessionStatus.IN_PROGRESS
        assert pulse.started_at == STARTED


# =============================================================================
# Investigators
# =============================================================================


class TestInvestigatorClassification:
    def test_running_before_deadline(self, reconstructor, trail):
        spawn(trail, "inv-1", hypothesis="Off by one")
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=10))
        inv = pulse.investigators[0]
        assert inv.instance_id == "inv-1"
        assert inv.state == InvestigatorState.RUNNING
        assert inv.hypothesis == "Off by one"
        assert pulse.running == [inv]

    def test_exited_without_report(self, reconstructor, trail):
        spawn(trail, "inv-1")
        trail(EventType.INVESTIGATOR_EXITED, actor="supervisor", offset=20, instance_id="inv-1", reason="exited")
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=30))
        assert pulse.investigators[0].state == InvestigatorState.TERMINATED_UNREPORTED

    def test_timed_out(self, reconstructor, trail):
        spawn(trail, "inv-1")
        trail(EventType.INVESTIGATOR_TIMEOUT, actor="supervisor", offset=300, instance_id="inv-1")
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=301))
        assert pulse.investigators[0].state == InvestigatorState.TERMINATED_UNREPORTED

    def test_deadline_elapsed_without_marker(self, reconstructor, trail):
        spawn(trail, "inv-1", deadline_offset=60)
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=61))
        assert pulse.investigators[0].state == InvestigatorState.TERMINATED_UNREPORTED

    def test_reported(self, store: LogStore, reconstructor, trail):
        spawn(trail, "inv-1", hypothesis="Off by one")
        store.write_report_once(
            store.session_paths(SESSION).report("inv-1"),
            Report(hypothesis="Off by one", confirmed=True, investigation="Reproduced " * 100, confidence=91),
        )
        # A report counts even after the exit marker
        trail(EventType.INVESTIGATOR_EXITED, actor="supervisor", offset=20, instance_id="inv-1")

        pulse = reconstructor.pulse(SESSION)
        inv = pulse.investigators[0]
        assert inv.state == InvestigatorState.REPORTED
        assert pulse.reported == [inv]
        assert pulse.running == []
        assert inv.confirmed is True
        assert inv.confidence == 91
        assert len(inv.summary) <= 300
        assert inv.summary.endswith("...")

    def test_session_failure_terminates_all(self, reconstructor, trail):
        spawn(trail, "inv-1")
        spawn(trail, "inv-2", offset=2)
        trail(EventType.SESSION_FAILED, offset=5, reason="model call failed")
        pulse = reconstructor.pulse(SESSION, now=STARTED + timedelta(seconds=6))
        assert {i.state for i in pulse.investigators} == {InvestigatorState.TERMINATED_UNREPORTED}

    def test_spawn_order_preserved(self, reconstructor, trail):
        for n in (1, 2, 3):
            spawn(trail, f"inv-{n}", offset=n)
        ids = [i.instance_id for i in reconstructor.pulse(SESSION).investigators]
        assert ids == ["inv-1", "inv-2", "inv-3"]


# =============================================================================
# Purity
# =============================================================================


class TestPurity:
    def test_repeated_calls_are_identical(self, reconstructor, trail):
        trail(EventType.SESSION_STARTED, stage="started")
        spawn(trail, "inv-1")
        now = STARTED + timedelta(seconds=42)
        assert reconstructor.pulse(SESSION, now=now) == reconstructor.pulse(SESSION, now=now)

    def test_new_entries_visible_immediately(self, reconstructor, trail):
        trail(EventType.SESSION_STARTED, stage="started")
        assert reconstructor.pulse(SESSION).status == SessionStatus.IN_PROGRESS
        trail(EventType.SESSION_COMPLETED, offset=3, solution="fix")
        assert reconstructor.pulse(SESSION).status == SessionStatus.COMPLETED

    def test_fresh_reconstructor_sees_same_state(self, store: LogStore, trail):
        trail(EventType.SESSION_FAILED, offset=1, reason="x")
        now = STARTED + timedelta(seconds=2)
        assert StatusReconstructor(store).pulse(SESSION, now=now) == StatusReconstructor(store).pulse(SESSION, now=now)
