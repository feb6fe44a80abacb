"""Append-only log and write-once report store.

The JSONL log files are the source of truth for everything that happened in a
session. Nothing is ever rewritten:
- ``append`` is the only mutation of a log
- ``write_report_once`` refuses to touch an existing report
- observations and durable notes are appended under a file lock because
  several processes may write them concurrently

Layout (under ``data_dir``):
    sessions/<session_id>/session.json
    sessions/<session_id>/logs/<writer>.jsonl
    sessions/<session_id>/reports/<instance_id>.json
    sessions/<session_id>/observations/<agent_id>.jsonl
    projects/<project_id>/notes/<name>.md
"""

import hashlib
import logging
import os
import re
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock
from pydantic import ValidationError

from bugsquad.core.errors import ReportExistsError
from bugsquad.core.models import LogEntry, Observation, Report, SessionMetadata

logger = logging.getLogger(__name__)

COORDINATOR_ACTOR = "coordinator"
NOTE_LOCK_TIMEOUT = 10


def sanitize_id(value: str) -> str:
    """Sanitize an id for use as a file or directory name.

    Prevents path traversal via session, instance or agent ids.
    """
    sanitized = re.sub(r"[/\\\x00]", "-", value)
    sanitized = sanitized.lstrip(".")
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "-", sanitized)
    sanitized = sanitized[:96]
    if not sanitized:
        raise ValueError(f"Invalid id: {value!r}")
    return sanitized


def project_id_for(repo_path: str | Path) -> str:
    """Stable per-repository id used to group durable notes across sessions."""
    resolved = str(Path(repo_path).expanduser().resolve())
    return hashlib.sha256(resolved.encode()).hexdigest()[:12]


@dataclass(frozen=True)
class SessionPaths:
    """File locations for one session's trail."""

    root: Path

    @property
    def metadata_file(self) -> Path:
        return self.root / "session.json"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def reports_dir(self) -> Path:
        return self.root / "reports"

    @property
    def observations_dir(self) -> Path:
        return self.root / "observations"

    @property
    def coordinator_log(self) -> Path:
        return self.logs_dir / f"{COORDINATOR_ACTOR}.jsonl"

    def investigator_log(self, instance_id: str) -> Path:
        return self.logs_dir / f"{sanitize_id(instance_id)}.jsonl"

    def investigator_stderr(self, instance_id: str) -> Path:
        return self.logs_dir / f"{sanitize_id(instance_id)}.stderr"

    def report(self, instance_id: str) -> Path:
        return self.reports_dir / f"{sanitize_id(instance_id)}.json"

    def observations(self, agent_id: str) -> Path:
        return self.observations_dir / f"{sanitize_id(agent_id)}.jsonl"

    def exists(self) -> bool:
        return self.root.is_dir()

    def ensure(self) -> None:
        for directory in (self.logs_dir, self.reports_dir, self.observations_dir):
            directory.mkdir(parents=True, exist_ok=True)


class LogStore:
    """Flat-file store for logs, reports, observations and notes.

    Thread-safe within one process: appends to the same path are serialized
    so one writer's entries keep their causal order. Readers never lock.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir).expanduser().absolute()
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            if path not in self._locks:
                self._locks[path] = threading.Lock()
            return self._locks[path]

    # --- Layout ---

    def session_paths(self, session_id: str) -> SessionPaths:
        return SessionPaths(self.data_dir / "sessions" / sanitize_id(session_id))

    def notes_dir(self, project_id: str) -> Path:
        return self.data_dir / "projects" / sanitize_id(project_id) / "notes"

    def worktree_root(self, session_id: str) -> Path:
        return self.data_dir / "worktrees" / sanitize_id(session_id)

    # --- Log primitives ---

    def append(self, path: Path, entry: LogEntry) -> None:
        """Append one entry. The only way a log ever changes."""
        line = entry.model_dump_json() + "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock_for(path):
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

    def read(self, path: Path) -> list[LogEntry]:
        """Read all entries in write order.

        A torn or corrupt line (e.g. a writer killed mid-append, even inside a
        multibyte character) is skipped.
        """
        if not path.exists():
            return []
        entries: list[LogEntry] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(LogEntry.model_validate_json(line))
                except ValidationError as e:
                    logger.debug(f"Skipping unreadable log line {path}:{lineno}: {e}")
        return entries

    # --- Reports ---

    def write_report_once(self, path: Path, report: Report) -> None:
        """Write a report atomically, failing if one already exists.

        The content is staged in a temp file and hard-linked into place:
        ``os.link`` fails on an existing target, so the first report wins and
        readers never observe a partially written file.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            raise ReportExistsError(f"Report already written: {path.name}")

        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                raise ReportExistsError(f"Report already written: {path.name}")
        finally:
            tmp_path.unlink(missing_ok=True)

    def read_report(self, path: Path) -> Report | None:
        if not path.exists():
            return None
        try:
            return Report.model_validate_json(path.read_text(encoding="utf-8", errors="replace"))
        except (ValidationError, OSError) as e:
            logger.warning(f"Unreadable report {path}: {e}")
            return None

    # --- Session metadata ---

    def write_metadata(self, metadata: SessionMetadata) -> SessionPaths:
        paths = self.session_paths(metadata.session_id)
        paths.ensure()
        paths.metadata_file.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
        return paths

    def read_metadata(self, session_id: str) -> SessionMetadata | None:
        path = self.session_paths(session_id).metadata_file
        if not path.exists():
            return None
        try:
            return SessionMetadata.model_validate_json(path.read_text(encoding="utf-8", errors="replace"))
        except (ValidationError, OSError) as e:
            logger.warning(f"Unreadable session metadata {path}: {e}")
            return None

    def list_sessions(self) -> list[str]:
        sessions_dir = self.data_dir / "sessions"
        if not sessions_dir.is_dir():
            return []
        return sorted(p.name for p in sessions_dir.iterdir() if (p / "session.json").exists())

    # --- Observations ---

    def append_observation(self, session_id: str, agent_id: str, observation: Observation) -> Path:
        path = self.session_paths(session_id).observations(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(path) + ".lock", timeout=NOTE_LOCK_TIMEOUT):
            with open(path, "a", encoding="utf-8") as f:
                f.write(observation.model_dump_json() + "\n")
        return path

    def read_observations(self, session_id: str, agent_id: str) -> list[Observation]:
        path = self.session_paths(session_id).observations(agent_id)
        if not path.exists():
            return []
        observations: list[Observation] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    observations.append(Observation.model_validate_json(line))
                except ValidationError as e:
                    logger.debug(f"Skipping unreadable observation in {path}: {e}")
        return observations

    # --- Durable notes (per project, across sessions) ---

    def append_note(self, project_id: str, name: str, text: str) -> None:
        """Append to a project note. Multiple sessions may write concurrently."""
        notes_dir = self.notes_dir(project_id)
        notes_dir.mkdir(parents=True, exist_ok=True)
        path = notes_dir / f"{sanitize_id(name)}.md"
        with FileLock(str(path) + ".lock", timeout=NOTE_LOCK_TIMEOUT):
            with open(path, "a", encoding="utf-8") as f:
                f.write(text.rstrip() + "\n\n")

    def read_note(self, project_id: str, name: str, max_chars: int = 4000) -> str:
        """Read the tail of a project note (most recent content wins)."""
        path = self.notes_dir(project_id) / f"{sanitize_id(name)}.md"
        if not path.exists():
            return ""
        text = path.read_text(encoding="utf-8", errors="replace")
        return text[-max_chars:] if len(text) > max_chars else text


class ObservationCursor:
    """Tracks which observations an agent has already consumed.

    Lives in the consuming loop only; the observation files stay immutable.
    """

    def __init__(self, store: LogStore, session_id: str, agent_id: str):
        self.store = store
        self.session_id = session_id
        self.agent_id = agent_id
        self._consumed = 0

    def poll(self) -> list[Observation]:
        """Return observations appended since the last poll, in arrival order."""
        observations = self.store.read_observations(self.session_id, self.agent_id)
        new = observations[self._consumed :]
        self._consumed = len(observations)
        return new
