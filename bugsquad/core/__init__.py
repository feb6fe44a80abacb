"""Core modules for the debugging supervisor."""

from bugsquad.core.errors import BugsquadError, ConfigError, ProviderError
from bugsquad.core.models import (
    EventType,
    LogEntry,
    Observation,
    Pulse,
    Report,
    SessionStatus,
)
from bugsquad.core.store import LogStore

__all__ = [
    "BugsquadError",
    "ConfigError",
    "EventType",
    "LogEntry",
    "LogStore",
    "Observation",
    "ProviderError",
    "Pulse",
    "Report",
    "SessionStatus",
]
