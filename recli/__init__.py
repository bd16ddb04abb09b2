"""
recli - Passive Recorder for Interactive Terminal Sessions

Runs a shell on a pseudo-terminal, detects command boundaries from an
out-of-band prompt marker, and appends one structured record per command
to a per-session JSONL log.
"""

__version__ = "0.1.0"

from .config import RecliConfig
from .detector import BoundaryMarker, CommandBoundaryDetector
from .errors import (
    EventValidationError,
    OffsetOrderError,
    RecliError,
    SessionNotFoundError,
    SessionStateError,
    SpawnError,
    TimestampError,
    WriteError,
)
from .heartbeat import HeartbeatService
from .models import CommandEntry, SessionMetadata
from .pty_driver import PtySessionDriver, SessionHandle
from .recorder import RecordingSession, SessionResult, recover_sessions
from .schema import LogEventV1, to_event
from .session import SessionManager
from .validator import normalize_log, validate_event, validate_log
from .writer import CommandLogWriter

__all__ = [
    "RecordingSession",
    "SessionResult",
    "recover_sessions",
    "PtySessionDriver",
    "SessionHandle",
    "BoundaryMarker",
    "CommandBoundaryDetector",
    "CommandEntry",
    "SessionMetadata",
    "SessionManager",
    "LogEventV1",
    "to_event",
    "CommandLogWriter",
    "validate_event",
    "validate_log",
    "normalize_log",
    "HeartbeatService",
    "RecliConfig",
    "RecliError",
    "SpawnError",
    "WriteError",
    "OffsetOrderError",
    "EventValidationError",
    "TimestampError",
    "SessionNotFoundError",
    "SessionStateError",
]
