"""
Models - Command entries and session metadata
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


UNKNOWN_CWD = "unknown"

STATUS_ACTIVE = "active"
STATUS_STOPPED = "stopped"


@dataclass
class CommandEntry:
    """One captured command execution."""
    command: str
    cwd: str
    started_at: datetime
    offset: int = -1
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None  # None means unknown
    output: bytearray = field(default_factory=bytearray)
    truncated: bool = False
    interrupted: bool = False

    def output_text(self) -> str:
        return bytes(self.output).decode("utf-8", errors="replace")


@dataclass
class SessionMetadata:
    """
    Identity and lifecycle of one recorded session.

    Persisted as session.json inside the session directory and owned
    exclusively by the SessionManager.
    """
    session_id: str
    host: str
    created_at: str
    log_path: str
    status: str = STATUS_ACTIVE
    pid: Optional[int] = None
    shell: Optional[str] = None
    stopped_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    exit_status: Optional[int] = None
    ungraceful: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "host": self.host,
            "created_at": self.created_at,
            "status": self.status,
            "log_path": self.log_path,
            "pid": self.pid,
            "shell": self.shell,
            "stopped_at": self.stopped_at,
            "last_seen_at": self.last_seen_at,
            "exit_status": self.exit_status,
            "ungraceful": self.ungraceful,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMetadata":
        return cls(
            session_id=data["session_id"],
            host=data["host"],
            created_at=data["created_at"],
            log_path=data["log_path"],
            status=data.get("status", STATUS_ACTIVE),
            pid=data.get("pid"),
            shell=data.get("shell"),
            stopped_at=data.get("stopped_at"),
            last_seen_at=data.get("last_seen_at"),
            exit_status=data.get("exit_status"),
            ungraceful=data.get("ungraceful", False),
        )
