"""
Session Manager - Session identity and directory lifecycle

Layout under the log root:

    <root>/<session_id>/session.json     SessionMetadata
    <root>/<session_id>/commands.jsonl   LogEventV1 records (CommandLogWriter)
"""

import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .errors import SessionNotFoundError, SessionStateError
from .models import STATUS_ACTIVE, STATUS_STOPPED, SessionMetadata
from .schema import format_timestamp, utc_now
from .writer import COMMANDS_FILE, write_json_atomic


logger = logging.getLogger(__name__)

METADATA_FILE = "session.json"


def generate_session_id(now: Optional[datetime] = None) -> str:
    """Sortable, collision-resistant id: UTC start time plus 48 random bits."""
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:12]}"


def process_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionManager:
    """
    Owns session ids, session directories and their metadata files.

    Usage:
        manager = SessionManager(Path("~/.recli/logs").expanduser())
        session_id = manager.begin_session("myhost")
        ...
        manager.end_session(session_id, exit_status=0)
    """

    def __init__(self, root):
        self.root = Path(root)

    def session_dir(self, session_id: str) -> Path:
        if not session_id or os.sep in session_id or session_id in (".", ".."):
            raise SessionNotFoundError(session_id)
        return self.root / session_id

    def _metadata_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / METADATA_FILE

    def _save(self, metadata: SessionMetadata):
        write_json_atomic(self._metadata_path(metadata.session_id), metadata.to_dict())

    # -- lifecycle --------------------------------------------------------

    def begin_session(self, host: str, shell: Optional[str] = None, pid: Optional[int] = None) -> str:
        """
        Allocate a new session and persist its metadata with status=active.

        Returns:
            The new session id.
        """
        self.root.mkdir(parents=True, exist_ok=True)

        session_id = generate_session_id()
        while self.session_dir(session_id).exists():
            session_id = generate_session_id()

        directory = self.session_dir(session_id)
        directory.mkdir(parents=True, exist_ok=True)

        metadata = SessionMetadata(
            session_id=session_id,
            host=host,
            created_at=format_timestamp(utc_now()),
            log_path=str(directory / COMMANDS_FILE),
            status=STATUS_ACTIVE,
            pid=pid if pid is not None else os.getpid(),
            shell=shell,
        )
        self._save(metadata)
        logger.info("Session %s started on %s", session_id, host)
        return session_id

    def end_session(
        self,
        session_id: str,
        exit_status: Optional[int] = None,
        ungraceful: bool = False,
    ) -> SessionMetadata:
        """Mark a session stopped. Calling it on a stopped session changes nothing."""
        metadata = self.get(session_id)
        if not metadata.is_active:
            return metadata

        metadata.status = STATUS_STOPPED
        metadata.stopped_at = format_timestamp(utc_now())
        metadata.exit_status = exit_status
        metadata.ungraceful = ungraceful
        self._save(metadata)

        if ungraceful:
            logger.warning("Session %s closed after ungraceful termination", session_id)
        else:
            logger.info("Session %s stopped (exit status %s)", session_id, exit_status)
        return metadata

    def touch(self, session_id: str) -> SessionMetadata:
        """Record that the session's recorder is still alive."""
        metadata = self.get(session_id)
        metadata.last_seen_at = format_timestamp(utc_now())
        self._save(metadata)
        return metadata

    # -- queries ----------------------------------------------------------

    def exists(self, session_id: str) -> bool:
        try:
            return self._metadata_path(session_id).exists()
        except SessionNotFoundError:
            return False

    def get(self, session_id: str) -> SessionMetadata:
        path = self._metadata_path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        with open(path, encoding="utf-8") as f:
            return SessionMetadata.from_dict(json.load(f))

    def list_sessions(self) -> List[SessionMetadata]:
        """All sessions, newest first."""
        if not self.root.exists():
            return []

        sessions = []
        for path in self.root.iterdir():
            meta_path = path / METADATA_FILE
            if not meta_path.is_file():
                continue
            try:
                with open(meta_path, encoding="utf-8") as f:
                    sessions.append(SessionMetadata.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable session metadata %s: %s", meta_path, exc)

        sessions.sort(key=lambda m: (m.created_at, m.session_id), reverse=True)
        return sessions

    def latest(self) -> Optional[SessionMetadata]:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def active_sessions(self) -> List[SessionMetadata]:
        return [m for m in self.list_sessions() if m.is_active]

    def is_abandoned(self, metadata: SessionMetadata) -> bool:
        """Active on disk, but its recorder process is gone."""
        return metadata.is_active and not process_alive(metadata.pid)

    def find_abandoned(self) -> List[SessionMetadata]:
        return [m for m in self.active_sessions() if self.is_abandoned(m)]

    # -- removal ----------------------------------------------------------

    def delete_session(self, session_id: str):
        """Remove a stopped session's directory. Live sessions are refused."""
        metadata = self.get(session_id)
        if metadata.is_active and process_alive(metadata.pid):
            raise SessionStateError(f"session {session_id} is still recording")
        shutil.rmtree(self.session_dir(session_id))
        logger.info("Session %s deleted", session_id)
