"""
Recorder - One recorded shell session, end to end

    PTY master ──> real terminal
               └─> OutputPipeline (single consumer) ──> CommandBoundaryDetector
                                                            └─> LogEventV1 ──> CommandLogWriter
"""

import logging
import os
import queue
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .config import RecliConfig
from .detector import BoundaryMarker, CommandBoundaryDetector
from .errors import SpawnError, WriteError
from .heartbeat import HeartbeatService
from .models import CommandEntry, SessionMetadata
from .pty_driver import PtySessionDriver, SessionHandle
from .schema import parse_rfc3339, to_event
from .session import SessionManager
from .shell_integration import prepare_shell
from .writer import CommandLogWriter, InflightJournal


logger = logging.getLogger(__name__)

_CLOSE = object()


class OutputPipeline:
    """
    Single-consumer queue between the relay loop and the detector.

    The relay loop only enqueues, so terminal echo never waits on disk
    writes; the one consumer thread preserves arrival order.
    """

    def __init__(self, consume: Callable[[bytes], None]):
        self.consume = consume
        self.errors: List[Exception] = []
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._run_loop, name="recli-pipeline", daemon=True)
        self._thread.start()

    def submit(self, data: bytes):
        self._queue.put(data)

    def close(self):
        """Process everything already submitted, then stop the consumer."""
        self._queue.put(_CLOSE)
        if self._thread:
            self._thread.join()
            self._thread = None

    def _run_loop(self):
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            try:
                self.consume(item)
            except WriteError as e:
                logger.error("%s", e)
                self.errors.append(e)
            except Exception as e:
                logger.exception("Output pipeline failed on a %d byte chunk", len(item))
                self.errors.append(e)


@dataclass
class SessionResult:
    session_id: str
    exit_status: Optional[int]
    signaled: bool = False
    commands_written: int = 0
    write_errors: List[Exception] = field(default_factory=list)
    integrated: bool = True
    metadata: Optional[SessionMetadata] = None


def recover_session(manager: SessionManager, metadata: SessionMetadata) -> Optional[CommandEntry]:
    """
    Close an abandoned session: flush its in-flight command (exit status
    unknown) into the log, then mark it stopped and ungraceful.
    """
    session_dir = manager.session_dir(metadata.session_id)
    journal = InflightJournal(session_dir)
    entry = journal.load()

    if entry is not None:
        if metadata.last_seen_at:
            last_seen = parse_rfc3339(metadata.last_seen_at)
            if last_seen > entry.finished_at:
                entry.finished_at = last_seen

        with CommandLogWriter(metadata.log_path) as writer:
            if entry.offset > writer.last_offset:
                writer.append(to_event(entry, metadata))
            else:
                logger.info("In-flight command %d of %s was already logged", entry.offset, metadata.session_id)
        journal.clear()

    manager.end_session(metadata.session_id, ungraceful=True)
    logger.warning(
        "AbandonedSessionRecovery: session %s (pid %s) was left active; closed it",
        metadata.session_id, metadata.pid,
    )
    return entry


def recover_sessions(manager: SessionManager) -> List[SessionMetadata]:
    """Recover every abandoned session under the manager's root."""
    recovered = []
    for metadata in manager.find_abandoned():
        recover_session(manager, metadata)
        recovered.append(manager.get(metadata.session_id))
    return recovered


class RecordingSession:
    """
    Records one interactive shell session.

    This is the primary interface for using recli:
    - Recovers sessions a previous recorder left behind
    - Starts the shell on a PTY with the prompt hook installed
    - Turns its output into command records in the session log
    - Finalizes the session however it ends

    Usage:
        session = RecordingSession(RecliConfig.load())
        result = session.run()
    """

    def __init__(
        self,
        config: Optional[RecliConfig] = None,
        driver_factory: Callable[..., PtySessionDriver] = PtySessionDriver,
        on_hotkey: Optional[Callable[[SessionHandle], None]] = None,
    ):
        self.config = config or RecliConfig()
        self.driver_factory = driver_factory
        self.on_hotkey = on_hotkey
        self.manager = SessionManager(self.config.log_root)

        self.session_id: Optional[str] = None
        self.metadata: Optional[SessionMetadata] = None
        self.driver: Optional[PtySessionDriver] = None
        self.handle: Optional[SessionHandle] = None
        self._writer: Optional[CommandLogWriter] = None
        self._journal: Optional[InflightJournal] = None

    def _on_finished(self, entry: CommandEntry):
        self._writer.append(to_event(entry, self.metadata))
        self._journal.clear()

    def stop(self):
        """Ask a running session to end. Safe to call from a signal handler."""
        if self.driver is not None and self.handle is not None:
            self.driver.request_stop(self.handle)

    def _on_signal(self, signum, frame):
        logger.info("Received signal %d, stopping session %s", signum, self.session_id)
        self.stop()

    def run(self, shell: Optional[str] = None, announce: Callable[[str], None] = None) -> SessionResult:
        """
        Record a session until the shell exits or the recorder is told to stop.

        Raises:
            ValueError: the configuration is unusable (no session is created)
            SpawnError: the shell could not be started
            WriteError: the session log could not be opened

        A session that fails to start is closed before the error propagates.
        """
        config = self.config
        shell = shell or config.resolved_shell
        hotkey = config.hotkey_byte
        marker = BoundaryMarker.generate(config.marker_code)

        for metadata in recover_sessions(self.manager):
            logger.warning("Recovered abandoned session %s", metadata.session_id)

        self.session_id = self.manager.begin_session(config.resolved_host, shell=shell, pid=os.getpid())
        self.metadata = self.manager.get(self.session_id)
        session_dir = self.manager.session_dir(self.session_id)

        try:
            launch = prepare_shell(shell, session_dir, marker, session_id=self.session_id)
            self._writer = CommandLogWriter(self.metadata.log_path, fsync=config.fsync).open()
            self._journal = InflightJournal(session_dir)
            detector = CommandBoundaryDetector(
                marker,
                on_finished=self._on_finished,
                on_started=self._journal.begin,
                on_output=self._journal.append_output,
                max_output_bytes=config.max_output_bytes,
                start_offset=self._writer.last_offset + 1,
            )
            pipeline = OutputPipeline(detector.feed)
            self.driver = self.driver_factory(
                on_output=pipeline.submit,
                hotkey=hotkey,
                on_hotkey=self.on_hotkey,
            )
            self.handle = self.driver.start(launch.shell_path, launch.env, launch.args)
        except Exception as e:
            logger.error("Session %s failed to start: %s", self.session_id, e)
            if self._writer is not None:
                self._writer.close()
            status = 127 if isinstance(e, SpawnError) else None
            self.manager.end_session(self.session_id, exit_status=status)
            raise

        if announce:
            announce(f"recli: recording session {self.session_id} ({launch.shell_name})")
            if not launch.integrated:
                announce(f"recli: warning: no prompt hook for {launch.shell_name}; commands will not be logged")

        heartbeat = None
        if config.heartbeat_enabled:
            heartbeat = HeartbeatService(
                interval_seconds=config.heartbeat_interval_seconds,
                on_heartbeat=lambda: self.manager.touch(self.session_id),
            )

        previous = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGTERM, signal.SIGHUP):
                previous[signum] = signal.signal(signum, self._on_signal)

        pipeline.start()
        if heartbeat:
            heartbeat.start()

        exit_status = None
        try:
            exit_status = self.driver.run(self.handle)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, signal.SIG_DFL if handler is None else handler)
            if heartbeat:
                heartbeat.stop()
            pipeline.close()
            self._finalize(detector, pipeline, self.handle.finished_at)

        result = SessionResult(
            session_id=self.session_id,
            exit_status=exit_status,
            signaled=self.handle.signaled,
            commands_written=self._writer.count,
            write_errors=list(pipeline.errors),
            integrated=launch.integrated,
            metadata=self.manager.get(self.session_id),
        )
        if announce:
            announce(f"recli: session ended, logs saved to: {session_dir}")
        return result

    def _finalize(self, detector: CommandBoundaryDetector, pipeline: OutputPipeline, finished_at: Optional[datetime]):
        try:
            try:
                detector.close(finished_at=finished_at)
            except WriteError as e:
                logger.error("%s", e)
                pipeline.errors.append(e)
        finally:
            self._journal.close()
            self._writer.close()
            status = self.handle.exit_status if self.handle else None
            self.manager.end_session(self.session_id, exit_status=status)

    @property
    def session_dir(self) -> Optional[Path]:
        if self.session_id is None:
            return None
        return self.manager.session_dir(self.session_id)
