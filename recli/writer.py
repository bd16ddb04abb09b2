"""
Command Log Writer - Append-only persistence of finished command events

Each session has one commands.jsonl file holding one LogEventV1 per line.
A record is written with a single append of the whole line followed by an
fsync, so a reader sees either the complete record or nothing of it. The
writer holds an exclusive lock on the file for as long as it is open.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple

from .errors import OffsetOrderError, WriteError
from .models import UNKNOWN_CWD, CommandEntry
from .schema import LogEventV1, format_timestamp, parse_rfc3339


logger = logging.getLogger(__name__)

COMMANDS_FILE = "commands.jsonl"


@contextmanager
def atomic_write(path):
    """
    Open a temp file beside `path` for writing text. It replaces `path`
    only once the block has finished and the data is synced; on error
    `path` is left untouched.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_json_atomic(path: Path, data: dict):
    """Replace `path` with the JSON encoding of `data`."""
    with atomic_write(path) as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def iter_lines(path) -> Iterator[Tuple[int, str, bool]]:
    """
    Yield (line_no, text, complete) for every line of a log file.

    `complete` is False only for a final line without a trailing newline,
    i.e. a record torn by a crash.
    """
    with open(path, "rb") as f:
        for line_no, raw in enumerate(f, start=1):
            complete = raw.endswith(b"\n")
            text = raw.rstrip(b"\n").decode("utf-8", errors="replace")
            yield line_no, text, complete


def read_records(path) -> Iterator[dict]:
    """Yield decoded records of complete lines, skipping undecodable ones."""
    for line_no, text, complete in iter_lines(path):
        if not complete or not text.strip():
            continue
        try:
            record = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("%s:%d: skipping undecodable record", path, line_no)
            continue
        if isinstance(record, dict):
            yield record


class CommandLogWriter:
    """
    Appends LogEventV1 records to a session's commands file.

    Usage:
        with CommandLogWriter(session_dir / "commands.jsonl") as writer:
            writer.append(event)
    """

    def __init__(self, path, fsync: bool = True):
        self.path = Path(path)
        self.fsync = fsync
        self._fd: Optional[int] = None
        self._lock = threading.Lock()
        self._last_offset = -1
        self._count = 0

    @property
    def last_offset(self) -> int:
        return self._last_offset

    @property
    def count(self) -> int:
        """Records appended through this writer."""
        return self._count

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def open(self) -> "CommandLogWriter":
        if self._fd is not None:
            return self

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        except OSError as exc:
            raise WriteError(f"cannot open {self.path}: {exc.strerror or exc}") from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            raise WriteError(f"{self.path} is already held by another writer") from exc

        self._fd = fd
        self._repair_torn_tail()
        self._last_offset = self._read_last_offset()
        return self

    def close(self):
        with self._lock:
            if self._fd is None:
                return
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None

    def append(self, event: LogEventV1):
        """
        Append one event.

        Raises:
            OffsetOrderError: offset is not greater than the last written one
            WriteError: the record could not be written; the file is left
                as it was before the call
        """
        with self._lock:
            if self._fd is None:
                raise WriteError(f"writer for {self.path} is not open")
            if event.offset is None:
                raise OffsetOrderError(f"event {event.id} has no offset")
            if event.offset <= self._last_offset:
                raise OffsetOrderError(
                    f"offset {event.offset} does not follow last written offset {self._last_offset}"
                )

            line = json.dumps(event.to_json_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"
            data = memoryview(line.encode("utf-8"))
            size = os.fstat(self._fd).st_size

            try:
                while data:
                    written = os.write(self._fd, data)
                    data = data[written:]
                if self.fsync:
                    os.fsync(self._fd)
            except OSError as exc:
                self._rollback(size)
                raise WriteError(
                    f"failed to append offset {event.offset} to {self.path}: {exc.strerror or exc}"
                ) from exc

            self._last_offset = event.offset
            self._count += 1

    def _rollback(self, size: int):
        try:
            os.ftruncate(self._fd, size)
        except OSError as exc:
            logger.error("Could not roll back partial record in %s: %s", self.path, exc)

    def _repair_torn_tail(self):
        """Cut off a final record left without its newline by a crash."""
        size = os.fstat(self._fd).st_size
        if size == 0:
            return

        keep = 0
        with open(self.path, "rb") as f:
            f.seek(size - 1)
            if f.read(1) == b"\n":
                return
            pos = size
            while pos > 0:
                step = min(65536, pos)
                pos -= step
                f.seek(pos)
                idx = f.read(step).rfind(b"\n")
                if idx >= 0:
                    keep = pos + idx + 1
                    break

        logger.warning("Truncating torn record at end of %s (%d bytes)", self.path, size - keep)
        os.ftruncate(self._fd, keep)

    def _read_last_offset(self) -> int:
        last = -1
        for record in read_records(self.path):
            offset = record.get("offset")
            if isinstance(offset, int) and offset > last:
                last = offset
        return last

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class InflightJournal:
    """
    Crash journal for the command that is currently running.

    The detector keeps the open CommandEntry in memory; this journal keeps
    just enough of it on disk that a session killed without warning can
    still record the command as finished with an unknown exit status.
    """

    STATE_FILE = "inflight.json"
    OUTPUT_FILE = "inflight.out"

    def __init__(self, session_dir):
        self.session_dir = Path(session_dir)
        self.state_path = self.session_dir / self.STATE_FILE
        self.output_path = self.session_dir / self.OUTPUT_FILE
        self._out = None

    def begin(self, entry: CommandEntry):
        self._close_output()
        write_json_atomic(self.state_path, {
            "command": entry.command,
            "cwd": entry.cwd,
            "started_at": format_timestamp(entry.started_at),
            "offset": entry.offset,
        })
        self._out = open(self.output_path, "wb")

    def append_output(self, chunk: bytes):
        if self._out is None:
            return
        self._out.write(chunk)
        self._out.flush()

    def clear(self):
        self._close_output()
        self.state_path.unlink(missing_ok=True)
        self.output_path.unlink(missing_ok=True)

    def close(self):
        self._close_output()

    def _close_output(self):
        if self._out is not None:
            self._out.close()
            self._out = None

    @property
    def pending(self) -> bool:
        return self.state_path.exists()

    def load(self) -> Optional[CommandEntry]:
        """Rebuild the journaled command as an interrupted entry, or None."""
        if not self.state_path.exists():
            return None

        try:
            with open(self.state_path, encoding="utf-8") as f:
                state = json.load(f)
            started_at = parse_rfc3339(state["started_at"])
            offset = int(state["offset"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable in-flight journal %s: %s", self.state_path, exc)
            return None

        output = bytearray()
        mtime = self.state_path.stat().st_mtime
        if self.output_path.exists():
            output = bytearray(self.output_path.read_bytes())
            mtime = max(mtime, self.output_path.stat().st_mtime)

        finished_at = max(datetime.fromtimestamp(mtime, timezone.utc), started_at)
        return CommandEntry(
            command=state.get("command", ""),
            cwd=state.get("cwd", UNKNOWN_CWD),
            started_at=started_at,
            offset=offset,
            finished_at=finished_at,
            exit_code=None,
            output=output,
            interrupted=True,
        )
