"""
Command Boundary Detector - Turns the raw PTY output stream into commands

The PTY carries no command framing, so the shell is configured (see
shell_integration) to mark its prompts with invisible OSC sequences:

    ESC ] <code> ; <token> ; S ; <exit status> [; preexec] BEL   prompt start
    ESC ] <code> ; <token> ; P ; <exit status> ; <cwd> BEL       prompt end
    ESC ] <code> ; <token> ; K BEL                               continuation prompt end
    ESC ] <code> ; <token> ; C BEL                               command starts running

The token is a random per-session nonce. Output that merely looks like a
prompt, or that contains another session's marker, never opens or closes
a command.

When the prompt start carries the `preexec` flag the shell also emits C,
and everything typed between the prompt end and C is the command line,
however many continuation lines it spans. Without the flag the command
line ends at the first newline after the prompt end. Everything after the
command line, up to the next prompt, is that command's output.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .models import UNKNOWN_CWD, CommandEntry
from .schema import utc_now


logger = logging.getLogger(__name__)

DEFAULT_MARKER_CODE = 6973

BEL = b"\x07"
ST = b"\x1b\\"


class DetectorState(Enum):
    STARTING = "starting"                  # no prompt seen yet
    PROMPTING = "prompting"                # prompt text being drawn
    AWAITING_COMMAND = "awaiting_command"  # prompt shown, user is typing
    CAPTURING_OUTPUT = "capturing_output"  # command running
    CLOSED = "closed"


@dataclass(frozen=True)
class BoundaryMarker:
    """The out-of-band prompt marker shared by the detector and the shell hooks."""
    token: str
    code: int = DEFAULT_MARKER_CODE

    @classmethod
    def generate(cls, code: int = DEFAULT_MARKER_CODE) -> "BoundaryMarker":
        return cls(token=secrets.token_hex(8), code=code)

    @property
    def prefix(self) -> bytes:
        return f"\x1b]{self.code};{self.token};".encode("ascii")

    def prompt(self, exit_code=None, cwd: str = "") -> bytes:
        """Encode a prompt-end marker exactly as the shell hooks emit it."""
        status = "" if exit_code is None else str(exit_code)
        return self.prefix + f"P;{status};{cwd}".encode("utf-8") + BEL

    def prompt_start(self, exit_code=None, preexec: bool = False) -> bytes:
        status = "" if exit_code is None else str(exit_code)
        flag = ";preexec" if preexec else ""
        return self.prefix + f"S;{status}{flag}".encode("ascii") + BEL

    def continuation(self) -> bytes:
        return self.prefix + b"K" + BEL

    def execution(self) -> bytes:
        return self.prefix + b"C" + BEL


# CSI, OSC, and two-byte escape sequences
_ESCAPE = re.compile(
    r"\x1b\[(?P<params>[0-?]*)[ -/]*(?P<final>[@-~])"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?"
    r"|\x1b[()*+][ -~]"
    r"|\x1b[ -~]?"
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from text."""
    return _ESCAPE.sub("", text)


def _csi_count(params: str) -> int:
    head = params.split(";")[0]
    return int(head) if head.isdigit() and int(head) > 0 else 1


class LineEditor:
    """
    Replays echoed bytes of one input line the way a terminal would draw
    them, so editing keys (backspace, cursor moves, erase) leave the text
    the user actually submitted.
    """

    def __init__(self):
        self.chars: List[str] = []
        self.cursor = 0

    def feed(self, text: str):
        pos = 0
        for match in _ESCAPE.finditer(text):
            self._plain(text[pos:match.start()])
            if match.group("final"):
                self._csi(match.group("params"), match.group("final"))
            pos = match.end()
        self._plain(text[pos:])

    def _plain(self, text: str):
        for ch in text:
            if ch == "\b":
                self.cursor = max(0, self.cursor - 1)
            elif ch == "\x7f":
                if self.cursor > 0:
                    del self.chars[self.cursor - 1]
                    self.cursor -= 1
            elif ch == "\r":
                self.cursor = 0
            elif ch == "\t" or ch >= " ":
                self._put(ch)

    def _put(self, ch: str):
        if self.cursor > len(self.chars):
            self.chars.extend(" " * (self.cursor - len(self.chars)))
        if self.cursor == len(self.chars):
            self.chars.append(ch)
        else:
            self.chars[self.cursor] = ch
        self.cursor += 1

    def _csi(self, params: str, final: str):
        n = _csi_count(params)
        if final == "D":
            self.cursor = max(0, self.cursor - n)
        elif final == "C":
            self.cursor += n
        elif final == "K":
            mode = params or "0"
            if mode == "0":
                del self.chars[self.cursor:]
            elif mode == "1":
                for i in range(min(self.cursor + 1, len(self.chars))):
                    self.chars[i] = " "
            elif mode == "2":
                self.chars = []
        elif final == "P":
            del self.chars[self.cursor:self.cursor + n]
        elif final == "@":
            self.chars[self.cursor:self.cursor] = [" "] * n

    @property
    def text(self) -> str:
        return "".join(self.chars)


class CommandBoundaryDetector:
    """
    Synchronous state machine over the PTY output byte stream.

    Bytes must be fed in arrival order from a single consumer. Finished
    commands are handed to `on_finished` with consecutive offsets starting
    at `start_offset`; ownership of the entry passes to the callee.

    A hook that raises does not cut the chunk short: parsing continues to
    the end of the chunk and the first error is re-raised from `feed()`.
    An entry rejected by `on_finished` leaves its offset to the next one.

    Args:
        marker: BoundaryMarker the shell integration emits
        on_finished: called with each finished CommandEntry
        on_started: called when a command opens (before any output)
        on_output: called with each captured output chunk
        max_output_bytes: cap on captured output per command (None = no cap)
        start_offset: offset assigned to the first finished command
        clock: returns the current UTC datetime
    """

    MAX_MARKER_LENGTH = 8192
    MAX_COMMAND_LENGTH = 65536

    def __init__(
        self,
        marker: BoundaryMarker,
        on_finished: Callable[[CommandEntry], None],
        on_started: Optional[Callable[[CommandEntry], None]] = None,
        on_output: Optional[Callable[[bytes], None]] = None,
        max_output_bytes: Optional[int] = None,
        start_offset: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.marker = marker
        self.on_finished = on_finished
        self.on_started = on_started
        self.on_output = on_output
        self.max_output_bytes = max_output_bytes
        self.clock = clock

        self._prefix = marker.prefix
        self._state = DetectorState.STARTING
        self._pending = b""
        self._line = bytearray()
        self._lines: List[str] = []
        self._preexec = False
        self._error: Optional[Exception] = None
        self._cwd = UNKNOWN_CWD
        self._current: Optional[CommandEntry] = None
        self._offset = start_offset
        self._last_time: Optional[datetime] = None
        self._prompts = 0

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def current(self) -> Optional[CommandEntry]:
        """The open command, if any."""
        return self._current

    @property
    def next_offset(self) -> int:
        return self._offset

    @property
    def prompts_seen(self) -> int:
        return self._prompts

    @property
    def cwd(self) -> str:
        return self._cwd

    def _now(self) -> datetime:
        now = self.clock()
        if self._last_time is not None and now < self._last_time:
            now = self._last_time
        self._last_time = now
        return now

    # -- stream handling --------------------------------------------------

    def feed(self, data: bytes):
        """Consume the next chunk of PTY output."""
        if self._state == DetectorState.CLOSED:
            raise RuntimeError("detector is closed")
        if not data and not self._pending:
            return

        buf = self._pending + bytes(data)
        self._pending = b""
        self._parse(buf)
        self._raise_deferred()

    def _parse(self, buf: bytes):
        pos = 0
        while True:
            start = buf.find(self._prefix, pos)
            if start < 0:
                keep = self._partial_prefix_len(buf, pos)
                self._consume(buf[pos:len(buf) - keep])
                self._pending = buf[len(buf) - keep:]
                return

            self._consume(buf[pos:start])
            body = start + len(self._prefix)
            end, terminator_len = self._find_terminator(buf, body)

            if end < 0 or end - start > self.MAX_MARKER_LENGTH:
                if end >= 0 or len(buf) - start > self.MAX_MARKER_LENGTH:
                    # never terminated; it was not a marker after all
                    self._consume(buf[start:body])
                    pos = body
                    continue
                self._pending = buf[start:]
                return

            self._on_marker(buf[body:end])
            pos = end + terminator_len

    def _partial_prefix_len(self, buf: bytes, pos: int) -> int:
        longest = min(len(self._prefix) - 1, len(buf) - pos)
        for k in range(longest, 0, -1):
            if buf.endswith(self._prefix[:k]):
                return k
        return 0

    @staticmethod
    def _find_terminator(buf: bytes, start: int):
        bel = buf.find(BEL, start)
        st = buf.find(ST, start)
        if bel < 0 and st < 0:
            # a lone trailing ESC may be the first half of ST
            return -1, 0
        if st < 0 or (0 <= bel < st):
            return bel, len(BEL)
        return st, len(ST)

    def _deliver(self, hook: Callable, value) -> bool:
        try:
            hook(value)
        except Exception as exc:
            if self._error is None:
                self._error = exc
            else:
                logger.error("Hook failed again in the same chunk: %s", exc)
            return False
        return True

    def _raise_deferred(self):
        error, self._error = self._error, None
        if error is not None:
            raise error

    def _consume(self, chunk: bytes):
        while chunk:
            if self._state == DetectorState.AWAITING_COMMAND:
                newline = chunk.find(b"\n")
                if newline < 0:
                    self._extend_line(chunk)
                    return
                self._extend_line(chunk[:newline])
                chunk = chunk[newline + 1:]
                if self._preexec:
                    # the shell says when the command runs; more lines may follow
                    self._lines.append(self._edited_line())
                else:
                    self._open_command(self._edited_line().strip())
            elif self._state == DetectorState.CAPTURING_OUTPUT:
                self._capture(chunk)
                return
            else:
                # startup banner, or the prompt text itself
                return

    def _extend_line(self, chunk: bytes):
        room = self.MAX_COMMAND_LENGTH - len(self._line)
        if room > 0:
            self._line.extend(chunk[:room])

    def _edited_line(self) -> str:
        editor = LineEditor()
        editor.feed(bytes(self._line).decode("utf-8", errors="replace"))
        self._line.clear()
        return editor.text

    def _capture(self, chunk: bytes):
        entry = self._current
        if self.max_output_bytes is not None:
            room = self.max_output_bytes - len(entry.output)
            if room <= 0:
                entry.truncated = True
                return
            if len(chunk) > room:
                chunk = chunk[:room]
                entry.truncated = True
        entry.output.extend(chunk)
        if self.on_output:
            self._deliver(self.on_output, chunk)

    # -- boundaries -------------------------------------------------------

    def _run_command(self):
        if self._line:
            self._lines.append(self._edited_line())
        command = "\n".join(self._lines).strip()
        self._lines.clear()
        self._open_command(command)

    def _open_command(self, command: str):
        if not command:
            return
        if command.endswith("^C"):
            logger.debug("Discarding interrupted input line")
            return

        self._current = CommandEntry(
            command=command,
            cwd=self._cwd,
            started_at=self._now(),
            offset=self._offset,
        )
        self._state = DetectorState.CAPTURING_OUTPUT
        logger.debug("Command %d started: %s", self._offset, command)
        if self.on_started:
            self._deliver(self.on_started, self._current)

    def _on_marker(self, payload: bytes):
        fields = payload.split(b";", 2)
        kind = fields[0]

        if kind == b"K":
            if self._state == DetectorState.AWAITING_COMMAND:
                # continuation prompt text, not part of the command
                self._line.clear()
            return
        if kind == b"C":
            if self._state == DetectorState.AWAITING_COMMAND:
                self._run_command()
            return
        if kind not in (b"S", b"P"):
            logger.debug("Ignoring marker of unknown kind %r", kind)
            return

        exit_code = None
        if len(fields) > 1:
            try:
                exit_code = int(fields[1])
            except ValueError:
                exit_code = None

        finishing = self._state == DetectorState.CAPTURING_OUTPUT
        self._line.clear()
        self._lines.clear()

        if kind == b"S":
            self._preexec = len(fields) > 2 and fields[2] == b"preexec"
            self._state = DetectorState.PROMPTING
        else:
            if len(fields) > 2 and fields[2]:
                self._cwd = fields[2].decode("utf-8", errors="replace")
            self._prompts += 1
            self._state = DetectorState.AWAITING_COMMAND

        if finishing:
            self._finish(exit_code)

    def _finish(
        self,
        exit_code: Optional[int],
        interrupted: bool = False,
        at: Optional[datetime] = None,
    ) -> CommandEntry:
        entry = self._current
        entry.finished_at = max(at or self._now(), entry.started_at)
        entry.exit_code = exit_code
        entry.interrupted = interrupted
        entry.offset = self._offset

        self._current = None
        logger.debug("Command %d finished with exit %s", entry.offset, exit_code)
        if self._deliver(self.on_finished, entry):
            self._offset += 1
        return entry

    def close(self, finished_at: Optional[datetime] = None) -> Optional[CommandEntry]:
        """
        End of stream. An open command is finished with an unknown exit
        status at `finished_at` (default: now). Returns that entry, if any.
        """
        if self._state == DetectorState.CLOSED:
            return None

        capturing = self._state == DetectorState.CAPTURING_OUTPUT
        if capturing and self._pending:
            # bytes held back as a possible marker prefix are output after all
            self._capture(self._pending)

        self._pending = b""
        self._line.clear()
        self._lines.clear()
        self._state = DetectorState.CLOSED

        entry = None
        if capturing:
            entry = self._finish(None, interrupted=True, at=finished_at)
        self._raise_deferred()
        return entry
