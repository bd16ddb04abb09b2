"""
PTY Session Driver - Runs the shell on a pseudo-terminal and relays bytes
"""

import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
import time
import tty
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Sequence, Tuple

from .errors import SpawnError
from .schema import utc_now


logger = logging.getLogger(__name__)

READ_SIZE = 8192
DEFAULT_HOTKEY = b"\x18"  # Ctrl+X


@contextmanager
def raw_mode(fd: Optional[int]):
    """
    Put a terminal into raw mode for the duration of the block.

    The previous mode is restored on every way out of the block. Does
    nothing when `fd` is not a terminal.
    """
    if fd is None or not os.isatty(fd):
        yield
        return

    saved = termios.tcgetattr(fd)
    tty.setraw(fd)
    try:
        yield
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSAFLUSH, saved)
        except termios.error as e:
            # the terminal hung up; there is nothing left to restore
            logger.warning("Could not restore terminal mode: %s", e)


def split_hotkey(data: bytes, hotkey: Optional[bytes]) -> Tuple[bytes, int]:
    """Remove every hotkey occurrence from `data`; return (rest, occurrences)."""
    if not hotkey or hotkey not in data:
        return data, 0
    parts = data.split(hotkey)
    return b"".join(parts), len(parts) - 1


def _make_controlling_tty():
    # runs in the child between fork and exec, after setsid()
    tiocsctty = getattr(termios, "TIOCSCTTY", None)
    if tiocsctty is not None:
        fcntl.ioctl(0, tiocsctty, 0)


def _write_all(fd: int, data: bytes):
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


@dataclass
class SessionHandle:
    """A running shell attached to a PTY."""
    process: subprocess.Popen
    master_fd: int
    shell_path: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    exit_status: Optional[int] = None
    signaled: bool = False
    stop_requested: bool = False
    pause_requested: threading.Event = field(default_factory=threading.Event)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.exit_status is None


class PtySessionDriver:
    """
    Spawns a shell on a pseudo-terminal and relays bytes between it and
    the real terminal until the shell exits.

    Output read from the PTY master is written to the real terminal first
    and then passed, unchanged and in order, to `on_output`. That callback
    is the only other consumer of the stream.

    Usage:
        driver = PtySessionDriver(on_output=pipeline.submit)
        handle = driver.start("/bin/bash", env)
        exit_status = driver.run(handle)
    """

    def __init__(
        self,
        on_output: Optional[Callable[[bytes], None]] = None,
        hotkey: Optional[bytes] = DEFAULT_HOTKEY,
        on_hotkey: Optional[Callable[[SessionHandle], None]] = None,
        stdin_fd: Optional[int] = None,
        stdout_fd: Optional[int] = None,
        stop_grace: float = 3.0,
    ):
        self.on_output = on_output
        self.hotkey = hotkey
        self.on_hotkey = on_hotkey
        self.stdin_fd = 0 if stdin_fd is None else stdin_fd
        self.stdout_fd = 1 if stdout_fd is None else stdout_fd
        self.stop_grace = stop_grace

        self._wake_r: Optional[int] = None
        self._wake_w: Optional[int] = None
        self._resized = False

    # -- spawn ------------------------------------------------------------

    def start(
        self,
        shell_path: str,
        env: Optional[Dict[str, str]] = None,
        args: Sequence[str] = (),
    ) -> SessionHandle:
        """
        Allocate a PTY and start `shell_path` on it.

        Raises:
            SpawnError: no PTY could be allocated or the shell could not
                be executed
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"could not allocate a pseudo-terminal: {e}") from e

        self._copy_window_size(master_fd)

        try:
            process = subprocess.Popen(
                [shell_path, *args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            os.close(slave_fd)
            reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
            raise SpawnError(f"cannot execute shell {shell_path!r}: {reason}") from e

        os.close(slave_fd)
        logger.info("Started %s on pty (pid %d)", shell_path, process.pid)
        return SessionHandle(process=process, master_fd=master_fd, shell_path=shell_path)

    # -- relay ------------------------------------------------------------

    def run(self, handle: SessionHandle) -> int:
        """
        Relay bytes until the shell exits, then reap it.

        Returns:
            The shell's exit status, or -signum if a signal killed it.
        """
        try:
            with raw_mode(self.stdin_fd), self._wakeups():
                self._relay(handle)
                status = self._reap(handle)
        finally:
            os.close(handle.master_fd)
        return status

    def request_stop(self, handle: SessionHandle):
        """Ask the relay loop to hang up the shell. Safe to call from a signal handler."""
        handle.stop_requested = True
        self._wake()

    def _relay(self, handle: SessionHandle):
        master = handle.master_fd
        watch_stdin = True
        hangup_at = None
        kill_sent = False

        while True:
            if handle.stop_requested and hangup_at is None:
                hangup_at = time.monotonic()
                self._signal_shell(handle, signal.SIGHUP)

            timeout = None
            if hangup_at is not None:
                remaining = self.stop_grace - (time.monotonic() - hangup_at)
                if remaining <= 0 and not kill_sent:
                    self._signal_shell(handle, signal.SIGKILL)
                    kill_sent = True
                timeout = max(remaining, 0.1) if not kill_sent else 0.5
            elif self._wake_r is None:
                # no SIGCHLD wakeups outside the main thread
                timeout = 1.0

            fds = [master]
            if watch_stdin:
                fds.append(self.stdin_fd)
            if self._wake_r is not None:
                fds.append(self._wake_r)

            readable, _, _ = select.select(fds, [], [], timeout)

            if self._wake_r is not None and self._wake_r in readable:
                self._drain_wakeups()
                if self._resized:
                    self._resized = False
                    self._copy_window_size(master)

            if master in readable:
                if not self._read_master(handle):
                    return

            if watch_stdin and self.stdin_fd in readable:
                try:
                    data = os.read(self.stdin_fd, READ_SIZE)
                except OSError as e:
                    if e.errno not in (errno.EIO, errno.EBADF):
                        raise
                    data = b""
                if not data:
                    watch_stdin = False
                else:
                    self._forward_input(handle, data)

            if handle.process.poll() is not None:
                self._drain_master(handle)
                return

    def _read_master(self, handle: SessionHandle) -> bool:
        try:
            data = os.read(handle.master_fd, READ_SIZE)
        except OSError as e:
            if e.errno == errno.EIO:
                # slave side closed: the shell and everything it started are gone
                return False
            raise
        if not data:
            return False
        self._fan_out(handle, data)
        return True

    def _drain_master(self, handle: SessionHandle):
        while True:
            readable, _, _ = select.select([handle.master_fd], [], [], 0)
            if not readable or not self._read_master(handle):
                return

    def _fan_out(self, handle: SessionHandle, data: bytes):
        try:
            _write_all(self.stdout_fd, data)
        except OSError as e:
            logger.warning("Could not write to terminal: %s", e)
        if self.on_output:
            self.on_output(data)

    def _forward_input(self, handle: SessionHandle, data: bytes):
        data, hits = split_hotkey(data, self.hotkey)
        if hits:
            handle.pause_requested.set()
            logger.info("Hotkey pressed (pid %d)", handle.pid)
            if self.on_hotkey:
                self.on_hotkey(handle)
        if not data:
            return
        try:
            _write_all(handle.master_fd, data)
        except OSError as e:
            if e.errno != errno.EIO:
                raise
            logger.debug("Dropped %d input bytes: shell side already closed", len(data))

    def _reap(self, handle: SessionHandle) -> int:
        process = handle.process
        try:
            returncode = process.wait(timeout=self.stop_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Shell %d still running after its terminal closed; killing it", handle.pid)
            self._signal_shell(handle, signal.SIGKILL)
            returncode = process.wait()

        handle.finished_at = utc_now()
        handle.exit_status = returncode
        handle.signaled = returncode < 0
        if handle.signaled:
            logger.warning("Shell %d killed by signal %d", handle.pid, -returncode)
        else:
            logger.info("Shell %d exited with status %d", handle.pid, returncode)
        return returncode

    def _signal_shell(self, handle: SessionHandle, signum: int):
        try:
            os.killpg(handle.pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError:
            handle.process.send_signal(signum)

    # -- window size and wakeups -----------------------------------------

    def _copy_window_size(self, master_fd: int):
        if not os.isatty(self.stdin_fd):
            return
        try:
            packed = fcntl.ioctl(self.stdin_fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
            fcntl.ioctl(master_fd, termios.TIOCSWINSZ, packed)
        except OSError as e:
            logger.debug("Could not copy window size: %s", e)

    def _wake(self):
        if self._wake_w is not None:
            try:
                os.write(self._wake_w, b"\0")
            except BlockingIOError:
                pass

    def _drain_wakeups(self):
        try:
            while os.read(self._wake_r, 512):
                pass
        except BlockingIOError:
            pass

    def _on_sigwinch(self, signum, frame):
        self._resized = True
        self._wake()

    def _on_sigchld(self, signum, frame):
        self._wake()

    @contextmanager
    def _wakeups(self):
        """Self-pipe that SIGCHLD, SIGWINCH and request_stop write to."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        self._wake_r, self._wake_w = os.pipe()
        for fd in (self._wake_r, self._wake_w):
            os.set_blocking(fd, False)
        previous = {
            signal.SIGCHLD: signal.signal(signal.SIGCHLD, self._on_sigchld),
            signal.SIGWINCH: signal.signal(signal.SIGWINCH, self._on_sigwinch),
        }
        # the shell may already have exited before the handler was installed
        self._wake()
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, signal.SIG_DFL if handler is None else handler)
            os.close(self._wake_r)
            os.close(self._wake_w)
            self._wake_r = self._wake_w = None
