"""Shared fixtures for recli tests."""

import subprocess
from datetime import datetime, timedelta, timezone

import pytest

from recli.models import CommandEntry, SessionMetadata


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def metadata(tmp_path):
    return SessionMetadata(
        session_id="20240501T120000Z-abcdef012345",
        host="testhost",
        created_at="2024-05-01T12:00:00Z",
        log_path=str(tmp_path / "commands.jsonl"),
        pid=1,
    )


@pytest.fixture
def make_entry():
    def _make(command="ls", offset=0, exit_code=0, output=b"", seconds=1.5, **kwargs):
        return CommandEntry(
            command=command,
            cwd=kwargs.pop("cwd", "/home/user"),
            started_at=kwargs.pop("started_at", T0 + timedelta(seconds=offset * 10)),
            offset=offset,
            finished_at=T0 + timedelta(seconds=offset * 10 + seconds),
            exit_code=exit_code,
            output=bytearray(output),
            **kwargs,
        )

    return _make


class FakeClock:
    """Deterministic clock for the detector; advances one second per call."""

    def __init__(self, start=T0, step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dead_pid():
    """Pid of a process that has already exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid
