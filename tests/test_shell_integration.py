"""Tests for shell hook generation."""

import os
import shutil
import subprocess
import threading

import pytest

from recli.detector import BoundaryMarker, CommandBoundaryDetector
from recli.pty_driver import PtySessionDriver
from recli.shell_integration import prepare_shell, shell_kind


MARKER = BoundaryMarker(token="feedfacecafebeef")


class TestShellKind:
    @pytest.mark.parametrize("path,kind", [
        ("/bin/bash", "bash"),
        ("/usr/local/bin/bash-5.2", "bash"),
        ("-zsh", "zsh"),
        ("/usr/bin/zsh", "zsh"),
        ("/usr/bin/fish", None),
        ("/bin/sh", None),
    ])
    def test_kinds(self, path, kind):
        assert shell_kind(path) == kind


class TestPrepareShell:
    def test_bash_rcfile(self, tmp_path):
        launch = prepare_shell("/bin/bash", tmp_path, MARKER, base_env={"HOME": "/home/u"}, session_id="sid")

        rcfile = tmp_path / "shell" / "bashrc"
        assert launch.integrated
        assert launch.args == ["--rcfile", str(rcfile), "-i"]
        assert rcfile.is_file()
        assert launch.env["RECLI_MARKER_TOKEN"] == MARKER.token
        assert launch.env["RECLI_MARKER_CODE"] == "6973"
        assert launch.env["RECLI_SESSION_ID"] == "sid"
        assert launch.env["RECLI_USER_BASHRC"] == "/home/u/.bashrc"

    def test_zsh_zdotdir(self, tmp_path):
        launch = prepare_shell("/bin/zsh", tmp_path, MARKER, base_env={"HOME": "/home/u", "ZDOTDIR": "/cfg"})

        hooks = tmp_path / "shell"
        assert launch.integrated
        assert launch.args == ["-i"]
        assert launch.env["ZDOTDIR"] == str(hooks)
        assert launch.env["RECLI_USER_ZDOTDIR"] == "/cfg"
        assert (hooks / ".zshrc").is_file()
        assert (hooks / ".zshenv").is_file()

    def test_other_shells_run_unhooked(self, tmp_path):
        launch = prepare_shell("/usr/bin/fish", tmp_path, MARKER, base_env={})
        assert not launch.integrated
        assert launch.args == []
        assert not (tmp_path / "shell").exists()

    def test_base_env_is_not_mutated(self, tmp_path):
        env = {"HOME": "/home/u"}
        prepare_shell("/bin/bash", tmp_path, MARKER, base_env=env)
        assert env == {"HOME": "/home/u"}


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
def test_bash_prompt_emits_marker(tmp_path):
    """The generated rcfile makes an interactive bash print both markers around its prompt."""
    home = tmp_path / "home"
    home.mkdir()
    launch = prepare_shell(shutil.which("bash"), tmp_path, MARKER, base_env={"HOME": str(home), "PATH": "/usr/bin:/bin"})

    proc = subprocess.run(
        [launch.shell_path, *launch.args],
        input=b"cd /\nexit 0\n",
        env=launch.env,
        capture_output=True,
        timeout=10,
    )

    # without a terminal, bash -i writes its prompts to stderr
    finished = []
    detector = CommandBoundaryDetector(MARKER, on_finished=finished.append)
    detector.feed(proc.stderr)
    assert detector.prompts_seen >= 1
    assert detector.cwd == "/"


def _bash_has_ps0():
    bash = shutil.which("bash")
    if bash is None:
        return False
    out = subprocess.run(
        [bash, "-c", 'echo "${BASH_VERSINFO[0]} ${BASH_VERSINFO[1]}"'],
        capture_output=True, text=True, timeout=10,
    ).stdout.split()
    return (int(out[0]), int(out[1])) >= (4, 4)


class Typist:
    """Feeds PTY output to a detector and types the next input line at every prompt."""

    def __init__(self, detector, fd, lines):
        self.detector = detector
        self.fd = fd
        self.lines = list(lines)
        self.seen = b""
        self.typed = 0

    def __call__(self, data):
        self.detector.feed(data)
        self.seen += data
        prompts = self.seen.count(MARKER.prefix + b"P;") + self.seen.count(MARKER.continuation())
        while self.typed < prompts and self.lines:
            os.write(self.fd, self.lines.pop(0))
            self.typed += 1


@pytest.mark.skipif(not _bash_has_ps0(), reason="needs bash 4.4 or later")
def test_bash_multiline_command_is_one_record(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    env = {"HOME": str(home), "PATH": "/usr/bin:/bin", "TERM": "dumb"}
    launch = prepare_shell(shutil.which("bash"), tmp_path, MARKER, base_env=env)

    finished = []
    detector = CommandBoundaryDetector(MARKER, on_finished=finished.append)
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    typist = Typist(detector, in_w, [b"for i in 1 2\n", b"do echo x$i; done\n", b"exit\n"])
    driver = PtySessionDriver(on_output=typist, stdin_fd=in_r, stdout_fd=out_w, stop_grace=1.0)

    handle = driver.start(launch.shell_path, launch.env, launch.args)
    timer = threading.Timer(15, driver.request_stop, args=(handle,))
    timer.start()
    try:
        driver.run(handle)
    finally:
        timer.cancel()
        for fd in (in_r, in_w, out_r, out_w):
            os.close(fd)

    loops = [e for e in finished if e.command.startswith("for")]
    assert len(loops) == 1
    assert loops[0].command == "for i in 1 2\ndo echo x$i; done"
    assert loops[0].exit_code == 0
    output = bytes(loops[0].output)
    assert b"x1" in output and b"x2" in output
    assert b"do echo" not in output
