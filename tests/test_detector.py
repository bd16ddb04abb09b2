"""Tests for the command boundary detector."""

import pytest

from recli.detector import BoundaryMarker, CommandBoundaryDetector, DetectorState, LineEditor, strip_ansi


MARKER = BoundaryMarker(token="0123456789abcdef")


@pytest.fixture
def finished():
    return []


@pytest.fixture
def detector(finished, clock):
    return CommandBoundaryDetector(MARKER, on_finished=finished.append, clock=clock)


def prompt(exit_code=0, cwd="/home/user", text=b"$ "):
    """A full prompt as the shell hooks draw it."""
    return MARKER.prompt_start(exit_code) + text + MARKER.prompt(exit_code, cwd)


SESSION = (
    b"Welcome banner\r\n"
    + prompt(0, "/home/user")
    + b"echo hi\r\n"
    + b"hi\r\n"
    + prompt(0, "/home/user")
    + b"cd /tmp\r\n"
    + prompt(0, "/tmp")
    + b"false\r\n"
    + prompt(1, "/tmp")
)


class TestBoundaries:
    def test_commands_and_exit_codes(self, detector, finished):
        detector.feed(SESSION)

        assert [e.command for e in finished] == ["echo hi", "cd /tmp", "false"]
        assert [e.exit_code for e in finished] == [0, 0, 1]
        assert [e.offset for e in finished] == [0, 1, 2]
        assert [e.cwd for e in finished] == ["/home/user", "/home/user", "/tmp"]
        assert bytes(finished[0].output) == b"hi\r\n"
        assert detector.state == DetectorState.AWAITING_COMMAND
        assert detector.cwd == "/tmp"

    def test_prompt_text_is_not_output(self, detector, finished):
        detector.feed(prompt() + b"ls\r\nfile\r\n" + prompt(text=b"user@host:~$ "))
        assert bytes(finished[0].output) == b"file\r\n"

    def test_end_marker_alone_still_delimits(self, detector, finished):
        detector.feed(MARKER.prompt(0, "/") + b"ls\r\nfile\r\n$ " + MARKER.prompt(2, "/"))
        assert finished[0].exit_code == 2
        assert bytes(finished[0].output) == b"file\r\n$ "

    def test_byte_at_a_time_matches_single_chunk(self, finished, clock):
        one = []
        CommandBoundaryDetector(MARKER, on_finished=one.append, clock=clock).feed(SESSION)

        split = CommandBoundaryDetector(MARKER, on_finished=finished.append, clock=clock)
        for i in range(len(SESSION)):
            split.feed(SESSION[i:i + 1])

        assert [(e.command, e.exit_code, bytes(e.output)) for e in finished] == \
            [(e.command, e.exit_code, bytes(e.output)) for e in one]

    def test_st_terminator(self, detector, finished):
        end = b"\x1b]6973;" + MARKER.token.encode() + b";P;0;/srv\x1b\\"
        detector.feed(end + b"make\r\nok\r\n" + end)
        assert finished[0].command == "make"
        assert finished[0].cwd == "/srv"

    def test_offsets_continue_from_start_offset(self, finished, clock):
        detector = CommandBoundaryDetector(MARKER, on_finished=finished.append, start_offset=7, clock=clock)
        detector.feed(SESSION)
        assert [e.offset for e in finished] == [7, 8, 9]
        assert detector.next_offset == 10

    def test_rejected_entry_keeps_its_offset(self, clock):
        accepted = []

        def on_finished(entry):
            if entry.command == "bad":
                raise OSError("disk full")
            accepted.append(entry)

        detector = CommandBoundaryDetector(MARKER, on_finished=on_finished, clock=clock)
        detector.feed(prompt() + b"bad\r\n")
        with pytest.raises(OSError):
            detector.feed(prompt())
        detector.feed(b"good\r\n")
        detector.feed(b"out\r\n" + prompt())

        assert [(e.command, e.offset) for e in accepted] == [("good", 0)]
        assert bytes(accepted[0].output) == b"out\r\n"

    def test_rejected_entry_does_not_cut_the_chunk_short(self, clock):
        accepted = []

        def on_finished(entry):
            if entry.command == "bad":
                raise OSError("disk full")
            accepted.append(entry)

        detector = CommandBoundaryDetector(MARKER, on_finished=on_finished, clock=clock)
        detector.feed(prompt() + b"bad\r\n")
        with pytest.raises(OSError):
            detector.feed(prompt(1, "/srv") + b"good\r\n")

        assert detector.state == DetectorState.CAPTURING_OUTPUT
        assert detector.cwd == "/srv"
        detector.feed(prompt())
        assert [e.command for e in accepted] == ["good"]

    def test_failed_start_hook_still_opens_the_command(self, finished, clock):
        def on_started(entry):
            raise OSError("journal unavailable")

        detector = CommandBoundaryDetector(MARKER, on_finished=finished.append, on_started=on_started, clock=clock)
        with pytest.raises(OSError):
            detector.feed(prompt() + b"ls\r\nfile\r\n" + prompt())

        assert [(e.command, bytes(e.output)) for e in finished] == [("ls", b"file\r\n")]
        assert detector.state == DetectorState.AWAITING_COMMAND

    def test_unparseable_exit_is_unknown(self, detector, finished):
        detector.feed(prompt() + b"ls\r\n" + MARKER.prompt_start() + MARKER.prompt(None, "/"))
        assert finished[0].exit_code is None

    def test_output_before_first_prompt_is_ignored(self, detector, finished):
        detector.feed(b"motd\r\nmore motd\r\n")
        assert detector.state == DetectorState.STARTING
        assert finished == []

    def test_timestamps_are_ordered(self, detector, finished):
        detector.feed(SESSION)
        for entry in finished:
            assert entry.finished_at >= entry.started_at
        for earlier, later in zip(finished, finished[1:]):
            assert later.started_at >= earlier.finished_at


def exec_prompt(exit_code=0, cwd="/home/user"):
    """A prompt from a shell that also marks when each command starts running."""
    return MARKER.prompt_start(exit_code, preexec=True) + b"$ " + MARKER.prompt(exit_code, cwd)


class TestExecutionMarker:
    def test_multiline_command(self, detector, finished):
        detector.feed(
            exec_prompt()
            + b"for i in 1 2\r\n> " + MARKER.continuation()
            + b"do echo x$i; done\r\n" + MARKER.execution()
            + b"x1\r\nx2\r\n"
            + exec_prompt()
        )

        assert [e.command for e in finished] == ["for i in 1 2\ndo echo x$i; done"]
        assert bytes(finished[0].output) == b"x1\r\nx2\r\n"

    def test_single_line_command(self, detector, finished):
        detector.feed(exec_prompt() + b"ls\r\n" + MARKER.execution() + b"file\r\n" + exec_prompt(0, "/tmp"))
        assert finished[0].command == "ls"
        assert bytes(finished[0].output) == b"file\r\n"

    def test_newline_alone_does_not_open_a_command(self, detector, finished):
        detector.feed(exec_prompt() + b"echo 'a\r\n> " + MARKER.continuation() + b"b'\r\n")
        assert detector.state == DetectorState.AWAITING_COMMAND
        assert detector.current is None

    def test_interrupted_continuation_opens_nothing(self, detector, finished):
        detector.feed(exec_prompt() + b"for i in 1\r\n> " + MARKER.continuation() + b"^C\r\n" + exec_prompt())
        detector.feed(b"pwd\r\n" + MARKER.execution() + b"/\r\n" + exec_prompt())
        assert [e.command for e in finished] == ["pwd"]

    def test_execution_marker_while_capturing_is_ignored(self, detector, finished):
        detector.feed(prompt() + b"ls\r\n" + MARKER.execution() + b"file\r\n" + prompt())
        assert finished[0].command == "ls"
        assert bytes(finished[0].output) == b"file\r\n"


class TestSpoofing:
    def test_prompt_lookalike_does_not_split(self, detector, finished):
        detector.feed(prompt() + b"cat notes\r\nuser@host:~$ ls\r\nmore\r\n" + prompt())
        assert len(finished) == 1
        assert b"user@host:~$ ls" in bytes(finished[0].output)

    def test_foreign_token_is_plain_output(self, detector, finished):
        other = BoundaryMarker(token="ffffffffffffffff")
        detector.feed(prompt() + b"cat log\r\n" + other.prompt(0, "/evil") + b"tail\r\n" + prompt())

        assert len(finished) == 1
        assert other.prompt(0, "/evil") in bytes(finished[0].output)
        assert finished[0].cwd == "/home/user"

    def test_unterminated_marker_becomes_output(self, detector, finished):
        detector.feed(prompt() + b"yes\r\n")
        detector.feed(MARKER.prefix + b"P;0;" + b"y" * (CommandBoundaryDetector.MAX_MARKER_LENGTH + 10))
        detector.feed(prompt())

        assert len(finished) == 1
        assert bytes(finished[0].output).startswith(MARKER.prefix)


class TestLineEditing:
    def test_backspace_edits(self, detector, finished):
        detector.feed(prompt() + b"lx\b \bs\r\n" + prompt())
        assert finished[0].command == "ls"

    def test_empty_line_opens_nothing(self, detector, finished):
        detector.feed(prompt() + b"\r\n" + prompt())
        assert finished == []
        assert detector.prompts_seen == 2

    def test_interrupted_line_opens_nothing(self, detector, finished):
        detector.feed(prompt() + b"rm -rf /tm^C\r\n" + prompt())
        assert finished == []

    def test_line_editor_cursor_moves(self):
        editor = LineEditor()
        editor.feed("gti status\x1b[9Dit")
        assert editor.text == "git status"

    def test_line_editor_delete_char(self):
        editor = LineEditor()
        editor.feed("echo  hi\x1b[3D\x1b[P")
        assert editor.text == "echo hi"

    def test_line_editor_erase_to_end(self):
        editor = LineEditor()
        editor.feed("echo wrong\r\x1b[Kecho right")
        assert editor.text == "echo right"

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[1;32mok\x1b[0m \x1b]0;title\x07done") == "ok done"


class TestCaps:
    def test_output_is_truncated_at_cap(self, finished, clock):
        detector = CommandBoundaryDetector(MARKER, on_finished=finished.append, max_output_bytes=10, clock=clock)
        detector.feed(prompt() + b"yes\r\n" + b"y\r\n" * 20 + prompt())

        assert len(finished[0].output) == 10
        assert finished[0].truncated

    def test_hooks_see_start_and_captured_output(self, finished, clock):
        started, chunks = [], []
        detector = CommandBoundaryDetector(
            MARKER,
            on_finished=finished.append,
            on_started=started.append,
            on_output=chunks.append,
            max_output_bytes=4,
            clock=clock,
        )
        detector.feed(prompt() + b"ls\r\nabcdef" + prompt())

        assert [e.command for e in started] == ["ls"]
        assert b"".join(chunks) == b"abcd"


class TestClose:
    def test_close_finishes_open_command_as_unknown(self, detector, finished):
        detector.feed(prompt() + b"sleep 100\r\npartial")
        entry = detector.close()

        assert entry is finished[0]
        assert entry.exit_code is None
        assert entry.interrupted
        assert bytes(entry.output) == b"partial"
        assert detector.state == DetectorState.CLOSED

    def test_close_flushes_held_back_prefix(self, detector, finished):
        detector.feed(prompt() + b"cat\r\nabc" + MARKER.prefix[:4])
        entry = detector.close()
        assert bytes(entry.output) == b"abc" + MARKER.prefix[:4]

    def test_close_when_idle(self, detector, finished):
        detector.feed(prompt())
        assert detector.close() is None
        assert finished == []

    def test_close_uses_given_finish_time(self, detector, finished, clock):
        detector.feed(prompt() + b"sleep 1\r\n")
        started = detector.current.started_at
        entry = detector.close(finished_at=started)
        assert entry.finished_at == started

    def test_feed_after_close_raises(self, detector):
        detector.close()
        with pytest.raises(RuntimeError):
            detector.feed(b"late")

    def test_close_is_idempotent(self, detector, finished):
        detector.feed(prompt() + b"ls\r\n")
        detector.close()
        assert detector.close() is None
        assert len(finished) == 1
