"""
Errors - Exception taxonomy for the recorder
"""


class RecliError(Exception):
    """Base class for all recorder errors."""


class SpawnError(RecliError):
    """The pseudo-terminal could not be allocated or the shell could not be executed."""


class WriteError(RecliError):
    """A command record could not be appended to the session log."""


class OffsetOrderError(WriteError):
    """An event was appended with an offset not greater than the last one written."""


class EventValidationError(RecliError):
    """A persisted event does not conform to LogEventV1."""


class TimestampError(EventValidationError):
    """A timestamp is neither RFC3339 nor the legacy `YYYY-MM-DD HH:MM:SS` format."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"unrecognized timestamp: {value!r}")


class SessionNotFoundError(RecliError):
    """No session directory or metadata exists for the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session not found: {session_id}")


class SessionStateError(RecliError):
    """The requested operation is not allowed in the session's current state."""
