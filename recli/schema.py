"""
Schema - Canonical LogEventV1 records and timestamp handling

Every persisted command record is a LogEventV1. Ids are derived from
(host, session_id, timestamp, command, offset) so that the same logical
event always hashes to the same id, no matter how many times it is
validated or normalized.
"""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import TimestampError
from .models import CommandEntry, SessionMetadata


SCHEMA_VERSION = 1
APP_NAME = "recli"

LEVELS = ("INFO", "WARN", "ERROR")

ERROR_TYPE_AMBIGUOUS = "DetectionAmbiguity"
ERROR_TYPE_NONZERO = "NonZeroExit"

LEGACY_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)
_LEGACY = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


class LogEventV1(BaseModel):
    """Persisted form of a finished CommandEntry plus provenance."""

    # fields this version does not know are kept and written back out
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    schema_version: Literal[1] = SCHEMA_VERSION
    timestamp: str
    host: str = Field(min_length=1)
    app: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    level: Literal["INFO", "WARN", "ERROR"]
    command: str
    exit_code: Optional[int] = None
    offset: Optional[int] = Field(default=None, ge=0)  # absent in older logs
    error_type: Optional[str] = None
    message: str
    tags: List[str] = Field(default_factory=list)
    raw: Optional[Any] = None

    @field_validator("tags")
    @classmethod
    def _unique_sorted_tags(cls, value: List[str]) -> List[str]:
        return sorted(set(value))

    def to_json_dict(self) -> dict:
        data = self.model_dump(mode="json")
        if self.offset is None and "offset" not in self.model_fields_set:
            del data["offset"]
        return data


def make_event_id(host: str, session_id: str, timestamp: str, command: str, offset: int) -> str:
    """sha256 over the fixed, ordered tuple `host|session_id|timestamp|command|offset`."""
    material = f"{host}|{session_id}|{timestamp}|{command}|{offset}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as RFC3339 UTC; naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if dt.microsecond:
        text += f".{dt.microsecond:06d}"
    return text + "Z"


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC3339 date-time. Raises ValueError if it is not one."""
    match = _RFC3339.match(text)
    if not match:
        raise ValueError(f"not an RFC3339 timestamp: {text!r}")

    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction = (match.group(7) or "")[:6].ljust(6, "0")
    zone = match.group(8)
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))

    return datetime(year, month, day, hour, minute, second, int(fraction), tzinfo=tz)


def normalize_timestamp(value) -> Tuple[str, bool]:
    """
    Bring a timestamp into canonical RFC3339 UTC form.

    Accepts any RFC3339 date-time, or the legacy `YYYY-MM-DD HH:MM:SS`
    format interpreted as UTC. This is the only place legacy formats are
    understood.

    Returns:
        (canonical_text, changed) where changed tells whether the input
        differed from its canonical form.

    Raises:
        TimestampError: the value matches neither format.
    """
    if not isinstance(value, str):
        raise TimestampError(value)

    try:
        canonical = format_timestamp(parse_rfc3339(value))
    except ValueError:
        if not _LEGACY.match(value):
            raise TimestampError(value) from None
        try:
            parsed = datetime.strptime(value, LEGACY_TIMESTAMP_FORMAT)
        except ValueError:
            raise TimestampError(value) from None
        canonical = format_timestamp(parsed.replace(tzinfo=timezone.utc))

    return canonical, canonical != value


def _level_for(entry: CommandEntry) -> Tuple[str, Optional[str]]:
    if entry.exit_code is None:
        return "WARN", ERROR_TYPE_AMBIGUOUS
    if entry.exit_code != 0:
        return "ERROR", ERROR_TYPE_NONZERO
    return "INFO", None


def _message_for(entry: CommandEntry) -> str:
    if entry.exit_code is None:
        return f"{entry.command} (exit status unknown)"
    if entry.exit_code != 0:
        return f"{entry.command} (exit {entry.exit_code})"
    return entry.command


def _tags_for(entry: CommandEntry) -> List[str]:
    tags = {"command"}
    if entry.exit_code is None:
        tags.add("exit-unknown")
    elif entry.exit_code != 0:
        tags.add("failed")
    if entry.interrupted:
        tags.add("interrupted")
    if entry.truncated:
        tags.add("truncated")
    return sorted(tags)


def to_event(entry: CommandEntry, metadata: SessionMetadata, app: str = APP_NAME) -> LogEventV1:
    """Translate a finished CommandEntry into its canonical LogEventV1."""
    if entry.offset < 0:
        raise ValueError("command entry has not been assigned an offset")

    started_at = entry.started_at
    finished_at = entry.finished_at or started_at
    if finished_at < started_at:
        finished_at = started_at

    timestamp = format_timestamp(started_at)
    level, error_type = _level_for(entry)

    return LogEventV1(
        id=make_event_id(metadata.host, metadata.session_id, timestamp, entry.command, entry.offset),
        schema_version=SCHEMA_VERSION,
        timestamp=timestamp,
        host=metadata.host,
        app=app,
        session_id=metadata.session_id,
        level=level,
        command=entry.command,
        exit_code=entry.exit_code,
        offset=entry.offset,
        error_type=error_type,
        message=_message_for(entry),
        tags=_tags_for(entry),
        raw={
            "cwd": entry.cwd,
            "started_at": timestamp,
            "finished_at": format_timestamp(finished_at),
            "duration_ms": int((finished_at - started_at).total_seconds() * 1000),
            "output": entry.output_text(),
        },
    )
