"""
Validator - Per-event validation and normalization of persisted logs

Validation is partial by design: one bad record is reported and the run
continues. Nothing here touches the source log unless the caller asks for
an explicit overwrite.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .errors import EventValidationError, TimestampError
from .schema import SCHEMA_VERSION, LogEventV1, make_event_id, normalize_timestamp
from .writer import atomic_write, iter_lines


logger = logging.getLogger(__name__)


@dataclass
class NormalizedEvent:
    """A valid event and what, if anything, normalization changed."""
    event: LogEventV1
    changes: List[str] = field(default_factory=list)
    original_timestamp: Optional[str] = None

    @property
    def normalized(self) -> bool:
        return bool(self.changes)


@dataclass
class LineResult:
    line_no: int
    text: str
    result: Optional[NormalizedEvent] = None
    error: Optional[EventValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ValidationReport:
    path: Path
    lines: List[LineResult] = field(default_factory=list)

    @property
    def events(self) -> List[NormalizedEvent]:
        return [line.result for line in self.lines if line.result is not None]

    @property
    def issues(self) -> List[LineResult]:
        return [line for line in self.lines if line.error is not None]

    @property
    def total(self) -> int:
        return len(self.lines)

    @property
    def valid_count(self) -> int:
        return len(self.events)

    @property
    def normalized_count(self) -> int:
        return sum(1 for ev in self.events if ev.normalized)

    @property
    def timestamp_errors(self) -> List[LineResult]:
        return [line for line in self.issues if isinstance(line.error, TimestampError)]

    @property
    def ok(self) -> bool:
        return not self.issues

    def summary(self) -> dict:
        return {
            "path": str(self.path),
            "total": self.total,
            "valid": self.valid_count,
            "normalized": self.normalized_count,
            "errors": len(self.issues),
            "timestamp_errors": len(self.timestamp_errors),
        }


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"]) or "record"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def validate_event(data) -> NormalizedEvent:
    """
    Validate one decoded record.

    Checks schema_version, required fields, level and timestamp. A legacy
    timestamp is normalized and the id re-derived from the normalized
    value, so validating the normalized output again changes nothing.
    Records written without an offset keep their stored id, since the
    offset it was derived from is unknown. Unknown fields are kept.

    Raises:
        TimestampError: timestamp is in no recognized format
        EventValidationError: any other schema violation
    """
    if not isinstance(data, dict):
        raise EventValidationError("record is not a JSON object")

    version = data.get("schema_version")
    if isinstance(version, bool) or version != SCHEMA_VERSION:
        raise EventValidationError(f"unsupported schema_version: {version!r}")

    if "timestamp" not in data:
        raise EventValidationError("timestamp: Field required")

    original = data["timestamp"]
    canonical, changed = normalize_timestamp(original)

    payload = dict(data)
    payload["timestamp"] = canonical
    try:
        event = LogEventV1.model_validate(payload)
    except PydanticValidationError as exc:
        raise EventValidationError(_describe(exc)) from exc

    changes = []
    if changed:
        changes.append("timestamp")

    if event.offset is not None:
        expected_id = make_event_id(event.host, event.session_id, event.timestamp, event.command, event.offset)
        if event.id != expected_id:
            changes.append("id")
            event = event.model_copy(update={"id": expected_id})

    return NormalizedEvent(
        event=event,
        changes=changes,
        original_timestamp=original if changed else None,
    )


def validate_log(path) -> ValidationReport:
    """Validate every record of a commands log, collecting per-line results."""
    path = Path(path)
    report = ValidationReport(path=path)

    for line_no, text, complete in iter_lines(path):
        if not text.strip():
            continue
        line = LineResult(line_no=line_no, text=text)
        report.lines.append(line)

        if not complete:
            line.error = EventValidationError("incomplete record (torn write)")
            continue

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            line.error = EventValidationError(f"invalid JSON: {exc.msg}")
            continue

        try:
            line.result = validate_event(data)
        except EventValidationError as exc:
            line.error = exc

    for issue in report.issues:
        logger.warning("%s:%d: %s", path, issue.line_no, issue.error)

    return report


def default_normalized_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}.normalized.jsonl")


def normalize_log(path, output=None, overwrite: bool = False) -> Tuple[ValidationReport, Path]:
    """
    Write a normalized copy of a commands log.

    Valid records are re-serialized in canonical form; invalid ones are
    carried through verbatim so nothing is lost. The source is replaced
    only with overwrite=True, and then atomically.

    Returns:
        (report, written_path)
    """
    path = Path(path)
    if overwrite and output is not None:
        raise ValueError("output and overwrite are mutually exclusive")

    target = path if overwrite else Path(output) if output else default_normalized_path(path)
    if target.resolve() == path.resolve() and not overwrite:
        raise ValueError("refusing to overwrite the source log without overwrite=True")

    report = validate_log(path)

    lines = []
    for line in report.lines:
        if line.result is not None:
            lines.append(json.dumps(line.result.event.to_json_dict(), ensure_ascii=False, separators=(",", ":")))
        else:
            lines.append(line.text)

    target.parent.mkdir(parents=True, exist_ok=True)
    with atomic_write(target) as f:
        for text in lines:
            f.write(text + "\n")

    logger.info("Normalized %s -> %s (%d normalized, %d errors)",
                path, target, report.normalized_count, len(report.issues))
    return report, target
