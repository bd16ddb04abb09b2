"""
recli - Passive recorder for interactive terminal sessions

Wraps your shell in a pseudo-terminal and keeps an append-only log of the
commands you run: command line, working directory, timestamps, exit
status and output.

Usage:
    recli start                     Record a new shell session
    recli status                    Show sessions that are recording
    recli list -n 5                 Show the last five commands
    recli validate <session>        Check a session log against the schema
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from .config import DEFAULT_CONFIG_PATH, RecliConfig
from .detector import strip_ansi
from .errors import RecliError, SessionNotFoundError
from .recorder import RecordingSession, recover_session, recover_sessions
from .session import SessionManager, process_alive
from .validator import normalize_log, validate_log
from .writer import read_records


logger = logging.getLogger("recli")

LOG_FILE = "recli.log"


def configure_logging(config: RecliConfig, verbose: bool = False):
    """Log to <log_dir>/recli.log; the terminal belongs to the recorded shell."""
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    root = config.log_root
    root.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(root / LOG_FILE, encoding="utf-8")
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(process)d %(levelname)s %(name)s: %(message)s"
    ))
    package_logger = logging.getLogger("recli")
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(level)
    package_logger.propagate = False


def _fail(message: str, code: int = 1):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(code)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def _manager(args) -> SessionManager:
    return SessionManager(args.config_obj.log_root)


def _resolve_session(manager: SessionManager, session_id):
    """Named session, or the newest one when none is named."""
    if session_id:
        return manager.get(session_id)
    latest = manager.latest()
    if latest is None:
        raise SessionNotFoundError("(no sessions recorded yet)")
    return latest


def run_start(args):
    """CLI: Record a shell session."""
    session = RecordingSession(args.config_obj)

    def announce(message):
        print(message, file=sys.stderr)

    try:
        result = session.run(shell=args.shell, announce=announce)
    except RecliError as e:
        _fail(str(e))

    if result.write_errors:
        _fail(f"{len(result.write_errors)} command record(s) could not be written; see {LOG_FILE}")

    status = result.exit_status or 0
    sys.exit(128 - status if status < 0 else status)


def run_stop(args):
    """CLI: Stop a recording session."""
    manager = _manager(args)

    if args.session:
        targets = [manager.get(args.session)]
    else:
        targets = manager.active_sessions()
        if not targets:
            _fail("no active session")

    failed = False
    for metadata in targets:
        if not metadata.is_active:
            print(f"{metadata.session_id}: already stopped")
            failed = True
        elif process_alive(metadata.pid):
            os.kill(metadata.pid, signal.SIGTERM)
            print(f"{metadata.session_id}: stop requested (pid {metadata.pid})")
        else:
            recover_session(manager, metadata)
            print(f"{metadata.session_id}: recorder was gone; session closed")

    if failed:
        sys.exit(1)


def run_status(args):
    """CLI: Show recording sessions."""
    manager = _manager(args)
    active = manager.active_sessions()

    if not active:
        print("No active session.")
        return

    for metadata in active:
        state = "recording" if process_alive(metadata.pid) else "abandoned"
        print(f"Session:   {metadata.session_id} ({state})")
        print(f"  Host:    {metadata.host}")
        print(f"  Started: {metadata.created_at}")
        print(f"  Seen:    {metadata.last_seen_at or '-'}")
        print(f"  Shell:   {metadata.shell or '-'}")
        print(f"  Log:     {metadata.log_path}")


def run_list(args):
    """CLI: List recent command entries of a session."""
    manager = _manager(args)
    metadata = _resolve_session(manager, args.session)

    log_path = Path(metadata.log_path)
    records = list(read_records(log_path)) if log_path.exists() else []
    if not records:
        print(f"No commands recorded in {metadata.session_id}.")
        return

    print(f"Session {metadata.session_id} ({metadata.status})")
    for record in records[-args.count:]:
        exit_code = record.get("exit_code")
        status = "?" if exit_code is None else str(exit_code)
        cwd = (record.get("raw") or {}).get("cwd", "unknown")
        offset = record.get("offset")
        label = "-" if offset is None else offset
        print(f"  [{label}] {record.get('timestamp')}  exit={status:<3}  {cwd}$ {record.get('command')}")
        if args.output:
            output = strip_ansi((record.get("raw") or {}).get("output", "")).replace("\r", "")
            for line in output.rstrip("\n").splitlines():
                print(f"      {line}")


def run_clear(args):
    """CLI: Delete recorded sessions."""
    manager = _manager(args)

    if args.all:
        targets = [m.session_id for m in manager.list_sessions()]
        if not targets:
            print("No sessions to clear.")
            return
    elif args.session:
        targets = [args.session]
    else:
        _fail("name a session with --session or pass --all")

    failed = False
    for session_id in targets:
        try:
            manager.delete_session(session_id)
            print(f"{session_id}: deleted")
        except RecliError as e:
            print(f"{session_id}: {e}", file=sys.stderr)
            failed = True

    if failed:
        sys.exit(1)


def run_validate(args):
    """CLI: Validate, and optionally normalize, a session log."""
    manager = _manager(args)
    metadata = manager.get(args.session)
    log_path = Path(metadata.log_path)
    if not log_path.exists():
        _fail(f"session {metadata.session_id} has no commands log")

    if args.normalize or args.overwrite:
        report, written = normalize_log(log_path, output=args.output, overwrite=args.overwrite)
    else:
        report, written = validate_log(log_path), None

    summary = report.summary()
    print(f"Log:        {summary['path']}")
    print(f"Records:    {summary['total']}")
    print(f"Valid:      {summary['valid']}")
    print(f"Normalized: {summary['normalized']}")
    print(f"Errors:     {summary['errors']} ({summary['timestamp_errors']} timestamp)")
    for issue in report.issues:
        print(f"  line {issue.line_no}: {type(issue.error).__name__}: {issue.error}")
    if written:
        print(f"Written:    {written}")

    if not report.ok:
        sys.exit(1)


def run_recover(args):
    """CLI: Close sessions whose recorder died."""
    recovered = recover_sessions(_manager(args))
    if not recovered:
        print("No abandoned sessions.")
        return
    for metadata in recovered:
        print(f"{metadata.session_id}: closed (ungraceful)")


def run_init(args):
    """CLI: Write a default configuration file."""
    config_path = Path(args.config or DEFAULT_CONFIG_PATH).expanduser()

    if config_path.exists() and not args.force:
        print(f"Config already exists: {config_path}")
        print("Use --force to overwrite")
        sys.exit(1)

    config = RecliConfig()
    config.save(str(config_path))

    print(f"Created: {config_path}")
    print(f"Logs:    {config.log_dir}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recli",
        description="recli - passive recorder for interactive terminal sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  recli start                       Record a session in your default shell
  recli start --shell /bin/zsh      Record a zsh session
  recli list --output -n 3          Last three commands with their output
  recli validate <id> --normalize   Write <log>.normalized.jsonl
        """,
    )

    parser.add_argument("--config", "-c", help=f"Config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    start_parser = subparsers.add_parser("start", help="Record a shell session")
    start_parser.add_argument("--shell", "-s", help="Shell to run (default: $SHELL)")
    start_parser.set_defaults(func=run_start)

    stop_parser = subparsers.add_parser("stop", help="Stop a recording session")
    stop_parser.add_argument("--session", help="Session id (default: every active session)")
    stop_parser.set_defaults(func=run_stop)

    status_parser = subparsers.add_parser("status", help="Show active sessions")
    status_parser.set_defaults(func=run_status)

    list_parser = subparsers.add_parser("list", help="List recent commands")
    list_parser.add_argument("--session", help="Session id (default: newest session)")
    list_parser.add_argument("--count", "-n", type=_positive_int, default=20, help="Number of commands")
    list_parser.add_argument("--output", "-o", action="store_true", help="Include captured output")
    list_parser.set_defaults(func=run_list)

    clear_parser = subparsers.add_parser("clear", help="Delete recorded sessions")
    clear_parser.add_argument("--session", help="Session id to delete")
    clear_parser.add_argument("--all", action="store_true", help="Delete every stopped session")
    clear_parser.set_defaults(func=run_clear)

    validate_parser = subparsers.add_parser("validate", help="Validate a session log")
    validate_parser.add_argument("session", help="Session id")
    validate_parser.add_argument("--normalize", action="store_true", help="Write a normalized copy")
    validate_parser.add_argument("--output", help="Path for the normalized copy")
    validate_parser.add_argument("--overwrite", action="store_true", help="Replace the log with its normalized form")
    validate_parser.set_defaults(func=run_validate)

    recover_parser = subparsers.add_parser("recover", help="Close sessions whose recorder died")
    recover_parser.set_defaults(func=run_recover)

    init_parser = subparsers.add_parser("init", help="Write a default config file")
    init_parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing config")
    init_parser.set_defaults(func=run_init)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        args.config_obj = RecliConfig.load(args.config)
        configure_logging(args.config_obj, args.verbose)
        args.func(args)
    except (RecliError, ValueError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        _fail(str(e))


if __name__ == "__main__":
    main()
