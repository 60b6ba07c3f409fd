"""Command-line interface for synkhole.

Commands:
- run: Take one snapshot now and apply retention
- check: Check the storage root for interrupted runs
- list: List snapshots with their retention classification
- init: Create default config
"""

import argparse
import json
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from synkhole import __version__
from synkhole.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
    create_default_config,
    DEFAULT_CONFIG_PATH,
)
from synkhole.consistency import ConsistencyChecker
from synkhole.errors import (
    EXIT_CONFIG_ERROR,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED_ERROR,
    InconsistentStorage,
)
from synkhole.lock import RunLock
from synkhole.logger import get_recent_errors
from synkhole.pipeline import run_backup
from synkhole.retention import RetentionManager, RetentionDecision, classify
from synkhole.storage import StorageRoot


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='synkhole',
        description='Incremental hardlink snapshots of directory trees'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to config file (default: ~/.config/synkhole/config.toml)',
        metavar='PATH'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Take a snapshot now'
    )
    run_parser.add_argument(
        '--json',
        action='store_true',
        help='Print the run summary as JSON'
    )

    subparsers.add_parser(
        'check',
        help='Check the storage root for interrupted runs'
    )

    list_parser = subparsers.add_parser(
        'list',
        help='List snapshots'
    )
    list_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config file'
    )
    init_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite existing config'
    )

    return parser


def load_config(config_path: Optional[Path], verbose: bool = False) -> Optional[Configuration]:
    """
    Load configuration from file.

    Returns None and prints error on failure.
    """
    try:
        config = parse_config(config_path)
        if verbose:
            print(f"Loaded config from: {config_path or DEFAULT_CONFIG_PATH}")
        return config
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return None


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the 'run' command - one pipeline run."""
    result = run_backup(config_path=args.config, console=args.verbose)

    if args.json:
        output = {
            "success": result.success,
            "exit_code": result.exit_code,
            "error": result.error_message,
            "duration_seconds": round(result.duration_seconds, 3),
            "summary": result.summary.to_dict() if result.summary else None,
        }
        print(json.dumps(output, indent=2))
        return result.exit_code

    if not result.success:
        print(f"Backup failed: {result.error_message}", file=sys.stderr)
        return result.exit_code

    summary = result.summary
    print(f"Backup completed: {summary.snapshot_path}")
    if args.verbose:
        previous = summary.previous_id if summary.previous_id is not None else "none"
        print(f"  Previous snapshot: {previous}")
        print(f"  Duration: {result.duration_seconds:.2f}s")
    print(f"  Outdated snapshots: {summary.outdated_count} ({len(summary.removed)} removed)")
    for path in summary.unparseable:
        print(f"  Not a timestamp, kept: {path}")
    for problem in summary.problems:
        print(f"  Warning: {problem}", file=sys.stderr)
    return EXIT_SUCCESS


def cmd_check(args: argparse.Namespace) -> int:
    """Execute the 'check' command - consistency check only."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    storage = StorageRoot(config.settings.storage_root)
    run_lock = RunLock.from_config(config.lock, config.settings.storage_root)

    try:
        ConsistencyChecker(storage).check()
    except InconsistentStorage as e:
        if run_lock.is_locked():
            holder = run_lock.holder_pid()
            print(f"Backup in progress (PID: {holder or 'unknown'})")
            for path in e.staged:
                print(f"  Staged: {path}")
            return EXIT_SUCCESS
        print(str(e), file=sys.stderr)
        return e.exit_code

    print(f"Storage root is consistent: {storage.path}")
    if args.verbose:
        _print_recent_errors(config)
    return EXIT_SUCCESS


def _print_recent_errors(config: Configuration) -> None:
    errors = get_recent_errors(config.logging.error_log_file, max_entries=5)
    if not errors:
        return
    print()
    print("Recent errors:")
    for entry in errors:
        code = f"[{entry.error_code}] " if entry.error_code else ""
        print(f"  {entry.timestamp} {code}{entry.message}")
        if entry.guidance:
            print(f"    -> {entry.guidance}")


def cmd_list(args: argparse.Namespace) -> int:
    """Execute the 'list' command - list snapshots."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    storage = StorageRoot(config.settings.storage_root)
    max_age_days = config.settings.max_age_days
    now = int(time.time())

    rows = []
    for snapshot in storage.entries():
        if snapshot.is_staged:
            status = "staged"
        else:
            status = classify(snapshot, now, max_age_days).value
        rows.append((snapshot, status))

    if args.json:
        output = []
        for snapshot, status in rows:
            output.append({
                "name": snapshot.name,
                "path": str(snapshot.path),
                "id": snapshot.id,
                "timestamp": _format_timestamp(snapshot.id, iso=True),
                "status": status,
            })
        print(json.dumps(output, indent=2))
        return EXIT_SUCCESS

    if not rows:
        print("No snapshots found.")
        return EXIT_SUCCESS

    print(f"{'Name':<24} {'Timestamp':<22} {'Status':>12}")
    print("-" * 60)
    for snapshot, status in rows:
        timestamp_str = _format_timestamp(snapshot.id) or "-"
        print(f"{snapshot.name:<24} {timestamp_str:<22} {status:>12}")
    print("-" * 60)

    plan = RetentionManager(storage, max_age_days).classify_all(now)
    print(
        f"Total: {len(rows)} snapshot(s), "
        f"{len(plan.outdated)} {RetentionDecision.OUTDATED.value}, "
        f"{len(plan.unparseable)} {RetentionDecision.UNPARSEABLE.value}"
    )
    return EXIT_SUCCESS


def _format_timestamp(snapshot_id: Optional[int], iso: bool = False) -> Optional[str]:
    """Format a snapshot id as local time, or None if it isn't a valid time."""
    if snapshot_id is None:
        return None
    try:
        dt = datetime.fromtimestamp(snapshot_id)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.isoformat() if iso else dt.strftime('%Y-%m-%d %H:%M:%S')


def cmd_init(args: argparse.Namespace) -> int:
    """Execute the 'init' command - create default config."""
    config_path = args.config or DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(create_default_config())

    print(f"Created default config: {config_path}")
    print("Edit this file to configure your storage directory and sources.")
    return EXIT_SUCCESS


def main(argv: list = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        if args.command == 'run':
            return cmd_run(args)
        elif args.command == 'check':
            return cmd_check(args)
        elif args.command == 'list':
            return cmd_list(args)
        elif args.command == 'init':
            return cmd_init(args)
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return EXIT_UNEXPECTED_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_UNEXPECTED_ERROR


if __name__ == "__main__":
    sys.exit(main())
