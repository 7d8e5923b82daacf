"""CLI for TimescaleDB-aware dump and restore.

Usage:
    ts-backup dump --db-uri postgresql://localhost/tsdb --dump-dir ./dump
    ts-backup dump --profile prod --dump-dir ./dump --jobs 8 --verbose
    ts-backup restore --db-uri postgresql://localhost/tsdb2 --dump-dir ./dump
    ts-backup restore --profile staging --dump-dir ./dump -- --no-owner
    ts-backup verify --source-uri URI --target-uri URI --table public.conditions
    ts-backup profiles

Commands:
    dump      - Dump a database, pausing background jobs during a parallel dump
    restore   - Restore a dump in four passes around the extension's hooks
    verify    - Compare table contents between two databases
    profiles  - List connection profiles from ts-backup.toml

Everything after ``--`` is passed to every pg_restore pass.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ts_backup.backup.dump import dump_database
from ts_backup.backup.restore import restore_database
from ts_backup.backup.verify import TableComparison, compare_tables
from ts_backup.config.loader import (
    ProfileNotFoundError,
    get_profile,
    load_profiles,
    resolve_url,
)
from ts_backup.config.models import BackupConfig
from ts_backup.errors import DatabaseError, TsBackupError

logger = logging.getLogger(__name__)

console = Console()

PROFILE_ENV_VAR = "TS_BACKUP_PROFILE"


# ============================================================================
# Argument helpers
# ============================================================================


def _split_passthrough(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first ``--`` into own arguments and pg_restore flags.

    Example:
        >>> _split_passthrough(["restore", "--dump-dir", "d", "--", "--no-owner"])
        (['restore', '--dump-dir', 'd'], ['--no-owner'])
    """
    if "--" not in argv:
        return list(argv), []
    index = argv.index("--")
    return list(argv[:index]), list(argv[index + 1:])


def _resolve_db_uri(args: argparse.Namespace) -> str:
    """Connection URI from ``--db-uri``, else from the selected profile.

    Raises:
        ValueError: If neither a URI nor a profile was given.
        ProfileNotFoundError: If the profile is not defined.
        FileNotFoundError: If the profiles file does not exist.
    """
    if args.db_uri:
        return args.db_uri
    profile_name = args.profile or os.environ.get(PROFILE_ENV_VAR)
    if not profile_name:
        raise ValueError(
            f"--db-uri is required (or select a profile with --profile "
            f"or {PROFILE_ENV_VAR})"
        )
    return resolve_url(get_profile(profile_name, args.config))


def _configure_logging(debug: bool) -> None:
    """Send package log records to stderr through rich."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.getLogger("ts_backup").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_error(message: str) -> None:
    console.print(f"[bold red]x[/bold red] {escape(message)}")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_dump(config: BackupConfig) -> int:
    """Async implementation for dump command.

    Returns:
        0 on success, 1 on failure.
    """
    console.print(f"Dumping to {escape(str(config.dump_dir))}...", style="dim")
    try:
        await dump_database(config)
    except TsBackupError as e:
        logger.debug("dump failed", exc_info=True)
        _print_error(f"Dump failed: {e}")
        return 1

    console.print(
        f"[bold green]v[/bold green] Dump complete: "
        f"[bold cyan]{escape(str(config.dump_dir))}[/bold cyan]"
    )
    return 0


async def _async_restore(config: BackupConfig) -> int:
    """Async implementation for restore command.

    Returns:
        0 on success, 1 on failure.
    """
    console.print(f"Restoring from {escape(str(config.dump_dir))}...", style="dim")
    try:
        await restore_database(config)
    except TsBackupError as e:
        logger.debug("restore failed", exc_info=True)
        _print_error(f"Restore failed: {e}")
        return 1

    console.print("[bold green]v[/bold green] Restore complete")
    return 0


# ============================================================================
# Command handlers
# ============================================================================


def cmd_dump(args: argparse.Namespace) -> int:
    """Dump a database into a new dump directory.

    Wraps the async implementation with ``asyncio.run()``.

    Args:
        args: Parsed CLI arguments.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        config = BackupConfig(
            db_uri=_resolve_db_uri(args),
            dump_dir=Path(args.dump_dir),
            jobs=args.jobs,
            verbose=args.verbose,
            dump_roles=args.dump_roles,
            dump_tablespaces=args.dump_tablespaces,
            dump_pause_jobs=args.pause_jobs,
            dump_pause_udas=args.pause_udas,
            dump_job_finish_timeout=args.job_finish_timeout,
        )
    except (ValueError, FileNotFoundError, ProfileNotFoundError) as e:
        _print_error(str(e))
        return 1

    return asyncio.run(_async_dump(config))


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a dump directory into a database.

    Wraps the async implementation with ``asyncio.run()``.

    Args:
        args: Parsed CLI arguments, including ``pg_restore_flags``.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        config = BackupConfig(
            db_uri=_resolve_db_uri(args),
            dump_dir=Path(args.dump_dir),
            jobs=args.jobs,
            verbose=not args.quiet,
            do_update=args.do_update,
            pg_restore_flags=tuple(args.pg_restore_flags),
        )
    except (ValueError, FileNotFoundError, ProfileNotFoundError) as e:
        _print_error(str(e))
        return 1

    return asyncio.run(_async_restore(config))


def cmd_verify(args: argparse.Namespace) -> int:
    """Compare tables between the original and the restored database.

    Args:
        args: Parsed CLI arguments.

    Returns:
        0 if every table matches, 1 otherwise.
    """
    results: list[TableComparison] = []
    for qualified in args.tables:
        schema, _, table = qualified.rpartition(".")
        try:
            results.append(
                compare_tables(
                    args.source_uri, args.target_uri, schema or "public", table
                )
            )
        except DatabaseError as e:
            _print_error(f"{qualified}: {e}")
            return 1

    table_view = Table(title="Table Comparison", show_header=True, header_style="bold")
    table_view.add_column("Table")
    table_view.add_column("Rows", justify="right")
    table_view.add_column("Result")
    for result in results:
        table_view.add_row(
            result.table,
            str(result.rows_compared),
            "[green]match[/green]" if result.matched else "[red]MISMATCH[/red]",
        )
    console.print(table_view)

    failed = [r for r in results if not r.matched]
    for result in failed:
        console.print(f"  [red]{escape(result.format_report())}[/red]")
    return 1 if failed else 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from ts-backup.toml.

    Reads only local TOML config -- no database calls.

    Args:
        args: Parsed CLI arguments.

    Returns:
        0 on success, 1 if the config file is missing or invalid.
    """
    try:
        config = load_profiles(args.config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    current = args.profile or os.environ.get(PROFILE_ENV_VAR)

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        table.add_row(
            marker,
            f"[bold cyan]{name}[/bold cyan]" if name == current else name,
            profile.description or "",
        )

    console.print(table)

    if current in config.profiles:
        console.print("\n[bold green]*[/bold green] = selected profile")

    return 0


# ============================================================================
# Main entry point
# ============================================================================


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db-uri",
        help="Connection URI of the database (default: from --profile)",
    )
    parser.add_argument(
        "--dump-dir",
        required=True,
        help="Dump directory; dump creates it and fails if it exists",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=4,
        help="Parallel pg_dump/pg_restore jobs, 0 disables parallelism (default: 4)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="ts-backup",
        description="TimescaleDB-aware pg_dump and pg_restore",
    )

    # Global options
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Profiles file (default: ./ts-backup.toml)",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help=f"Connection profile to use (default: ${PROFILE_ENV_VAR})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # dump command
    p_dump = subparsers.add_parser(
        "dump",
        help="Dump a database to a new directory",
    )
    _add_connection_args(p_dump)
    p_dump.add_argument(
        "--verbose",
        action="store_true",
        help="Verbose pg_dump output and job mover progress",
    )
    p_dump.add_argument(
        "--no-dump-roles",
        dest="dump_roles",
        action="store_false",
        help="Do not dump roles with pg_dumpall",
    )
    p_dump.add_argument(
        "--no-dump-tablespaces",
        dest="dump_tablespaces",
        action="store_false",
        help="Do not dump tablespaces with pg_dumpall",
    )
    p_dump.add_argument(
        "--no-pause-jobs",
        dest="pause_jobs",
        action="store_false",
        help="Do not reschedule compression/reorder jobs during a parallel dump",
    )
    p_dump.add_argument(
        "--no-pause-udas",
        dest="pause_udas",
        action="store_false",
        help="Do not reschedule user-defined actions during a parallel dump",
    )
    p_dump.add_argument(
        "--job-finish-timeout",
        type=int,
        default=600,
        help=(
            "Seconds to wait for running jobs to finish; 0 waits forever, "
            "negative does not wait (default: 600)"
        ),
    )
    p_dump.set_defaults(func=cmd_dump)

    # restore command
    p_restore = subparsers.add_parser(
        "restore",
        help="Restore a dump directory (extra pg_restore flags after --)",
    )
    _add_connection_args(p_restore)
    p_restore.add_argument(
        "--quiet",
        action="store_true",
        help="Do not pass --verbose to pg_restore",
    )
    p_restore.add_argument(
        "--no-update",
        dest="do_update",
        action="store_false",
        help="Leave TimescaleDB at the dumped version instead of updating it",
    )
    p_restore.set_defaults(func=cmd_restore)

    # verify command
    p_verify = subparsers.add_parser(
        "verify",
        help="Compare table contents between two databases",
    )
    p_verify.add_argument("--source-uri", required=True, help="Original database")
    p_verify.add_argument("--target-uri", required=True, help="Restored database")
    p_verify.add_argument(
        "--table",
        dest="tables",
        action="append",
        required=True,
        help="Table to compare as schema.table (repeatable)",
    )
    p_verify.set_defaults(func=cmd_verify)

    # profiles command
    p_profiles = subparsers.add_parser(
        "profiles",
        help="List available profiles",
    )
    p_profiles.set_defaults(func=cmd_profiles)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    own_args, passthrough = _split_passthrough(
        sys.argv[1:] if argv is None else argv
    )
    parser = build_parser()
    args = parser.parse_args(own_args)
    if passthrough and args.command != "restore":
        parser.error("arguments after -- are only accepted by restore")
    args.pg_restore_flags = passthrough

    _configure_logging(args.debug)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
