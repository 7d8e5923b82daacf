"""Dump a TimescaleDB database with pg_dump, guarding against job deadlocks.

The dump directory layout is::

    <dump_dir>/
        timescaleVersionInfo.json   # extension version and schema
        roles.sql                   # pg_dumpall --roles-only (optional)
        tablespaces.sql             # pg_dumpall --tablespaces-only (optional)
        pgdump/                     # pg_dump --format=directory

For a parallel dump a ``JobMover`` runs for the whole operation, keeping
compression and reorder jobs from starting while pg_dump workers hold locks.

Usage:
    from ts_backup.backup.dump import dump_database
    from ts_backup.config import BackupConfig

    config = BackupConfig(db_uri="postgresql://localhost/tsdb", dump_dir="dump")
    await dump_database(config)
"""

import logging
import os

from ts_backup.adapters.base import DatabaseConnector
from ts_backup.adapters.postgres import PostgresConnector
from ts_backup.config.models import BackupConfig
from ts_backup.errors import CombinedError, CommandError, DumpError
from ts_backup.runner import binary_version, find_binary, run_command
from ts_backup.timescale.extension import get_timescale_info
from ts_backup.timescale.info import write_ts_info
from ts_backup.timescale.mover import JobMover

logger = logging.getLogger(__name__)

DUMPALL_TYPES = {
    "roles": "--roles-only",
    "tablespaces": "--tablespaces-only",
}


async def dump_database(
    config: BackupConfig, connector: DatabaseConnector | None = None
) -> None:
    """Dump the database described by ``config`` into ``config.dump_dir``.

    Args:
        config: Run configuration.
        connector: Database connector; one is created from ``config.db_uri``
            (and disposed afterwards) when omitted.

    Raises:
        JobWaitTimeoutError: If background jobs did not stop in time.
        BinaryNotFoundError: If pg_dump or pg_dumpall is not installed.
        DumpError: If a dump phase failed; the message names the phase.
        ExtensionNotFoundError: If timescaledb is not installed.
        MetadataError: If the version info file could not be written.
        CombinedError: If the dump failed and stopping the job mover did too.
    """
    owns_connector = connector is None
    if connector is None:
        connector = PostgresConnector(config.db_uri)
    try:
        await _dump_with_job_mover(config, connector)
    finally:
        if owns_connector:
            await connector.close()


async def _dump_with_job_mover(
    config: BackupConfig, connector: DatabaseConnector
) -> None:
    mover: JobMover | None = None
    if config.dump_pause_jobs and config.parallel:
        mover = JobMover(
            connector,
            pause_udas=config.dump_pause_udas,
            verbose=config.verbose,
        ).start()

    error: Exception | None = None
    try:
        if mover is not None:
            await _wait_for_jobs(mover, config.dump_job_finish_timeout)
        await _run_dump(config, connector)
    except Exception as e:
        error = e
        raise
    finally:
        # jobs go back on schedule however the dump ended
        if mover is not None:
            try:
                await mover.stop()
            except Exception as cleanup_error:
                if error is None:
                    raise
                raise CombinedError(error, cleanup_error) from error


async def _wait_for_jobs(mover: JobMover, timeout_seconds: int) -> None:
    """Wait for in-flight jobs; negative timeout skips, zero waits forever."""
    if timeout_seconds < 0:
        return
    timeout = None if timeout_seconds == 0 else float(timeout_seconds)
    await mover.wait_for_jobs_stopped(timeout=timeout)


async def _run_dump(config: BackupConfig, connector: DatabaseConnector) -> None:
    pg_dump = find_binary("pg_dump")
    try:
        version = await binary_version(pg_dump)
    except CommandError as e:
        raise DumpError(str(e)) from e
    logger.info("pg_dump version: %s", version)

    # fail before any expensive work if the extension or directory is unusable
    info = await get_timescale_info(connector)
    try:
        os.mkdir(config.dump_dir, 0o700)
    except OSError as e:
        raise DumpError(f"error with dump file creation: {e}") from e
    write_ts_info(config.ts_info_file, info)

    for dump_type, enabled in (
        ("roles", config.dump_roles),
        ("tablespaces", config.dump_tablespaces),
    ):
        if not enabled:
            continue
        logger.info("Dumping %s", dump_type)
        try:
            await run_dumpall(config, dump_type)
        except CommandError as e:
            raise DumpError(f"error dumping {dump_type}: {e}") from e

    try:
        await run_command(build_pg_dump_argv(config, pg_dump), prepend_time=True)
    except CommandError as e:
        raise DumpError(f"pg_dump run failed with: {e}") from e


async def run_dumpall(config: BackupConfig, dump_type: str) -> None:
    """Dump roles or tablespaces to ``<dump_dir>/<dump_type>.sql``.

    Passwords are never dumped: reading them needs access to pg_authid,
    which managed services do not grant.

    Raises:
        ValueError: If ``dump_type`` is not ``roles`` or ``tablespaces``.
        BinaryNotFoundError: If pg_dumpall is not installed.
        DumpError: If the connection string cannot be parsed.
        CommandError: If pg_dumpall fails.
    """
    if dump_type not in DUMPALL_TYPES:
        raise ValueError(f"unrecognized pg_dumpall type: {dump_type}")
    # assumed to be the same version as pg_dump
    pg_dumpall = find_binary("pg_dumpall")
    try:
        database = config.database_name()
    except ValueError as e:
        raise DumpError(str(e)) from e

    argv = [
        pg_dumpall,
        f"--dbname={config.db_uri}",
        # makes pg_dumpall connect to the dumped database, not to postgres
        f"--database={database}",
        f"--file={config.dump_dir / (dump_type + '.sql')}",
        "--no-role-passwords",
        DUMPALL_TYPES[dump_type],
    ]
    await run_command(argv)


def build_pg_dump_argv(config: BackupConfig, pg_dump: str) -> list[str]:
    """Command line for the directory-format pg_dump run."""
    argv = [
        pg_dump,
        f"--dbname={config.db_uri}",
        "--format=directory",
        f"--file={config.pg_dump_dir}",
    ]
    if config.verbose:
        argv.append("--verbose")
    if config.parallel:
        argv.append(f"--jobs={config.jobs}")
    return argv
