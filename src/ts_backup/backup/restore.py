"""Restore a directory-format dump into a TimescaleDB database.

A plain ``pg_restore`` cannot restore hypertable data in parallel, and fails
for non-superusers on the extension comment.  The restore therefore runs in
four strictly sequential passes against a filtered table of contents:

1. ``pre-data`` in a single transaction;
2. data of ``_timescaledb_catalog`` and ``_timescaledb_config`` only,
   single-threaded (their foreign keys are circular);
3. all remaining data, in parallel;
4. ``post-data`` (indexes, constraints), in parallel.

The passes are bracketed by the extension's pre/post restore hooks, the
extension is recreated at the dumped version first, and optionally updated
to the default version afterwards.

Usage:
    from ts_backup.backup.restore import restore_database
    from ts_backup.config import BackupConfig

    config = BackupConfig(db_uri="postgresql://localhost/tsdb", dump_dir="dump")
    await restore_database(config)
"""

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from ts_backup.adapters.base import DatabaseConnector
from ts_backup.adapters.postgres import PostgresConnector
from ts_backup.config.models import BackupConfig
from ts_backup.errors import CombinedError, CommandError, RestorePhaseError
from ts_backup.runner import binary_version, find_binary, run_command
from ts_backup.timescale.extension import (
    create_timescale_at_version,
    run_post_restore,
    run_pre_restore,
    update_extension,
    verify_extension,
)
from ts_backup.timescale.info import TimescaleInfo, read_ts_info

logger = logging.getLogger(__name__)

# Changing the comment on an extension needs superuser; the restored comment
# is the default one anyway, so the entry is dropped from the TOC.
TOC_FILTER = "COMMENT - EXTENSION timescaledb"
TOC_PREFIX = "ts_restore_toc"
CATALOG_SCHEMAS = ("_timescaledb_catalog", "_timescaledb_config")


@dataclass(frozen=True)
class RestorePhase:
    """One pg_restore pass.

    Attributes:
        label: Where the restore was when this pass failed, used in errors.
        args: Arguments appended after the shared base arguments.
    """

    label: str
    args: tuple[str, ...]


def restore_phases(jobs: int) -> list[RestorePhase]:
    """The four restore passes in execution order."""
    parallel = (f"--jobs={jobs}",) if jobs > 0 else ()
    return [
        RestorePhase(
            "in pre-data section",
            ("--section=pre-data", "--single-transaction"),
        ),
        RestorePhase(
            "while restoring _timescaledb_catalog",
            ("--section=data", *(f"--schema={s}" for s in CATALOG_SCHEMAS)),
        ),
        RestorePhase(
            "while restoring user data",
            (
                *parallel,
                "--section=data",
                *(f"--exclude-schema={s}" for s in CATALOG_SCHEMAS),
            ),
        ),
        RestorePhase(
            "during post-data step",
            (*parallel, "--section=post-data"),
        ),
    ]


def build_restore_argv(
    pg_restore: str, config: BackupConfig, toc_path: str, phase: RestorePhase
) -> list[str]:
    """Full pg_restore command line for one pass.

    The dump directory must be the last argument.
    """
    argv = [
        pg_restore,
        f"--dbname={config.db_uri}",
        "--format=directory",
        f"--use-list={toc_path}",
    ]
    if config.verbose:
        argv.append("--verbose")
    argv.extend(config.pg_restore_flags)
    argv.extend(phase.args)
    argv.append(str(config.pg_dump_dir))
    return argv


async def make_restore_toc(pg_restore: str, dump_dir: Path, toc_file: TextIO) -> None:
    """Write the dump's table of contents, minus the extension comment.

    Raises:
        CommandError: If ``pg_restore --list`` fails.
    """
    await run_command(
        [pg_restore, str(dump_dir), "--list"],
        stdout=toc_file,
        filters=(TOC_FILTER,),
    )


async def restore_database(
    config: BackupConfig, connector: DatabaseConnector | None = None
) -> None:
    """Restore ``config.dump_dir`` into the database at ``config.db_uri``.

    Args:
        config: Run configuration.
        connector: Database connector; one is created from ``config.db_uri``
            (and disposed afterwards) when omitted.

    Raises:
        MetadataError: If the version info file is missing or invalid.  No
            DDL has run at that point.
        BinaryNotFoundError: If pg_restore is not installed.
        RestorePhaseError: If pg_restore could not report its version, or if a
            pass failed; later passes did not run.
        HookFailedError: If a pre/post restore hook returned false.
        UpdateVerificationError: If the update did not reach the default
            version.
        ExtensionMismatchError: If the extension changed during the restore.
        CombinedError: If a pass and the post-restore hook both failed.
    """
    info = read_ts_info(config.ts_info_file)

    pg_restore = find_binary("pg_restore")
    try:
        version = await binary_version(pg_restore)
    except CommandError as e:
        raise RestorePhaseError("while getting pg_restore version", e) from e
    logger.info("pg_restore version: %s", version)

    owns_connector = connector is None
    if connector is None:
        connector = PostgresConnector(config.db_uri)
    try:
        await _restore(config, connector, info, pg_restore)
    finally:
        if owns_connector:
            await connector.close()


async def _restore(
    config: BackupConfig,
    connector: DatabaseConnector,
    info: TimescaleInfo,
    pg_restore: str,
) -> None:
    schema = info.extension_schema
    await create_timescale_at_version(connector, schema, info.extension_version)
    await run_pre_restore(connector, schema)

    error: Exception | None = None
    try:
        await _run_passes(config, pg_restore)
    except Exception as e:
        error = e
        raise
    finally:
        # the database stays in restoring mode until post_restore runs
        try:
            await run_post_restore(connector, schema)
        except Exception as cleanup_error:
            if error is None:
                raise
            raise CombinedError(error, cleanup_error) from error

    expected_version = info.extension_version
    if config.do_update:
        expected_version = await update_extension(connector)
    await verify_extension(connector, schema, expected_version)


async def _run_passes(config: BackupConfig, pg_restore: str) -> None:
    fd, toc_path = tempfile.mkstemp(prefix=TOC_PREFIX)
    try:
        with os.fdopen(fd, "w") as toc_file:
            try:
                await make_restore_toc(pg_restore, config.pg_dump_dir, toc_file)
            except CommandError as e:
                raise RestorePhaseError("while writing TOC file", e) from e

        for phase in restore_phases(config.jobs):
            argv = build_restore_argv(pg_restore, config, toc_path, phase)
            try:
                await run_command(argv, prepend_time=True)
            except CommandError as e:
                raise RestorePhaseError(phase.label, e) from e
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(toc_path)
