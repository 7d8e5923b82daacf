"""ts-backup: TimescaleDB-aware wrapper around pg_dump and pg_restore.

Keeps compression and reorder jobs from deadlocking a parallel dump, records
the extension version next to the dump, and restores in four passes around
the extension's pre/post restore hooks.

Usage:
    from ts_backup import BackupConfig, dump_database, restore_database

    config = BackupConfig(db_uri="postgresql://localhost/tsdb", dump_dir="dump")
    await dump_database(config)
"""

__version__ = "0.1.0"

# Config
from ts_backup.config.loader import ProfileNotFoundError, load_profiles, resolve_url
from ts_backup.config.models import BackupConfig, DatabaseProfile

# Adapters
from ts_backup.adapters.base import DatabaseConnector, DatabaseSession
from ts_backup.adapters.postgres import PostgresConnector

# Operations
from ts_backup.backup.dump import dump_database
from ts_backup.backup.restore import restore_database
from ts_backup.backup.verify import compare_tables

# TimescaleDB
from ts_backup.timescale.info import TimescaleInfo
from ts_backup.timescale.mover import JobMover

# Errors
from ts_backup.errors import TsBackupError

__all__ = [
    # Config
    "BackupConfig",
    "DatabaseProfile",
    "ProfileNotFoundError",
    "load_profiles",
    "resolve_url",
    # Adapters
    "DatabaseConnector",
    "DatabaseSession",
    "PostgresConnector",
    # Operations
    "dump_database",
    "restore_database",
    "compare_tables",
    # TimescaleDB
    "TimescaleInfo",
    "JobMover",
    # Errors
    "TsBackupError",
]
