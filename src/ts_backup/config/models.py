"""Pydantic models for dump/restore configuration and connection profiles."""

import os
from pathlib import Path

import psycopg
from psycopg.conninfo import conninfo_to_dict
from pydantic import BaseModel, ConfigDict, Field, field_validator


PG_DUMP_SUBDIR = "pgdump"
TS_INFO_FILENAME = "timescaleVersionInfo.json"


# ============================================================================
# Run Configuration
# ============================================================================


class BackupConfig(BaseModel):
    """Configuration for one dump or restore invocation.

    Built once from CLI input and immutable afterwards.  ``dump_dir`` is made
    absolute on construction; the dump subdirectory and the version info file
    are derived from it.
    """

    model_config = ConfigDict(frozen=True)

    db_uri: str = Field(min_length=1)
    dump_dir: Path
    jobs: int = Field(default=4, ge=0)  # 0 disables parallelism
    verbose: bool = False
    # dump only
    dump_roles: bool = True
    dump_tablespaces: bool = True
    dump_pause_jobs: bool = True
    dump_pause_udas: bool = True
    dump_job_finish_timeout: int = 600  # seconds; <0 don't wait, 0 wait forever
    # restore only
    do_update: bool = True
    pg_restore_flags: tuple[str, ...] = ()

    @field_validator("dump_dir")
    @classmethod
    def _absolute_dump_dir(cls, value: Path) -> Path:
        return Path(os.path.abspath(value.expanduser()))

    @property
    def pg_dump_dir(self) -> Path:
        """Directory holding the directory-format pg_dump output."""
        return self.dump_dir / PG_DUMP_SUBDIR

    @property
    def ts_info_file(self) -> Path:
        """Path of the persisted TimescaleDB version info."""
        return self.dump_dir / TS_INFO_FILENAME

    @property
    def parallel(self) -> bool:
        return self.jobs > 0

    def database_name(self) -> str:
        """Database name from ``db_uri`` (used for ``pg_dumpall --database``).

        Raises:
            ValueError: If the connection string cannot be parsed.
        """
        try:
            params = conninfo_to_dict(self.db_uri)
        except psycopg.Error as e:
            raise ValueError(f"invalid connection string: {e}") from e
        # libpq falls back to PGDATABASE, then to the user name
        return (
            params.get("dbname")
            or os.environ.get("PGDATABASE")
            or params.get("user")
            or "postgres"
        )


# ============================================================================
# Profiles (ts-backup.toml)
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from ts-backup.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class ProfilesConfig(BaseModel):
    """All profiles from ts-backup.toml."""

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
