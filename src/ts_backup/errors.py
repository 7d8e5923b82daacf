"""Exception hierarchy for dump and restore operations.

Every error raised by ``ts_backup`` derives from ``TsBackupError`` so the CLI
can report it uniformly.  Errors are wrapped with phase context at each layer
(``raise ... from exc``) and never retried automatically.

Usage:
    from ts_backup.errors import TsBackupError, RestorePhaseError

    try:
        await restore_database(config)
    except RestorePhaseError as e:
        print(f"{e.phase} failed: {e}")
"""


class TsBackupError(Exception):
    """Base class for all dump/restore errors."""

    pass


# ============================================================================
# Environment
# ============================================================================


class BinaryNotFoundError(TsBackupError):
    """Raised when a wrapped PostgreSQL binary is not on PATH."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} not found, please make sure it is installed")


# ============================================================================
# Database
# ============================================================================


class DatabaseError(TsBackupError):
    """Raised when a database statement fails."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when a connection to the database cannot be opened."""

    pass


class UnknownTimescaleVersionError(TsBackupError):
    """Raised when the installed TimescaleDB major version has no job dialect."""

    def __init__(self, major_version: int):
        self.major_version = major_version
        super().__init__(f"unknown Timescale major version: {major_version}")


class ExtensionNotFoundError(TsBackupError):
    """Raised when the timescaledb extension is not installed."""

    pass


# ============================================================================
# Subprocesses
# ============================================================================


class CommandError(TsBackupError):
    """Base class for wrapped-binary failures."""

    def __init__(self, message: str, argv: list[str]):
        self.argv = argv
        super().__init__(message)


class CommandStartError(CommandError):
    """Raised when the process could not be started."""

    pass


class CommandOutputError(CommandError):
    """Raised when the process output could not be captured."""

    pass


class CommandExitError(CommandError):
    """Raised when the process exits with a nonzero status."""

    def __init__(self, message: str, argv: list[str], returncode: int):
        self.returncode = returncode
        super().__init__(message, argv)


class DumpError(TsBackupError):
    """Raised when a dump phase fails."""

    pass


class RestorePhaseError(TsBackupError):
    """Raised when one of the restore passes fails."""

    def __init__(self, phase: str, cause: Exception):
        self.phase = phase
        super().__init__(f"pg_restore run failed {phase}: {cause}")


class JobWaitTimeoutError(TsBackupError):
    """Raised when background jobs did not stop within the configured timeout."""

    pass


# ============================================================================
# Metadata and consistency
# ============================================================================


class MetadataError(TsBackupError):
    """Raised when the TimescaleDB version info file cannot be read or written."""

    pass


class ConsistencyError(TsBackupError):
    """Base class for checks that require manual intervention."""

    pass


class ExtensionMismatchError(ConsistencyError):
    """Raised when the installed extension differs from the expected one."""

    def __init__(
        self,
        expected_schema: str,
        expected_version: str,
        actual_schema: str,
        actual_version: str,
    ):
        self.expected_schema = expected_schema
        self.expected_version = expected_version
        self.actual_schema = actual_schema
        self.actual_version = actual_version
        super().__init__(
            f"TimescaleDB extension is in schema '{actual_schema}' at version "
            f"'{actual_version}', expected schema '{expected_schema}' at version "
            f"'{expected_version}'. Please drop the extension and restart the restore"
        )


class HookFailedError(ConsistencyError):
    """Raised when timescaledb_pre_restore/post_restore returns false."""

    pass


class UpdateVerificationError(ConsistencyError):
    """Raised when the extension was not updated to the default version."""

    pass


class CombinedError(TsBackupError):
    """Raised when an operation and its cleanup both failed.

    Keeps both exceptions instead of discarding the cleanup failure.
    """

    def __init__(self, primary: Exception, cleanup: Exception):
        self.primary = primary
        self.cleanup = cleanup
        super().__init__(f"{primary}; additionally, cleanup failed: {cleanup}")
