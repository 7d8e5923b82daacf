"""TimescaleDB extension lifecycle: inspect, recreate, restore hooks, update.

Every function opens its own short-lived connection(s) from the connector
and closes them before returning.

Usage:
    from ts_backup.timescale.extension import (
        create_timescale_at_version,
        get_timescale_info,
    )

    info = await get_timescale_info(connector)
    await create_timescale_at_version(
        connector, info.extension_schema, info.extension_version
    )
"""

import logging

from ts_backup.adapters.base import DatabaseConnector, DatabaseSession
from ts_backup.errors import (
    DatabaseError,
    ExtensionMismatchError,
    ExtensionNotFoundError,
    HookFailedError,
    UpdateVerificationError,
)
from ts_backup.timescale.info import TimescaleInfo

logger = logging.getLogger(__name__)

EXTENSION_INFO_SQL = """
    SELECT e.extversion AS extension_version, n.nspname AS extension_schema
    FROM pg_catalog.pg_extension e
    INNER JOIN pg_catalog.pg_namespace n ON e.extnamespace = n.oid
    WHERE e.extname = 'timescaledb'
"""

AVAILABLE_VERSION_SQL = """
    SELECT installed_version, default_version
    FROM pg_catalog.pg_available_extensions
    WHERE name = 'timescaledb'
"""

# No CASCADE: fail if anything depends on an extension that came in via the
# template database.
DROP_EXTENSION_SQL = "DROP EXTENSION IF EXISTS timescaledb"
UPDATE_EXTENSION_SQL = "ALTER EXTENSION timescaledb UPDATE"


async def _installed_extension(session: DatabaseSession) -> TimescaleInfo | None:
    row = await session.fetch_one(EXTENSION_INFO_SQL)
    if row is None:
        return None
    return TimescaleInfo(
        extension_version=row["extension_version"],
        extension_schema=row["extension_schema"],
    )


async def get_timescale_info(connector: DatabaseConnector) -> TimescaleInfo:
    """Read the installed extension's version and schema.

    Raises:
        ExtensionNotFoundError: If timescaledb is not installed.
        DatabaseError: If the query fails.
    """
    async with connector.connect() as session:
        info = await _installed_extension(session)
    if info is None:
        raise ExtensionNotFoundError(
            "TimescaleDB extension not found, make sure it is installed in "
            "the database being dumped"
        )
    return info


async def create_timescale_at_version(
    connector: DatabaseConnector, schema: str, version: str
) -> None:
    """Drop any existing extension, then create it at ``version`` in ``schema``.

    The create runs on a second connection: loading a different extension
    version on the backend that dropped the old one misbehaves.

    Raises:
        DatabaseError: If the drop or create fails.
        ExtensionNotFoundError: If the extension is missing after create.
        ExtensionMismatchError: If it was created elsewhere or at another
            version.
    """
    async with connector.connect() as session:
        try:
            await session.execute(DROP_EXTENSION_SQL)
        except DatabaseError as e:
            raise DatabaseError(f"error dropping old extension version: {e}") from e

    async with connector.connect() as session:
        stmt = (
            f"CREATE EXTENSION IF NOT EXISTS timescaledb "
            f"WITH SCHEMA {session.quote_identifier(schema)} VERSION '{version}'"
        )
        try:
            await session.execute(stmt)
        except DatabaseError as e:
            raise DatabaseError(
                f"error creating extension in schema '{schema}' at version "
                f"'{version}': {e}"
            ) from e

        installed = await _installed_extension(session)
        if installed is None:
            raise ExtensionNotFoundError(
                "could not confirm creation of TimescaleDB extension"
            )
        _check_matches(installed, schema, version)

    logger.info("Created timescaledb %s in schema %s", version, schema)


async def _call_hook(connector: DatabaseConnector, schema: str, hook: str) -> None:
    async with connector.connect() as session:
        row = await session.fetch_one(
            f"SELECT {session.quote_identifier(schema)}.{hook}() AS ok"
        )
    if row is None or not row["ok"]:
        raise HookFailedError(f"TimescaleDB {hook} function failed to run")


async def run_pre_restore(connector: DatabaseConnector, schema: str) -> None:
    """Call ``timescaledb_pre_restore()``; it must return true.

    Raises:
        HookFailedError: If the hook returned false.
        DatabaseError: If the call fails.
    """
    await _call_hook(connector, schema, "timescaledb_pre_restore")


async def run_post_restore(connector: DatabaseConnector, schema: str) -> None:
    """Call ``timescaledb_post_restore()``; it must return true.

    Raises:
        HookFailedError: If the hook returned false.
        DatabaseError: If the call fails.
    """
    await _call_hook(connector, schema, "timescaledb_post_restore")


async def update_extension(connector: DatabaseConnector) -> str:
    """Update the extension to the default installed version.

    Reconnects after the update to confirm the server still accepts
    connections, then checks the installed version equals the default one.

    Returns:
        The installed (default) version after the update.

    Raises:
        UpdateVerificationError: If the installed version is not the default.
        DatabaseError: If the update or the check fails.
    """
    async with connector.connect() as session:
        try:
            await session.execute(UPDATE_EXTENSION_SQL)
        except DatabaseError as e:
            raise DatabaseError(f"failed to update extension version: {e}") from e

    try:
        async with connector.connect() as session:
            row = await session.fetch_one(AVAILABLE_VERSION_SQL)
    except DatabaseError as e:
        raise DatabaseError(f"failed to connect after updating extension: {e}") from e

    if row is None or row["installed_version"] != row["default_version"]:
        installed = row["installed_version"] if row else None
        default = row["default_version"] if row else None
        raise UpdateVerificationError(
            f"TimescaleDB extension was not updated to the default version "
            f"(installed {installed}, default {default})"
        )
    logger.info("Updated timescaledb to %s", row["installed_version"])
    return row["installed_version"]


async def verify_extension(
    connector: DatabaseConnector, schema: str, version: str
) -> None:
    """Confirm the installed extension is in ``schema`` at ``version``.

    Raises:
        ExtensionNotFoundError: If timescaledb is not installed.
        ExtensionMismatchError: If schema or version differ; something else
            changed the extension during the restore.
    """
    async with connector.connect() as session:
        installed = await _installed_extension(session)
    if installed is None:
        raise ExtensionNotFoundError(
            "TimescaleDB extension not found after restore, please drop the "
            "extension and restart the restore"
        )
    _check_matches(installed, schema, version)


def _check_matches(installed: TimescaleInfo, schema: str, version: str) -> None:
    if installed.extension_schema != schema or installed.extension_version != version:
        raise ExtensionMismatchError(
            expected_schema=schema,
            expected_version=version,
            actual_schema=installed.extension_schema,
            actual_version=installed.extension_version,
        )
