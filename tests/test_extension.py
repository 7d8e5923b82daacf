"""Tests for the TimescaleDB extension lifecycle functions."""

import pytest

from ts_backup.errors import (
    ConsistencyError,
    DatabaseError,
    ExtensionMismatchError,
    ExtensionNotFoundError,
    HookFailedError,
    UpdateVerificationError,
)
from ts_backup.timescale.extension import (
    create_timescale_at_version,
    get_timescale_info,
    run_post_restore,
    run_pre_restore,
    update_extension,
    verify_extension,
)

INFO_SQL = "pg_extension e"
AVAILABLE_SQL = "pg_available_extensions"


def _ext_row(version: str = "2.11.2", schema: str = "public") -> dict:
    return {"extension_version": version, "extension_schema": schema}


# ------------------------------------------------------------------
# Inspection
# ------------------------------------------------------------------


class TestGetTimescaleInfo:
    """get_timescale_info reads version and schema of the live extension."""

    async def test_returns_info(self, connector):
        connector.script(INFO_SQL, _ext_row("2.11.2", "ts"))
        info = await get_timescale_info(connector)
        assert info.extension_version == "2.11.2"
        assert info.extension_schema == "ts"
        assert info.metadata_version == 1

    async def test_missing_extension(self, connector):
        connector.script(INFO_SQL, None)
        with pytest.raises(ExtensionNotFoundError, match="make sure it is installed"):
            await get_timescale_info(connector)

    async def test_closes_connection(self, connector):
        connector.script(INFO_SQL, _ext_row())
        await get_timescale_info(connector)
        assert connector.connections_opened == connector.connections_closed == 1


# ------------------------------------------------------------------
# Recreate at version
# ------------------------------------------------------------------


class TestCreateTimescaleAtVersion:
    """Drop and create run on separate connections."""

    async def test_drop_then_create_on_new_connection(self, connector):
        connector.script(INFO_SQL, _ext_row("1.7.5", "public"))
        await create_timescale_at_version(connector, "public", "1.7.5")

        drop = connector.calls_matching("DROP EXTENSION")
        create = connector.calls_matching("CREATE EXTENSION")
        assert len(drop) == 1 and len(create) == 1
        assert drop[0].connection == 0
        assert create[0].connection == 1
        assert "CASCADE" not in drop[0].sql
        assert "IF EXISTS timescaledb" in drop[0].sql

    async def test_create_statement(self, connector):
        connector.script(INFO_SQL, _ext_row("2.11.2", "my schema"))
        await create_timescale_at_version(connector, "my schema", "2.11.2")

        create = connector.calls_matching("CREATE EXTENSION")[0]
        assert create.sql == (
            'CREATE EXTENSION IF NOT EXISTS timescaledb '
            'WITH SCHEMA "my schema" VERSION \'2.11.2\''
        )

    async def test_mismatch_after_create(self, connector):
        connector.script(INFO_SQL, _ext_row("2.12.0", "public"))
        with pytest.raises(ExtensionMismatchError) as exc_info:
            await create_timescale_at_version(connector, "public", "2.11.2")
        assert exc_info.value.actual_version == "2.12.0"
        assert exc_info.value.expected_version == "2.11.2"
        assert "drop the extension" in str(exc_info.value)

    async def test_missing_after_create(self, connector):
        connector.script(INFO_SQL, None)
        with pytest.raises(ExtensionNotFoundError):
            await create_timescale_at_version(connector, "public", "2.11.2")

    async def test_drop_failure_wrapped(self, connector):
        connector.script("DROP EXTENSION", DatabaseError("cannot drop"))
        with pytest.raises(DatabaseError, match="error dropping old extension"):
            await create_timescale_at_version(connector, "public", "2.11.2")
        assert connector.calls_matching("CREATE EXTENSION") == []

    async def test_create_failure_wrapped(self, connector):
        connector.script("CREATE EXTENSION", DatabaseError("no such version"))
        with pytest.raises(DatabaseError, match="at version '9.9.9'"):
            await create_timescale_at_version(connector, "public", "9.9.9")


# ------------------------------------------------------------------
# Hooks
# ------------------------------------------------------------------


class TestRestoreHooks:
    """Pre/post restore hooks must return true."""

    async def test_pre_restore_success(self, connector):
        connector.script("timescaledb_pre_restore", {"ok": True})
        await run_pre_restore(connector, "public")
        call = connector.calls_matching("timescaledb_pre_restore")[0]
        assert call.sql == 'SELECT "public".timescaledb_pre_restore() AS ok'

    async def test_pre_restore_false(self, connector):
        connector.script("timescaledb_pre_restore", {"ok": False})
        with pytest.raises(HookFailedError, match="timescaledb_pre_restore"):
            await run_pre_restore(connector, "public")

    async def test_post_restore_no_row(self, connector):
        connector.script("timescaledb_post_restore", None)
        with pytest.raises(HookFailedError):
            await run_post_restore(connector, "public")

    async def test_hook_failure_is_consistency_error(self, connector):
        connector.script("timescaledb_post_restore", {"ok": False})
        with pytest.raises(ConsistencyError):
            await run_post_restore(connector, "ts")

    async def test_hook_database_error_propagates(self, connector):
        connector.script("timescaledb_post_restore", DatabaseError("function missing"))
        with pytest.raises(DatabaseError, match="function missing"):
            await run_post_restore(connector, "public")


# ------------------------------------------------------------------
# Update and verification
# ------------------------------------------------------------------


class TestUpdateExtension:
    """update_extension reconnects and checks the default version."""

    async def test_update_success(self, connector):
        connector.script(
            AVAILABLE_SQL, {"installed_version": "2.14.0", "default_version": "2.14.0"}
        )
        assert await update_extension(connector) == "2.14.0"

        alter = connector.calls_matching("ALTER EXTENSION timescaledb UPDATE")
        check = connector.calls_matching(AVAILABLE_SQL)
        assert alter[0].connection == 0
        assert check[0].connection == 1

    async def test_version_mismatch(self, connector):
        connector.script(
            AVAILABLE_SQL, {"installed_version": "2.11.2", "default_version": "2.14.0"}
        )
        with pytest.raises(UpdateVerificationError, match="installed 2.11.2"):
            await update_extension(connector)

    async def test_alter_failure_wrapped(self, connector):
        connector.script("ALTER EXTENSION", DatabaseError("permission denied"))
        with pytest.raises(DatabaseError, match="failed to update extension version"):
            await update_extension(connector)


class TestVerifyExtension:
    """verify_extension compares schema and version."""

    async def test_matches(self, connector):
        connector.script(INFO_SQL, _ext_row("2.14.0", "public"))
        await verify_extension(connector, "public", "2.14.0")

    async def test_schema_mismatch(self, connector):
        connector.script(INFO_SQL, _ext_row("2.14.0", "other"))
        with pytest.raises(ExtensionMismatchError) as exc_info:
            await verify_extension(connector, "public", "2.14.0")
        assert exc_info.value.actual_schema == "other"
        assert str(exc_info.value).endswith(
            "Please drop the extension and restart the restore"
        )

    async def test_missing(self, connector):
        connector.script(INFO_SQL, None)
        with pytest.raises(ExtensionNotFoundError, match="after restore"):
            await verify_extension(connector, "public", "2.14.0")
