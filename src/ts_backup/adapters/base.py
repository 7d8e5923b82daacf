"""Database session and connector protocol definitions.

Defines the ``DatabaseSession`` and ``DatabaseConnector`` Protocols that the
extension manager and the job mover depend on.  All methods are
``async def`` -- the library is async-first.

A connector hands out sessions; each session is one dedicated backend
connection owned by whoever opened it.  Sessions are never shared between
concurrent tasks.

Usage:
    from ts_backup.adapters.base import DatabaseConnector

    async def installed_version(connector: DatabaseConnector) -> str | None:
        async with connector.connect() as session:
            row = await session.fetch_one(
                "SELECT extversion FROM pg_extension WHERE extname = :name",
                {"name": "timescaledb"},
            )
            return row["extversion"] if row else None
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class DatabaseSession(Protocol):
    """One open database connection.

    Statements run in autocommit mode: DDL and job rescheduling take effect
    as soon as the call returns.
    """

    async def fetch_one(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Run a query and return its first row.

        Args:
            sql: SQL text with ``:name`` placeholders.
            params: Optional dict of named parameters.

        Returns:
            Dict of column name to value, or ``None`` when the query returned
            no rows.

        Raises:
            DatabaseError: If the statement fails.
        """
        ...

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a query and return all rows.

        Args:
            sql: SQL text with ``:name`` placeholders.
            params: Optional dict of named parameters.

        Returns:
            List of dicts, one per row.  Empty list if no rows.

        Raises:
            DatabaseError: If the statement fails.
        """
        ...

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute a statement that returns no rows (DDL, ALTER EXTENSION).

        Raises:
            DatabaseError: If the statement fails.
        """
        ...

    def quote_identifier(self, name: str) -> str:
        """Quote an identifier (schema name) for inclusion in SQL text."""
        ...


class DatabaseConnector(Protocol):
    """Factory of dedicated database sessions."""

    def connect(self) -> AbstractAsyncContextManager[DatabaseSession]:
        """Open a new backend connection.

        Every call returns a fresh connection; nothing is pooled.

        Raises:
            DatabaseConnectionError: If the connection cannot be opened.

        Example:
            async with connector.connect() as session:
                await session.execute("DROP EXTENSION IF EXISTS timescaledb")
        """
        ...

    async def close(self) -> None:
        """Release engine resources."""
        ...
