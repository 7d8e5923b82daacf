"""Database adapters package.

Provides the ``DatabaseSession`` / ``DatabaseConnector`` Protocols and the
async PostgreSQL implementation used for extension management and job
rescheduling.

Usage:
    from ts_backup.adapters import DatabaseConnector, PostgresConnector
"""

from ts_backup.adapters.base import DatabaseConnector, DatabaseSession
from ts_backup.adapters.postgres import PostgresConnector, PostgresSession

__all__ = [
    "DatabaseConnector",
    "DatabaseSession",
    "PostgresConnector",
    "PostgresSession",
]
