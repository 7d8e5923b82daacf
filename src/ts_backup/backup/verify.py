"""Confirm a restored table holds exactly the rows of the original.

Both tables are read in a total order (``ORDER BY t`` sorts by the whole row)
and compared row by row.  The comparison itself is pure logic; only
``compare_tables`` touches the databases.

Uses psycopg (v3) for synchronous PostgreSQL connections.

Usage:
    from ts_backup.backup.verify import compare_tables

    result = compare_tables(source_uri, restored_uri, "public", "conditions")
    if not result.matched:
        print(result.format_report())
"""

from collections.abc import Sequence
from typing import Any, Literal

import psycopg
from psycopg import sql
from pydantic import BaseModel

from ts_backup.errors import DatabaseConnectionError, DatabaseError

CONNECT_TIMEOUT_SECONDS = 10

_SELECT_ORDERED = "SELECT * FROM {}.{} AS t ORDER BY t"


class TableComparison(BaseModel):
    """Result of comparing one table between two databases.

    Example:
        >>> TableComparison(table="public.t", matched=True, rows_compared=3).format_report()
        'public.t: 3 rows match'
    """

    table: str
    matched: bool
    rows_compared: int = 0
    problem: Literal["too_few_rows", "too_many_rows", "row_mismatch"] | None = None
    mismatch_row: int | None = None  # 1-based, for row_mismatch

    def format_report(self) -> str:
        """Format the comparison as a one-line report."""
        if self.matched:
            return f"{self.table}: {self.rows_compared} rows match"
        if self.problem == "too_few_rows":
            return f"Restored table {self.table} has too few rows"
        if self.problem == "too_many_rows":
            return f"Restored table {self.table} has too many rows"
        return (
            f"Restored table {self.table} has element unequal to original "
            f"row: {self.mismatch_row}"
        )


def compare_rows(
    table: str,
    source_rows: Sequence[Sequence[Any]],
    target_rows: Sequence[Sequence[Any]],
) -> TableComparison:
    """Compare two ordered row lists, stopping at the first difference."""
    for index, source in enumerate(source_rows):
        if index >= len(target_rows):
            return TableComparison(
                table=table,
                matched=False,
                rows_compared=index,
                problem="too_few_rows",
            )
        if tuple(source) != tuple(target_rows[index]):
            return TableComparison(
                table=table,
                matched=False,
                rows_compared=index,
                problem="row_mismatch",
                mismatch_row=index + 1,
            )

    if len(target_rows) > len(source_rows):
        return TableComparison(
            table=table,
            matched=False,
            rows_compared=len(source_rows),
            problem="too_many_rows",
        )
    return TableComparison(table=table, matched=True, rows_compared=len(source_rows))


def compare_tables(
    source_uri: str, target_uri: str, schema: str, table: str
) -> TableComparison:
    """Compare ``schema.table`` between two databases.

    Args:
        source_uri: Connection URI of the original database.
        target_uri: Connection URI of the restored database.
        schema: Schema of the table.
        table: Table name (not quoted; quoting is applied here).

    Raises:
        DatabaseConnectionError: If either database is unreachable.
        DatabaseError: If the query fails, e.g. the table does not exist.
    """
    query = sql.SQL(_SELECT_ORDERED).format(sql.Identifier(schema), sql.Identifier(table))
    source_rows = _fetch_rows(source_uri, query)
    target_rows = _fetch_rows(target_uri, query)
    return compare_rows(f"{schema}.{table}", source_rows, target_rows)


def _fetch_rows(database_url: str, query: sql.Composed) -> list[tuple[Any, ...]]:
    try:
        conn = psycopg.connect(database_url, connect_timeout=CONNECT_TIMEOUT_SECONDS)
    except psycopg.Error as e:
        raise DatabaseConnectionError(f"failed to connect to database: {e}") from e

    try:
        with conn.cursor() as cur:
            cur.execute(query)
            return cur.fetchall()
    except psycopg.Error as e:
        raise DatabaseError(f"failed to read table: {e}") from e
    finally:
        conn.close()
