"""Dump, restore and restore verification.

Usage:
    from ts_backup.backup import dump_database, restore_database
    from ts_backup.backup import compare_tables
"""

from ts_backup.backup.dump import dump_database
from ts_backup.backup.restore import RestorePhase, restore_database, restore_phases
from ts_backup.backup.verify import TableComparison, compare_rows, compare_tables

__all__ = [
    "dump_database",
    "restore_database",
    "RestorePhase",
    "restore_phases",
    "TableComparison",
    "compare_rows",
    "compare_tables",
]
