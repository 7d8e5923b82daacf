"""TimescaleDB-specific pieces: extension lifecycle and background jobs.

Usage:
    from ts_backup.timescale import JobMover, create_timescale_at_version
"""

from ts_backup.timescale.extension import (
    create_timescale_at_version,
    get_timescale_info,
    run_post_restore,
    run_pre_restore,
    update_extension,
    verify_extension,
)
from ts_backup.timescale.jobs import (
    JobQueries,
    JobSchedulePolicy,
    MovedJobs,
    TimescaleMajorVersion,
    select_job_queries,
)
from ts_backup.timescale.mover import JobMover

__all__ = [
    "JobMover",
    "JobQueries",
    "JobSchedulePolicy",
    "MovedJobs",
    "TimescaleMajorVersion",
    "select_job_queries",
    "create_timescale_at_version",
    "get_timescale_info",
    "run_pre_restore",
    "run_post_restore",
    "update_extension",
    "verify_extension",
]
