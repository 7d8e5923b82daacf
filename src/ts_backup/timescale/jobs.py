"""SQL dialects and bookkeeping for rescheduling TimescaleDB background jobs.

Compression jobs (or any other job that performs DDL on a chunk, such as
reorder) running at the wrong time can deadlock a parallel dump: the job
takes a write lock while the main dump process holds a read lock, then asks
for an exclusive lock (waiting on the dump), and a dump worker then asks for
a read lock (waiting on the job).

Pausing jobs for the duration of the dump would leave them never running if
the dump crashed.  Instead, jobs about to start are pushed a little into the
future, repeatedly, and put back on schedule when the dump finishes.  A
crash means a job runs late, never that it stops running.

The queries differ between TimescaleDB 1.x (``policy_stats`` /
``alter_job_schedule``) and 2.x (``jobs`` + ``job_stats`` / ``alter_job``).
The dialect is selected once per run:

    queries = select_job_queries(TimescaleMajorVersion.V2, pause_udas=True)
    rows = await session.fetch_all(queries.move_jobs)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum

from ts_backup.errors import UnknownTimescaleVersionError

MAJOR_VERSION_SQL = """
    SELECT split_part(extversion, '.', 1)::INT AS major_version
    FROM pg_catalog.pg_extension
    WHERE extname = 'timescaledb'
    LIMIT 1
"""


class TimescaleMajorVersion(IntEnum):
    """TimescaleDB major versions with a known job dialect."""

    V1 = 1
    V2 = 2

    @classmethod
    def parse(cls, value: int) -> "TimescaleMajorVersion":
        """Map an installed major version to a dialect.

        Raises:
            UnknownTimescaleVersionError: For any value outside {1, 2}.
        """
        try:
            return cls(value)
        except ValueError as e:
            raise UnknownTimescaleVersionError(value) from e


@dataclass(frozen=True)
class JobSchedulePolicy:
    """Timing of job moves.

    Jobs starting within ``danger_window`` are moved to
    ``now() + move_offset + random() * move_jitter``.  On cleanup, jobs
    whose original start has passed go to
    ``now() + replace_floor + random() * replace_jitter`` so they do not all
    fire at once.
    """

    danger_window: timedelta = timedelta(minutes=10)
    move_offset: timedelta = timedelta(minutes=15)
    move_jitter: timedelta = timedelta(minutes=5)
    replace_floor: timedelta = timedelta(seconds=1)
    replace_jitter: timedelta = timedelta(minutes=5)


DEFAULT_POLICY = JobSchedulePolicy()


@dataclass(frozen=True)
class JobQueries:
    """The three statements the job mover runs.

    Attributes:
        running_jobs: One row with ``job_ids`` (comma separated) while any
            monitored job is executing, no rows otherwise.
        move_jobs: Moves every monitored job starting within the danger
            window; one row per moved job with ``job_id`` and ``prev_start``.
        replace_job: Puts ``:job_id`` back at ``:orig_start`` (or a near
            random time if that has passed); one row with ``moved``.
    """

    running_jobs: str
    move_jobs: str
    replace_job: str


# Jobs with last_finish and next_start = -infinity are the ones currently
# running.  There is no other indication of this in 1.x.
_V1_RUNNING = """
    SELECT string_agg(job_id::text, ', ') AS job_ids
    FROM timescaledb_information.policy_stats
    WHERE last_finish = '-infinity' AND next_start = '-infinity'
      AND job_type IN ('compress_chunks', 'reorder')
    HAVING string_agg(job_id::text, ', ') IS NOT NULL
"""

_V1_MOVE = """
    SELECT t.job_id, prev_start FROM
        (SELECT (alter_job_schedule(p.job_id,
                    next_start => now() + {move_offset} + random() * {move_jitter})).*,
                p.next_start AS prev_start
         FROM timescaledb_information.policy_stats p
         WHERE NOT (last_finish = '-infinity' AND next_start = '-infinity')
           AND next_start < now() + {danger_window}
           AND p.job_type IN ('compress_chunks', 'reorder')) t
"""

_V1_REPLACE = """
    SELECT (alter_job_schedule(CAST(:job_id AS INTEGER),
                next_start => CASE WHEN CAST(:orig_start AS timestamptz) > now()
                                   THEN CAST(:orig_start AS timestamptz)
                                   ELSE now() + {replace_floor} + random() * {replace_jitter}
                              END)).job_id = CAST(:job_id AS INTEGER) AS moved
"""

# Jobs with next_start = -infinity, last_run_status IS NULL and
# job_status = 'Scheduled' are the ones currently running in 2.x.
_V2_RUNNING = """
    SELECT string_agg(j.job_id::text, ', ') AS job_ids
    FROM timescaledb_information.jobs j
    INNER JOIN timescaledb_information.job_stats js ON j.job_id = js.job_id
    WHERE js.next_start = '-infinity' AND js.last_run_status IS NULL
      AND js.job_status = 'Scheduled'
      AND {job_filter}
    HAVING string_agg(j.job_id::text, ', ') IS NOT NULL
"""

_V2_MOVE = """
    SELECT t.job_id, prev_start FROM
        (SELECT (alter_job(js.job_id,
                    next_start => now() + {move_offset} + random() * {move_jitter})).*,
                js.next_start AS prev_start
         FROM timescaledb_information.jobs j
         INNER JOIN timescaledb_information.job_stats js ON j.job_id = js.job_id
         WHERE NOT (js.next_start = '-infinity' AND js.last_run_status IS NULL
                    AND js.job_status = 'Scheduled')
           AND js.next_start < now() + {danger_window}
           AND {job_filter}) t
"""

_V2_REPLACE = """
    SELECT (alter_job(CAST(:job_id AS INTEGER),
                next_start => CASE WHEN CAST(:orig_start AS timestamptz) > now()
                                   THEN CAST(:orig_start AS timestamptz)
                                   ELSE now() + {replace_floor} + random() * {replace_jitter}
                              END)).job_id = CAST(:job_id AS INTEGER) AS moved
"""

# 2.x exposes no job type; the application name prefix is the best we have
_V2_JOB_PREFIXES = ("Compression", "Reorder")
_V2_UDA_PREFIX = "User-Defined"


def _interval(delta: timedelta) -> str:
    return f"interval '{int(delta.total_seconds())} seconds'"


def _v2_job_filter(pause_udas: bool) -> str:
    prefixes = list(_V2_JOB_PREFIXES)
    if pause_udas:
        prefixes.append(_V2_UDA_PREFIX)
    likes = " OR ".join(f"j.application_name LIKE '{p}%'" for p in prefixes)
    return f"({likes})"


def select_job_queries(
    major_version: int,
    pause_udas: bool = True,
    policy: JobSchedulePolicy = DEFAULT_POLICY,
) -> JobQueries:
    """Build the job mover's statements for an installed major version.

    Args:
        major_version: Installed TimescaleDB major version.
        pause_udas: Also move user-defined actions (2.x only; 1.x has none).
        policy: Danger window and offsets.

    Returns:
        JobQueries for the version's dialect.

    Raises:
        UnknownTimescaleVersionError: If the major version is not 1 or 2.
    """
    dialect = TimescaleMajorVersion.parse(major_version)
    timing = {
        "danger_window": _interval(policy.danger_window),
        "move_offset": _interval(policy.move_offset),
        "move_jitter": _interval(policy.move_jitter),
        "replace_floor": _interval(policy.replace_floor),
        "replace_jitter": _interval(policy.replace_jitter),
    }

    if dialect is TimescaleMajorVersion.V1:
        return JobQueries(
            running_jobs=_V1_RUNNING,
            move_jobs=_V1_MOVE.format(**timing),
            replace_job=_V1_REPLACE.format(**timing),
        )

    job_filter = _v2_job_filter(pause_udas)
    return JobQueries(
        running_jobs=_V2_RUNNING.format(job_filter=job_filter),
        move_jobs=_V2_MOVE.format(job_filter=job_filter, **timing),
        replace_job=_V2_REPLACE.format(**timing),
    )


class MovedJobs:
    """Ledger of rescheduled jobs and their original next start.

    The first recorded start of a job wins: later detections of the same
    job (it is moved again on every tick while inside the danger window)
    never overwrite it.
    """

    def __init__(self) -> None:
        self._original_starts: dict[int, datetime] = {}

    def record(self, job_id: int, original_start: datetime) -> bool:
        """Record a moved job; returns False if it was already tracked."""
        if job_id in self._original_starts:
            return False
        self._original_starts[job_id] = original_start
        return True

    def original_start(self, job_id: int) -> datetime | None:
        return self._original_starts.get(job_id)

    def drain(self) -> list[tuple[int, datetime]]:
        """Remove and return every entry, so each is replayed exactly once."""
        entries = list(self._original_starts.items())
        self._original_starts.clear()
        return entries

    def __len__(self) -> int:
        return len(self._original_starts)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._original_starts
