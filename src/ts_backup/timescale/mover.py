"""Background task that keeps DDL-performing jobs away from a parallel dump.

``JobMover`` runs as an asyncio task next to ``pg_dump``.  On an immediate
first pass and then every ``poll_interval`` seconds it:

1. moves monitored jobs (compression, reorder, optionally user-defined
   actions) that are due within the danger window further into the future,
   recording each job's original start the first time it is moved;
2. while any monitored job is still executing, probes for it and resolves
   the "jobs stopped" future the first time none is.

When cancelled it puts every moved job back on schedule before exiting.
Any error ends the task with a warning; it never propagates to the dump,
which then runs without job protection.

Usage:
    mover = JobMover(connector, pause_udas=True).start()
    try:
        await mover.wait_for_jobs_stopped(timeout=600)
        await run_pg_dump()
    finally:
        await mover.stop()
"""

import asyncio
import logging
from datetime import datetime

from ts_backup.adapters.base import DatabaseConnector, DatabaseSession
from ts_backup.errors import ExtensionNotFoundError, JobWaitTimeoutError
from ts_backup.timescale.jobs import (
    DEFAULT_POLICY,
    MAJOR_VERSION_SQL,
    JobQueries,
    JobSchedulePolicy,
    MovedJobs,
    select_job_queries,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30.0


class JobMover:
    """Handle on the job-moving background task.

    Args:
        connector: Source of the task's single dedicated connection.
        pause_udas: Also move user-defined actions (TimescaleDB 2.x).
        verbose: Log each moved/replaced job at INFO instead of DEBUG.
        poll_interval: Seconds between passes.
        policy: Danger window and offsets for the move/replace queries.
    """

    def __init__(
        self,
        connector: DatabaseConnector,
        *,
        pause_udas: bool = True,
        verbose: bool = False,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        policy: JobSchedulePolicy = DEFAULT_POLICY,
    ) -> None:
        self._connector = connector
        self._pause_udas = pause_udas
        self._verbose = verbose
        self._poll_interval = poll_interval
        self._policy = policy
        self._moved = MovedJobs()
        self._cleanup = asyncio.Event()
        self._jobs_stopped: asyncio.Future[str] | None = None
        self._task: asyncio.Task[None] | None = None
        self._running_ids = ""

    # ------------------------------------------------------------------
    # Task handle
    # ------------------------------------------------------------------

    def start(self) -> "JobMover":
        """Schedule the task on the running loop; returns self."""
        if self._task is not None:
            raise RuntimeError("JobMover already started")
        self._jobs_stopped = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name="job-mover")
        return self

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def jobs_stopped(self) -> bool:
        """True once the running-jobs probe found nothing in flight."""
        return self._jobs_stopped is not None and self._jobs_stopped.done()

    async def wait_for_jobs_stopped(self, timeout: float | None = None) -> bool:
        """Block until in-flight jobs have stopped.

        Returns early (``False``) if the task ended without confirming,
        which means it aborted and the dump runs unprotected.

        Args:
            timeout: Seconds to wait; ``None`` waits forever.

        Returns:
            True if the jobs-stopped signal fired.

        Raises:
            JobWaitTimeoutError: If neither happened within ``timeout``.
        """
        if self._task is None or self._jobs_stopped is None:
            raise RuntimeError("JobMover not started")

        await asyncio.wait(
            {self._jobs_stopped, self._task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._jobs_stopped.done():
            return True
        if self._task.done():
            logger.warning(
                "Job mover exited before background jobs were confirmed "
                "stopped; continuing without job protection"
            )
            return False
        raise JobWaitTimeoutError(
            f"timed out after {timeout}s waiting for background jobs to stop"
        )

    def cancel(self) -> None:
        """Ask the task to put moved jobs back and exit."""
        self._cleanup.set()

    async def join(self) -> None:
        """Wait for the task to exit."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Cancel and wait; jobs are back on schedule when this returns."""
        self.cancel()
        await self.join()

    async def __aenter__(self) -> "JobMover":
        return self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Task body
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            async with self._connector.connect() as session:
                queries = await self._load_queries(session)
                await self._loop(session, queries)
        except Exception as e:
            logger.warning("problem while rescheduling jobs: %s", e)

    async def _load_queries(self, session: DatabaseSession) -> JobQueries:
        row = await session.fetch_one(MAJOR_VERSION_SQL)
        if row is None:
            raise ExtensionNotFoundError("TimescaleDB extension not found")
        return select_job_queries(
            row["major_version"], pause_udas=self._pause_udas, policy=self._policy
        )

    async def _loop(self, session: DatabaseSession, queries: JobQueries) -> None:
        # assume jobs are running until proven otherwise
        probing = True
        try:
            while True:
                await self._move_scheduled_jobs(session, queries)
                if probing:
                    probing = await self._probe_running_jobs(session, queries)
                if await self._wait_for_cleanup():
                    break
        except (asyncio.CancelledError, Exception):
            # put jobs back even when aborting or cancelled
            await self._reschedule_jobs(session, queries)
            raise
        await self._reschedule_jobs(session, queries)

    async def _wait_for_cleanup(self) -> bool:
        """Wait one poll interval; True if cleanup was requested."""
        try:
            await asyncio.wait_for(self._cleanup.wait(), timeout=self._poll_interval)
        except TimeoutError:
            return False
        return True

    async def _move_scheduled_jobs(
        self, session: DatabaseSession, queries: JobQueries
    ) -> None:
        rows = await session.fetch_all(queries.move_jobs)
        for row in rows:
            job_id = int(row["job_id"])
            if self._moved.record(job_id, row["prev_start"]):
                self._log("Moved job %d (was due at %s)", job_id, row["prev_start"])

    async def _probe_running_jobs(
        self, session: DatabaseSession, queries: JobQueries
    ) -> bool:
        """Returns True while monitored jobs are still executing."""
        row = await session.fetch_one(queries.running_jobs)
        if row is not None:
            self._running_ids = row["job_ids"]
            self._log(
                "Background jobs %s are currently running; these jobs may cause "
                "the dump to fail by causing deadlocks, the dump will wait for "
                "them to finish",
                row["job_ids"],
            )
            return True

        logger.info("Jobs %s have stopped, continuing", self._running_ids or "(none)")
        if self._jobs_stopped is not None and not self._jobs_stopped.done():
            self._jobs_stopped.set_result(self._running_ids)
        return False

    async def _reschedule_jobs(
        self, session: DatabaseSession, queries: JobQueries
    ) -> None:
        """Put every moved job back; a failing job does not stop the pass."""
        failed: list[int] = []
        for job_id, original_start in self._moved.drain():
            self._log("Scheduling job %d to start again", job_id)
            if not await self._replace_job(session, queries, job_id, original_start):
                failed.append(job_id)
        if failed:
            logger.warning(
                "could not put jobs %s back on schedule; they will run at their "
                "moved start time",
                ", ".join(str(j) for j in failed),
            )

    async def _replace_job(
        self,
        session: DatabaseSession,
        queries: JobQueries,
        job_id: int,
        original_start: datetime,
    ) -> bool:
        try:
            row = await session.fetch_one(
                queries.replace_job,
                {"job_id": job_id, "orig_start": original_start},
            )
        except Exception as e:
            logger.warning("problem while rescheduling job %d: %s", job_id, e)
            return False
        if row is None or not row["moved"]:
            logger.warning("job %d no longer exists, not rescheduled", job_id)
        return True

    def _log(self, msg: str, *args: object) -> None:
        logger.log(logging.INFO if self._verbose else logging.DEBUG, msg, *args)
