"""Tests for job query dialects and the moved-jobs ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from ts_backup.errors import UnknownTimescaleVersionError
from ts_backup.timescale.jobs import (
    JobSchedulePolicy,
    MovedJobs,
    TimescaleMajorVersion,
    select_job_queries,
)


# ------------------------------------------------------------------
# Dialect selection
# ------------------------------------------------------------------


class TestTimescaleMajorVersion:
    """Only major versions 1 and 2 have a job dialect."""

    def test_known_versions(self):
        assert TimescaleMajorVersion.parse(1) is TimescaleMajorVersion.V1
        assert TimescaleMajorVersion.parse(2) is TimescaleMajorVersion.V2

    @pytest.mark.parametrize("value", [0, 3, -1, 42])
    def test_unknown_versions_rejected(self, value):
        with pytest.raises(UnknownTimescaleVersionError) as exc_info:
            TimescaleMajorVersion.parse(value)
        assert exc_info.value.major_version == value
        assert str(value) in str(exc_info.value)


class TestSelectJobQueries:
    """select_job_queries builds one of two dialects."""

    def test_v1_uses_policy_stats(self):
        queries = select_job_queries(1)
        assert "policy_stats" in queries.running_jobs
        assert "alter_job_schedule" in queries.move_jobs
        assert "alter_job_schedule" in queries.replace_job
        assert "'compress_chunks', 'reorder'" in queries.move_jobs

    def test_v2_uses_jobs_and_job_stats(self):
        queries = select_job_queries(2)
        assert "timescaledb_information.jobs" in queries.running_jobs
        assert "job_stats" in queries.move_jobs
        assert "alter_job(" in queries.replace_job
        assert "alter_job_schedule" not in queries.move_jobs

    def test_v2_filters_on_application_name(self):
        queries = select_job_queries(2, pause_udas=False)
        assert "j.application_name LIKE 'Compression%'" in queries.move_jobs
        assert "j.application_name LIKE 'Reorder%'" in queries.move_jobs
        assert "User-Defined" not in queries.move_jobs
        assert "User-Defined" not in queries.running_jobs

    def test_v2_includes_udas_when_requested(self):
        queries = select_job_queries(2, pause_udas=True)
        assert "j.application_name LIKE 'User-Defined%'" in queries.move_jobs
        assert "j.application_name LIKE 'User-Defined%'" in queries.running_jobs

    def test_unknown_version_raises(self):
        with pytest.raises(UnknownTimescaleVersionError):
            select_job_queries(3)

    def test_default_policy_intervals(self):
        queries = select_job_queries(2)
        assert "now() + interval '600 seconds'" in queries.move_jobs
        assert "interval '900 seconds' + random() * interval '300 seconds'" in (
            queries.move_jobs
        )
        assert "interval '1 seconds' + random() * interval '300 seconds'" in (
            queries.replace_job
        )

    def test_custom_policy(self):
        policy = JobSchedulePolicy(
            danger_window=timedelta(minutes=2),
            move_offset=timedelta(minutes=3),
            move_jitter=timedelta(seconds=30),
        )
        queries = select_job_queries(1, policy=policy)
        assert "now() + interval '120 seconds'" in queries.move_jobs
        assert "interval '180 seconds' + random() * interval '30 seconds'" in (
            queries.move_jobs
        )

    def test_replace_takes_named_parameters(self):
        for version in (1, 2):
            queries = select_job_queries(version)
            assert "CAST(:job_id AS INTEGER)" in queries.replace_job
            assert "CAST(:orig_start AS timestamptz)" in queries.replace_job
            assert "AS moved" in queries.replace_job

    def test_no_format_placeholders_left(self):
        for version in (1, 2):
            queries = select_job_queries(version)
            for statement in (
                queries.running_jobs,
                queries.move_jobs,
                queries.replace_job,
            ):
                assert "{" not in statement


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


class TestMovedJobs:
    """The ledger keeps each job's first recorded start."""

    def _start(self, minutes: int) -> datetime:
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)

    def test_record_new_job(self):
        ledger = MovedJobs()
        assert ledger.record(1000, self._start(5)) is True
        assert 1000 in ledger
        assert len(ledger) == 1
        assert ledger.original_start(1000) == self._start(5)

    def test_first_seen_wins(self):
        ledger = MovedJobs()
        ledger.record(1000, self._start(5))
        # moved again on the next tick, now starting 20 minutes later
        assert ledger.record(1000, self._start(25)) is False
        assert ledger.original_start(1000) == self._start(5)
        assert len(ledger) == 1

    def test_unknown_job(self):
        assert MovedJobs().original_start(7) is None
        assert 7 not in MovedJobs()

    def test_drain_returns_each_entry_once(self):
        ledger = MovedJobs()
        ledger.record(1, self._start(1))
        ledger.record(2, self._start(2))
        ledger.record(1, self._start(9))

        entries = ledger.drain()

        assert sorted(entries) == [(1, self._start(1)), (2, self._start(2))]
        assert len(ledger) == 0
        assert ledger.drain() == []
