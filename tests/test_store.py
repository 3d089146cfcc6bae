"""Tests for bgmigrate.store: migration and job persistence."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
import sqlalchemy as sa

from bgmigrate.errors import MigrationNotFoundError
from bgmigrate.models import BatchRange, EnqueueOptions, JobStatus, MigrationStatus
from bgmigrate.store import (
    DATABASE_URL_ENV,
    abandon_job,
    claim_job,
    create_job,
    create_migration,
    find_retryable_job,
    get_database_url,
    get_job,
    get_migration,
    get_progress,
    has_active_job,
    list_exhausted_jobs,
    list_jobs,
    list_migrations,
    mark_job_failed,
    mark_job_succeeded,
    max_claimed_value,
    retry_failed_jobs,
    run_migrations,
    set_migration_status,
    sqlite_url,
)

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy import Engine


def _now() -> datetime:
    return datetime.now(UTC)


def _hour_ago() -> datetime:
    return _now() - timedelta(hours=1)


def _make_migration(engine: Engine, **options: object) -> int:
    opts = {"min_value": 1, "max_value": 100, "batch_size": 30, "sub_batch_size": 10, **options}
    migration = create_migration(
        engine,
        migration_name="BackfillColumn",
        arguments={"table_name": "users", "updates": {"admin": False}},
        batch_column_name="id",
        options=EnqueueOptions.model_validate(opts),
    )
    return migration.id


# ---------------------------------------------------------------------------
# get_database_url
# ---------------------------------------------------------------------------


class TestGetDatabaseUrl:
    def test_default_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(DATABASE_URL_ENV, raising=False)
        monkeypatch.delenv("XDG_STATE_HOME", raising=False)
        result = get_database_url()
        assert result is not None
        assert result.startswith("sqlite:///")
        assert result.endswith(".local/state/bgmigrate/bgmigrate.db")

    def test_env_var_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(DATABASE_URL_ENV, "postgresql://localhost/app")
        assert get_database_url() == "postgresql://localhost/app"

    def test_empty_string_disables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(DATABASE_URL_ENV, "")
        assert get_database_url() is None

    def test_xdg_state_home(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv(DATABASE_URL_ENV, raising=False)
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
        assert get_database_url() == sqlite_url(tmp_path / "bgmigrate" / "bgmigrate.db")


# ---------------------------------------------------------------------------
# run_migrations
# ---------------------------------------------------------------------------


class TestRunMigrations:
    def test_creates_tables(self, engine: Engine) -> None:
        names = set(sa.inspect(engine).get_table_names())
        assert {"background_migrations", "background_migration_jobs"} <= names
        assert "bgmigrate_alembic_version" in names

    def test_idempotent(self, tmp_path: Path) -> None:
        url = sqlite_url(tmp_path / "nested" / "again.db")
        run_migrations(url)
        run_migrations(url)
        assert (tmp_path / "nested" / "again.db").exists()


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


class TestMigrations:
    def test_create_and_get(self, engine: Engine) -> None:
        migration_id = _make_migration(engine, batch_pause=1.5)
        migration = get_migration(engine, migration_id)
        assert migration.migration_name == "BackfillColumn"
        assert migration.arguments == {"table_name": "users", "updates": {"admin": False}}
        assert migration.status is MigrationStatus.ENQUEUED
        assert (migration.min_value, migration.max_value) == (1, 100)
        assert migration.batch_size == 30
        assert migration.batch_pause == 1.5
        assert migration.created_at is not None

    def test_get_missing_raises(self, engine: Engine) -> None:
        with pytest.raises(MigrationNotFoundError):
            get_migration(engine, 999)

    def test_list_filters_by_status(self, engine: Engine) -> None:
        first = _make_migration(engine)
        second = _make_migration(engine)
        set_migration_status(engine, second, MigrationStatus.FINISHED)

        assert [m.id for m in list_migrations(engine)] == [first, second]
        enqueued = list_migrations(engine, statuses=[MigrationStatus.ENQUEUED])
        assert [m.id for m in enqueued] == [first]
        assert len(list_migrations(engine, limit=1)) == 1

    def test_guarded_status_change(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        assert not set_migration_status(
            engine,
            migration_id,
            MigrationStatus.ENQUEUED,
            from_statuses=[MigrationStatus.PAUSED],
        )
        assert set_migration_status(
            engine,
            migration_id,
            MigrationStatus.PAUSED,
            from_statuses=[MigrationStatus.ENQUEUED],
        )
        assert get_migration(engine, migration_id).status is MigrationStatus.PAUSED


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestJobs:
    def test_create_job(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        assert job is not None
        assert job.status is JobStatus.ENQUEUED
        assert job.attempts == 0
        assert get_job(engine, job.id) == job

    def test_duplicate_range_returns_none(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        assert create_job(engine, migration_id, BatchRange(start=1, end=30)) is not None
        assert create_job(engine, migration_id, BatchRange(start=1, end=30)) is None
        assert len(list_jobs(engine, migration_id)) == 1

    def test_same_range_other_migration_allowed(self, engine: Engine) -> None:
        first = _make_migration(engine)
        second = _make_migration(engine)
        assert create_job(engine, first, BatchRange(start=1, end=30)) is not None
        assert create_job(engine, second, BatchRange(start=1, end=30)) is not None

    def test_get_missing_job_raises(self, engine: Engine) -> None:
        with pytest.raises(MigrationNotFoundError):
            get_job(engine, 42)

    def test_list_jobs_in_range_order(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        create_job(engine, migration_id, BatchRange(start=31, end=60))
        create_job(engine, migration_id, BatchRange(start=1, end=30))
        assert [j.min_value for j in list_jobs(engine, migration_id)] == [1, 31]

    def test_max_claimed_value(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        assert max_claimed_value(engine, migration_id) is None
        create_job(engine, migration_id, BatchRange(start=1, end=30))
        create_job(engine, migration_id, BatchRange(start=31, end=60))
        assert max_claimed_value(engine, migration_id) == 60


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------


class TestClaimJob:
    def test_claim_counts_attempt(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        assert claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())

        claimed = get_job(engine, job.id)
        assert claimed.status is JobStatus.RUNNING
        assert claimed.attempts == 1
        assert claimed.started_at is not None

    def test_running_job_not_claimed_twice(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        assert claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
        assert not claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
        assert get_job(engine, job.id).attempts == 1

    def test_single_flight_per_migration(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        first = create_job(engine, migration_id, BatchRange(start=1, end=30))
        second = create_job(engine, migration_id, BatchRange(start=31, end=60))

        assert claim_job(engine, first.id, max_attempts=3, stale_before=_hour_ago())
        assert not claim_job(engine, second.id, max_attempts=3, stale_before=_hour_ago())
        assert has_active_job(engine, migration_id, stale_before=_hour_ago())

    def test_other_migration_not_blocked(self, engine: Engine) -> None:
        first = create_job(engine, _make_migration(engine), BatchRange(start=1, end=30))
        second = create_job(engine, _make_migration(engine), BatchRange(start=1, end=30))
        assert claim_job(engine, first.id, max_attempts=3, stale_before=_hour_ago())
        assert claim_job(engine, second.id, max_attempts=3, stale_before=_hour_ago())

    def test_stale_running_job_reclaimed(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        assert claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())

        future = _now() + timedelta(seconds=5)
        assert not has_active_job(engine, migration_id, stale_before=future)
        assert claim_job(engine, job.id, max_attempts=3, stale_before=future)
        assert get_job(engine, job.id).attempts == 2

    def test_succeeded_job_not_claimed(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
        mark_job_succeeded(engine, job.id, rows_affected=30)
        assert not claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())

    def test_failed_job_claimed_until_attempts_exhausted(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        for _ in range(2):
            assert claim_job(engine, job.id, max_attempts=2, stale_before=_hour_ago())
            mark_job_failed(engine, job.id, error_message="boom")
        assert not claim_job(engine, job.id, max_attempts=2, stale_before=_hour_ago())
        assert get_job(engine, job.id).attempts == 2


class TestFindRetryableJob:
    def test_prefers_lowest_range(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        create_job(engine, migration_id, BatchRange(start=31, end=60))
        create_job(engine, migration_id, BatchRange(start=1, end=30))
        job = find_retryable_job(
            engine, migration_id, max_attempts=3, stale_before=_hour_ago()
        )
        assert job is not None
        assert job.min_value == 1

    def test_skips_exhausted_and_succeeded(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        done = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, done.id, max_attempts=1, stale_before=_hour_ago())
        mark_job_succeeded(engine, done.id, rows_affected=1)
        exhausted = create_job(engine, migration_id, BatchRange(start=31, end=60))
        claim_job(engine, exhausted.id, max_attempts=1, stale_before=_hour_ago())
        mark_job_failed(engine, exhausted.id, error_message="boom")

        assert (
            find_retryable_job(engine, migration_id, max_attempts=1, stale_before=_hour_ago())
            is None
        )


class TestExhaustedJobs:
    def test_lists_only_jobs_out_of_attempts(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        failed = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, failed.id, max_attempts=1, stale_before=_hour_ago())
        mark_job_failed(engine, failed.id, error_message="boom")
        running = create_job(engine, migration_id, BatchRange(start=31, end=60))
        assert claim_job(engine, running.id, max_attempts=1, stale_before=_hour_ago())
        create_job(engine, migration_id, BatchRange(start=61, end=90))

        fresh = list_exhausted_jobs(engine, migration_id, max_attempts=1, stale_before=_hour_ago())
        assert [job.id for job in fresh] == [failed.id]

        future = _now() + timedelta(seconds=5)
        stale = list_exhausted_jobs(engine, migration_id, max_attempts=1, stale_before=future)
        assert [job.id for job in stale] == [failed.id, running.id]

    def test_failed_job_with_attempts_left_not_listed(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=2, stale_before=_hour_ago())
        mark_job_failed(engine, job.id, error_message="boom")

        assert list_exhausted_jobs(
            engine, migration_id, max_attempts=2, stale_before=_hour_ago()
        ) == []

    def test_abandon_only_stale_running_job(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=1, stale_before=_hour_ago())

        assert not abandon_job(engine, job.id, stale_before=_hour_ago(), error_message="gone")
        assert get_job(engine, job.id).status is JobStatus.RUNNING

        future = _now() + timedelta(seconds=5)
        assert abandon_job(engine, job.id, stale_before=future, error_message="gone")
        abandoned = get_job(engine, job.id)
        assert abandoned.status is JobStatus.FAILED
        assert abandoned.error_message == "gone"
        assert abandoned.finished_at is not None
        assert not abandon_job(engine, job.id, stale_before=future, error_message="again")

    def test_finished_job_not_abandoned(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=1, stale_before=_hour_ago())
        mark_job_succeeded(engine, job.id, rows_affected=30)

        future = _now() + timedelta(seconds=5)
        assert not abandon_job(engine, job.id, stale_before=future, error_message="gone")
        assert get_job(engine, job.id).status is JobStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    def test_failure_then_success_clears_error(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
        mark_job_failed(engine, job.id, error_message="boom", error_backtrace="Traceback ...")

        failed = get_job(engine, job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.error_message == "boom"
        assert failed.error_backtrace == "Traceback ..."
        assert failed.finished_at is not None

        claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
        mark_job_succeeded(engine, job.id, rows_affected=12)
        succeeded = get_job(engine, job.id)
        assert succeeded.status is JobStatus.SUCCEEDED
        assert succeeded.rows_affected == 12
        assert succeeded.error_message is None
        assert succeeded.attempts == 2

    def test_retry_failed_jobs(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        job = create_job(engine, migration_id, BatchRange(start=1, end=30))
        claim_job(engine, job.id, max_attempts=1, stale_before=_hour_ago())
        mark_job_failed(engine, job.id, error_message="boom")
        set_migration_status(engine, migration_id, MigrationStatus.FAILED)

        assert retry_failed_jobs(engine, migration_id) == 1
        reset = get_job(engine, job.id)
        assert reset.status is JobStatus.ENQUEUED
        assert reset.attempts == 0
        assert get_migration(engine, migration_id).status is MigrationStatus.ENQUEUED

    def test_progress(self, engine: Engine) -> None:
        migration_id = _make_migration(engine)
        for start, end in [(1, 30), (31, 60)]:
            job = create_job(engine, migration_id, BatchRange(start=start, end=end))
            claim_job(engine, job.id, max_attempts=3, stale_before=_hour_ago())
            mark_job_succeeded(engine, job.id, rows_affected=end - start + 1)
        create_job(engine, migration_id, BatchRange(start=61, end=90))

        progress = get_progress(engine, migration_id)
        assert progress.jobs_by_status == {"succeeded": 2, "enqueued": 1}
        assert progress.rows_affected == 60
        assert progress.covered_fraction == pytest.approx(0.6)
        assert progress.status is MigrationStatus.ENQUEUED
