"""Migration runner: drives background migrations batch by batch.

One batch job of a migration runs at a time. The runner computes the next
range from the job table, claims it with a single guarded UPDATE, runs the
job type over it, and records exactly one outcome per attempt. Failed
batches are retried on the same range until ``batch_max_attempts`` is
reached, after which the migration is marked ``failed`` and left for an
operator.

Design follows Function Core / Imperative Shell:
- Pure function: next_batch_range (in bgmigrate.bounds)
- Testable functions: run_migration_job, run_next_batch,
  run_all_migration_jobs, run_pending_migrations (engine and sleep injected)
"""

from __future__ import annotations

import logging
import time
import traceback
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from bgmigrate import store
from bgmigrate.bounds import next_batch_range
from bgmigrate.jobs.registry import get_job_type, parse_arguments
from bgmigrate.models import (
    STOPPED_MIGRATION_STATUSES,
    JobStatus,
    MigrationStatus,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import Engine

    from bgmigrate.models import JobRecord, MigrationRecord

logger = logging.getLogger(__name__)

DEFAULT_STUCK_JOB_TIMEOUT = 3600.0

_ACTIVE_MIGRATION_STATUSES = (MigrationStatus.ENQUEUED, MigrationStatus.RUNNING)
# A batch out of attempts fails its migration even if it was paused meanwhile.
_FAILABLE_MIGRATION_STATUSES = (*_ACTIVE_MIGRATION_STATUSES, MigrationStatus.PAUSED)


def _stale_before(stuck_job_timeout: float) -> datetime:
    return datetime.now(UTC) - timedelta(seconds=stuck_job_timeout)


def _error_message(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


# ---------------------------------------------------------------------------
# Single batch
# ---------------------------------------------------------------------------


def run_migration_job(
    engine: Engine,
    job_id: int,
    *,
    sleep: Callable[[float], Any] = time.sleep,
    stuck_job_timeout: float = DEFAULT_STUCK_JOB_TIMEOUT,
) -> JobRecord | None:
    """Execute one attempt of a batch job.

    Returns the job as persisted after the attempt, or ``None`` if the job
    could not be claimed (another runner is working on the migration, the
    job is already finished, or the migration is stopped). Errors raised by
    the job type are recorded on the job, never re-raised.
    """
    from bgmigrate.tracing import get_tracer, job_attributes, migration_attributes

    job = store.get_job(engine, job_id)
    migration = store.get_migration(engine, job.migration_id)
    if migration.status in STOPPED_MIGRATION_STATUSES:
        logger.info(
            "Migration %d is %s; not running job %d",
            migration.id,
            migration.status.value,
            job.id,
        )
        return None

    claimed = store.claim_job(
        engine,
        job.id,
        max_attempts=migration.batch_max_attempts,
        stale_before=_stale_before(stuck_job_timeout),
    )
    if not claimed:
        logger.info("Job %d of migration %d was not claimed", job.id, migration.id)
        return None

    store.set_migration_status(
        engine,
        migration.id,
        MigrationStatus.RUNNING,
        from_statuses=[MigrationStatus.ENQUEUED],
    )
    job = store.get_job(engine, job.id)

    tracer = get_tracer()
    with tracer.start_as_current_span("bgmigrate.run_migration_job") as span:
        span.set_attributes(migration_attributes(migration))
        span.set_attributes(job_attributes(job))
        logger.info(
            "Running batch [%d, %d] of migration %d (%s), attempt %d/%d",
            job.min_value,
            job.max_value,
            migration.id,
            migration.migration_name,
            job.attempts,
            migration.batch_max_attempts,
        )
        started = time.monotonic()
        try:
            job_type = get_job_type(migration.migration_name)
            arguments = parse_arguments(job_type, migration.arguments)
            batch_job = job_type(
                engine,
                batch_column_name=migration.batch_column_name,
                sub_batch_size=migration.sub_batch_size,
                sub_batch_pause_ms=migration.sub_batch_pause_ms,
                sleep=sleep,
            )
            rows_affected = batch_job.process_batch(job.batch_range, arguments)
        except Exception as e:
            logger.warning(
                "Batch [%d, %d] of migration %d failed (attempt %d/%d)",
                job.min_value,
                job.max_value,
                migration.id,
                job.attempts,
                migration.batch_max_attempts,
                exc_info=True,
            )
            store.mark_job_failed(
                engine,
                job.id,
                error_message=_error_message(e),
                error_backtrace=traceback.format_exc(),
            )
            span.record_exception(e)
            span.set_attribute("bgmigrate.job.status", JobStatus.FAILED.value)

            if job.attempts >= migration.batch_max_attempts:
                store.set_migration_status(
                    engine,
                    migration.id,
                    MigrationStatus.FAILED,
                    from_statuses=_FAILABLE_MIGRATION_STATUSES,
                )
                logger.error(
                    "Migration %d failed: batch [%d, %d] exhausted %d attempts",
                    migration.id,
                    job.min_value,
                    job.max_value,
                    migration.batch_max_attempts,
                )
        else:
            store.mark_job_succeeded(engine, job.id, rows_affected=rows_affected)
            span.set_attributes(job_attributes(job, rows_affected=rows_affected))
            span.set_attribute("bgmigrate.job.status", JobStatus.SUCCEEDED.value)
            logger.info(
                "Batch [%d, %d] of migration %d succeeded: %d rows in %.2fs",
                job.min_value,
                job.max_value,
                migration.id,
                rows_affected,
                time.monotonic() - started,
            )

    return store.get_job(engine, job.id)


# ---------------------------------------------------------------------------
# Choosing the next batch
# ---------------------------------------------------------------------------


def _fail_exhausted_jobs(
    engine: Engine,
    migration: MigrationRecord,
    stale_before: datetime,
) -> bool:
    """Fail the migration if a batch can no longer be retried.

    A job is exhausted when it failed on its last attempt, or was abandoned
    before *stale_before* while running its last attempt. Abandoned jobs are
    marked failed only if they are still running at that moment. Returns
    whether the migration failed.
    """
    exhausted = store.list_exhausted_jobs(
        engine,
        migration.id,
        max_attempts=migration.batch_max_attempts,
        stale_before=stale_before,
    )
    failed = [job for job in exhausted if job.status is JobStatus.FAILED]
    for job in exhausted:
        if job.status is JobStatus.RUNNING and store.abandon_job(
            engine,
            job.id,
            stale_before=stale_before,
            error_message="Runner stopped while the batch was running",
        ):
            failed.append(job)
    if not failed:
        return False

    store.set_migration_status(
        engine,
        migration.id,
        MigrationStatus.FAILED,
        from_statuses=_FAILABLE_MIGRATION_STATUSES,
    )
    logger.error(
        "Migration %d failed: %d batch(es) exhausted their attempts",
        migration.id,
        len(failed),
    )
    return True


def _next_job(
    engine: Engine,
    migration: MigrationRecord,
    stuck_job_timeout: float,
) -> JobRecord | None:
    """Pick the job the migration should run next, creating it if needed.

    Returns ``None`` when nothing should run now: another runner holds the
    migration, the migration just finished, or it just failed.
    """
    stale_before = _stale_before(stuck_job_timeout)
    if store.has_active_job(engine, migration.id, stale_before=stale_before):
        logger.info("Migration %d has a running batch; deferring", migration.id)
        return None

    pending = store.find_retryable_job(
        engine,
        migration.id,
        max_attempts=migration.batch_max_attempts,
        stale_before=stale_before,
    )
    if pending is not None:
        return pending

    if _fail_exhausted_jobs(engine, migration, stale_before):
        return None

    # Another runner may have claimed a pending job since the first check.
    if store.has_active_job(engine, migration.id, stale_before=stale_before):
        logger.info("Migration %d has a running batch; deferring", migration.id)
        return None

    batch_range = next_batch_range(
        migration.min_value,
        migration.max_value,
        migration.batch_size,
        store.max_claimed_value(engine, migration.id),
    )
    if batch_range is None:
        finished = store.set_migration_status(
            engine,
            migration.id,
            MigrationStatus.FINISHED,
            from_statuses=_ACTIVE_MIGRATION_STATUSES,
        )
        if finished:
            logger.info("Migration %d finished", migration.id)
        return None

    return store.create_job(engine, migration.id, batch_range)


# ---------------------------------------------------------------------------
# Driving migrations
# ---------------------------------------------------------------------------


def run_next_batch(
    engine: Engine,
    migration_id: int,
    *,
    sleep: Callable[[float], Any] = time.sleep,
    stuck_job_timeout: float = DEFAULT_STUCK_JOB_TIMEOUT,
) -> JobRecord | None:
    """Run one batch of a migration, for schedulers that advance one batch per tick."""
    migration = store.get_migration(engine, migration_id)
    if migration.status in STOPPED_MIGRATION_STATUSES:
        return None

    job = _next_job(engine, migration, stuck_job_timeout)
    if job is None:
        return None
    return run_migration_job(engine, job.id, sleep=sleep, stuck_job_timeout=stuck_job_timeout)


def run_all_migration_jobs(
    engine: Engine,
    migration_id: int,
    *,
    sleep: Callable[[float], Any] = time.sleep,
    stuck_job_timeout: float = DEFAULT_STUCK_JOB_TIMEOUT,
) -> MigrationRecord:
    """Run batches until the migration finishes, fails, is paused, or is busy elsewhere.

    The migration status is re-read before every batch so an operator can
    stop it between batches. Sleeps ``batch_pause`` seconds between batch
    executions, but not before the first one.
    """
    executed = 0
    while True:
        migration = store.get_migration(engine, migration_id)
        if migration.status in STOPPED_MIGRATION_STATUSES:
            break

        job = _next_job(engine, migration, stuck_job_timeout)
        if job is None:
            break

        if executed and migration.batch_pause:
            sleep(migration.batch_pause)

        result = run_migration_job(
            engine, job.id, sleep=sleep, stuck_job_timeout=stuck_job_timeout
        )
        if result is None:
            break
        executed += 1

    migration = store.get_migration(engine, migration_id)
    logger.info(
        "Migration %d is %s after %d batch execution(s)",
        migration.id,
        migration.status.value,
        executed,
    )
    return migration


def run_pending_migrations(
    engine: Engine,
    *,
    sleep: Callable[[float], Any] = time.sleep,
    stuck_job_timeout: float = DEFAULT_STUCK_JOB_TIMEOUT,
) -> list[MigrationRecord]:
    """Drain every enqueued or running migration, one at a time, oldest first."""
    results: list[MigrationRecord] = []
    for migration in store.list_migrations(engine, statuses=_ACTIVE_MIGRATION_STATUSES):
        results.append(
            run_all_migration_jobs(
                engine,
                migration.id,
                sleep=sleep,
                stuck_job_timeout=stuck_job_timeout,
            )
        )
    return results
