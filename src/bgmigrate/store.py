"""Persistence for background migrations and their batch jobs.

Both tables live in the same database as the tables being migrated. Every
function runs its own short transaction, and every write to shared state is
a single statement so concurrent runners inspecting the same migration
cannot race each other.

Design follows Function Core / Imperative Shell:
- Pure functions: get_database_url, sqlite_url
- Imperative shell: get_engine, run_migrations, and the record functions
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from bgmigrate.bounds import covered_fraction
from bgmigrate.errors import MigrationNotFoundError
from bgmigrate.models import (
    JobRecord,
    JobStatus,
    MigrationProgress,
    MigrationRecord,
    MigrationStatus,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy import Engine

    from bgmigrate.models import BatchRange, EnqueueOptions

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "BGMIGRATE_DATABASE_URL"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# SQLAlchemy models
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class BackgroundMigration(Base):
    __tablename__ = "background_migrations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    migration_name: Mapped[str] = mapped_column(sa.String, nullable=False)
    arguments_json: Mapped[str] = mapped_column(sa.Text, nullable=False, default="{}")
    batch_column_name: Mapped[str] = mapped_column(sa.String, nullable=False)
    min_value: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    max_value: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    batch_size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    sub_batch_size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    batch_pause: Mapped[float] = mapped_column(sa.Float, nullable=False)
    sub_batch_pause_ms: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    batch_max_attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=_utcnow)


class BackgroundMigrationJob(Base):
    __tablename__ = "background_migration_jobs"
    __table_args__ = (
        sa.UniqueConstraint(
            "migration_id", "min_value", name="uq_background_migration_jobs_range"
        ),
        sa.Index("ix_background_migration_jobs_migration_status", "migration_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    migration_id: Mapped[int] = mapped_column(
        sa.ForeignKey("background_migrations.id"), nullable=False
    )
    min_value: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    max_value: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(sa.String, nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    rows_affected: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    error_backtrace: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=_utcnow)


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def sqlite_url(db_path: Path) -> str:
    """Build a SQLAlchemy URL for a SQLite database file."""
    return f"sqlite:///{db_path}"


def get_database_url() -> str | None:
    """Resolve the database URL.

    Resolution order:
    1. ``BGMIGRATE_DATABASE_URL`` environment variable.
    2. ``$XDG_STATE_HOME/bgmigrate/bgmigrate.db``
    3. ``~/.local/state/bgmigrate/bgmigrate.db``

    Returns ``None`` if ``BGMIGRATE_DATABASE_URL`` is set to an empty string.
    """
    env_value = os.environ.get(DATABASE_URL_ENV)
    if env_value is not None:
        if env_value == "":
            return None
        return env_value

    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        return sqlite_url(Path(xdg_state) / "bgmigrate" / "bgmigrate.db")

    return sqlite_url(Path.home() / ".local" / "state" / "bgmigrate" / "bgmigrate.db")


def _migration_from_row(row: Any) -> MigrationRecord:
    data = dict(row)
    data["arguments"] = json.loads(data.pop("arguments_json") or "{}")
    return MigrationRecord.model_validate(data)


def _job_from_row(row: Any) -> JobRecord:
    return JobRecord.model_validate(dict(row))


# ---------------------------------------------------------------------------
# Imperative shell: engine and schema
# ---------------------------------------------------------------------------


def get_engine(url: str) -> Engine:
    """Create a SQLAlchemy engine; SQLite files get WAL mode and foreign keys."""
    parsed = sa.make_url(url)
    is_sqlite = parsed.get_backend_name() == "sqlite"
    if is_sqlite and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    engine = sa.create_engine(url)

    if is_sqlite:

        @sa.event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: object, _connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[union-attr]
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def run_migrations(url: str) -> None:
    """Create or upgrade the engine tables with Alembic."""
    from alembic import command
    from alembic.config import Config

    alembic_dir = Path(__file__).parent / "alembic"
    ini_path = alembic_dir / "alembic.ini"

    cfg = Config(str(ini_path))
    cfg.set_main_option("script_location", str(alembic_dir))

    parsed = sa.make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    # ConfigParser interpolation treats "%" specially.
    cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    command.upgrade(cfg, "head")


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


def create_migration(
    engine: Engine,
    *,
    migration_name: str,
    arguments: dict[str, Any],
    batch_column_name: str,
    options: EnqueueOptions,
) -> MigrationRecord:
    """Insert a migration in ``enqueued`` status and return it."""
    t = BackgroundMigration.__table__
    now = _utcnow()
    with engine.begin() as conn:
        result = conn.execute(
            sa.insert(t).values(
                migration_name=migration_name,
                arguments_json=json.dumps(arguments),
                batch_column_name=batch_column_name,
                min_value=options.min_value,
                max_value=options.max_value,
                batch_size=options.batch_size,
                sub_batch_size=options.sub_batch_size,
                batch_pause=options.batch_pause,
                sub_batch_pause_ms=options.sub_batch_pause_ms,
                batch_max_attempts=options.batch_max_attempts,
                status=MigrationStatus.ENQUEUED.value,
                created_at=now,
                updated_at=now,
            )
        )
        migration_id = result.inserted_primary_key[0]
    return get_migration(engine, migration_id)


def get_migration(engine: Engine, migration_id: int) -> MigrationRecord:
    """Fetch a migration by id. Raises ``MigrationNotFoundError`` if missing."""
    t = BackgroundMigration.__table__
    with engine.connect() as conn:
        row = conn.execute(t.select().where(t.c.id == migration_id)).mappings().first()
    if row is None:
        msg = f"No background migration with id {migration_id}"
        raise MigrationNotFoundError(msg)
    return _migration_from_row(row)


def list_migrations(
    engine: Engine,
    statuses: Iterable[MigrationStatus] | None = None,
    limit: int | None = None,
) -> list[MigrationRecord]:
    """List migrations in id order, optionally filtered by status."""
    t = BackgroundMigration.__table__
    stmt = t.select().order_by(t.c.id)
    if statuses is not None:
        stmt = stmt.where(t.c.status.in_([s.value for s in statuses]))
    if limit is not None:
        stmt = stmt.limit(limit)

    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
        return [_migration_from_row(row) for row in rows]


def set_migration_status(
    engine: Engine,
    migration_id: int,
    status: MigrationStatus,
    *,
    from_statuses: Iterable[MigrationStatus] | None = None,
) -> bool:
    """Move a migration to *status*.

    When *from_statuses* is given the update only applies if the current
    status is one of them. Returns whether a row changed.
    """
    t = BackgroundMigration.__table__
    stmt = (
        sa.update(t)
        .where(t.c.id == migration_id)
        .values(status=status.value, updated_at=_utcnow())
    )
    if from_statuses is not None:
        stmt = stmt.where(t.c.status.in_([s.value for s in from_statuses]))

    with engine.begin() as conn:
        return conn.execute(stmt).rowcount == 1


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def create_job(engine: Engine, migration_id: int, batch_range: BatchRange) -> JobRecord | None:
    """Insert an ``enqueued`` job for *batch_range*.

    Returns ``None`` if a job starting at the same value already exists,
    which happens when another runner inserted it first.
    """
    t = BackgroundMigrationJob.__table__
    now = _utcnow()
    try:
        with engine.begin() as conn:
            result = conn.execute(
                sa.insert(t).values(
                    migration_id=migration_id,
                    min_value=batch_range.start,
                    max_value=batch_range.end,
                    status=JobStatus.ENQUEUED.value,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            job_id = result.inserted_primary_key[0]
    except sa.exc.IntegrityError:
        logger.info(
            "Batch [%d, %d] of migration %d already exists",
            batch_range.start,
            batch_range.end,
            migration_id,
        )
        return None
    return get_job(engine, job_id)


def get_job(engine: Engine, job_id: int) -> JobRecord:
    """Fetch a job by id. Raises ``MigrationNotFoundError`` if missing."""
    t = BackgroundMigrationJob.__table__
    with engine.connect() as conn:
        row = conn.execute(t.select().where(t.c.id == job_id)).mappings().first()
    if row is None:
        msg = f"No background migration job with id {job_id}"
        raise MigrationNotFoundError(msg)
    return _job_from_row(row)


def list_jobs(
    engine: Engine,
    migration_id: int,
    statuses: Iterable[JobStatus] | None = None,
) -> list[JobRecord]:
    """List the jobs of a migration in range order."""
    t = BackgroundMigrationJob.__table__
    stmt = t.select().where(t.c.migration_id == migration_id).order_by(t.c.min_value)
    if statuses is not None:
        stmt = stmt.where(t.c.status.in_([s.value for s in statuses]))

    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
        return [_job_from_row(row) for row in rows]


def max_claimed_value(engine: Engine, migration_id: int) -> int | None:
    """Highest ``max_value`` among all jobs of a migration, or ``None``."""
    t = BackgroundMigrationJob.__table__
    stmt = sa.select(sa.func.max(t.c.max_value)).where(t.c.migration_id == migration_id)
    with engine.connect() as conn:
        return conn.execute(stmt).scalar()


def _retryable_clause(t: sa.Table, max_attempts: int, stale_before: datetime) -> Any:
    return sa.or_(
        t.c.status == JobStatus.ENQUEUED.value,
        sa.and_(t.c.status == JobStatus.FAILED.value, t.c.attempts < max_attempts),
        sa.and_(
            t.c.status == JobStatus.RUNNING.value,
            t.c.started_at < stale_before,
            t.c.attempts < max_attempts,
        ),
    )


def find_retryable_job(
    engine: Engine,
    migration_id: int,
    *,
    max_attempts: int,
    stale_before: datetime,
) -> JobRecord | None:
    """Return the lowest job of a migration that can be (re)claimed.

    That is an ``enqueued`` job, a ``failed`` job with attempts left, or a
    ``running`` job whose runner stopped before *stale_before*.
    """
    t = BackgroundMigrationJob.__table__
    stmt = (
        t.select()
        .where(t.c.migration_id == migration_id)
        .where(_retryable_clause(t, max_attempts, stale_before))
        .order_by(t.c.min_value)
        .limit(1)
    )
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    return None if row is None else _job_from_row(row)


def has_active_job(engine: Engine, migration_id: int, *, stale_before: datetime) -> bool:
    """Whether a job of the migration is ``running`` and started after *stale_before*."""
    t = BackgroundMigrationJob.__table__
    stmt = (
        sa.select(sa.func.count())
        .select_from(t)
        .where(
            t.c.migration_id == migration_id,
            t.c.status == JobStatus.RUNNING.value,
            t.c.started_at >= stale_before,
        )
    )
    with engine.connect() as conn:
        return bool(conn.execute(stmt).scalar())


def _exhausted_clause(t: sa.Table, max_attempts: int, stale_before: datetime) -> Any:
    return sa.and_(
        t.c.attempts >= max_attempts,
        sa.or_(
            t.c.status == JobStatus.FAILED.value,
            sa.and_(
                t.c.status == JobStatus.RUNNING.value,
                t.c.started_at < stale_before,
            ),
        ),
    )


def list_exhausted_jobs(
    engine: Engine,
    migration_id: int,
    *,
    max_attempts: int,
    stale_before: datetime,
) -> list[JobRecord]:
    """Jobs of a migration that can never be claimed again.

    That is a ``failed`` job with no attempts left, or a ``running`` job
    abandoned before *stale_before* on its last attempt. The complement of
    ``find_retryable_job`` among unfinished jobs, ignoring fresh ``running``
    jobs.
    """
    t = BackgroundMigrationJob.__table__
    stmt = (
        t.select()
        .where(t.c.migration_id == migration_id)
        .where(_exhausted_clause(t, max_attempts, stale_before))
        .order_by(t.c.min_value)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
        return [_job_from_row(row) for row in rows]


def abandon_job(
    engine: Engine,
    job_id: int,
    *,
    stale_before: datetime,
    error_message: str,
) -> bool:
    """Mark a ``running`` job whose runner stopped before *stale_before* as failed.

    Returns whether the job changed; a job re-claimed or finished in the
    meantime is left alone.
    """
    t = BackgroundMigrationJob.__table__
    now = _utcnow()
    stmt = (
        sa.update(t)
        .where(
            t.c.id == job_id,
            t.c.status == JobStatus.RUNNING.value,
            t.c.started_at < stale_before,
        )
        .values(
            status=JobStatus.FAILED.value,
            error_message=error_message,
            finished_at=now,
            updated_at=now,
        )
    )
    with engine.begin() as conn:
        return conn.execute(stmt).rowcount == 1


def claim_job(
    engine: Engine,
    job_id: int,
    *,
    max_attempts: int,
    stale_before: datetime,
) -> bool:
    """Atomically move a job to ``running`` and count the attempt.

    The single UPDATE only matches when the job is claimable and no other
    job of the same migration is actively running, so at most one runner
    wins. Returns whether this call won the claim.
    """
    t = BackgroundMigrationJob.__table__
    other = t.alias("other_jobs")
    active = (
        sa.select(other.c.id)
        .where(
            other.c.migration_id == t.c.migration_id,
            other.c.id != t.c.id,
            other.c.status == JobStatus.RUNNING.value,
            other.c.started_at >= stale_before,
        )
        .correlate(t)
    )
    now = _utcnow()
    stmt = (
        sa.update(t)
        .where(
            t.c.id == job_id,
            _retryable_clause(t, max_attempts, stale_before),
            ~sa.exists(active),
        )
        .values(
            status=JobStatus.RUNNING.value,
            attempts=t.c.attempts + 1,
            started_at=now,
            finished_at=None,
            updated_at=now,
        )
    )
    with engine.begin() as conn:
        return conn.execute(stmt).rowcount == 1


def mark_job_succeeded(engine: Engine, job_id: int, *, rows_affected: int) -> None:
    """Record a successful attempt; clears errors left by earlier attempts."""
    t = BackgroundMigrationJob.__table__
    now = _utcnow()
    with engine.begin() as conn:
        conn.execute(
            sa.update(t)
            .where(t.c.id == job_id)
            .values(
                status=JobStatus.SUCCEEDED.value,
                rows_affected=rows_affected,
                error_message=None,
                error_backtrace=None,
                finished_at=now,
                updated_at=now,
            )
        )


def mark_job_failed(
    engine: Engine,
    job_id: int,
    *,
    error_message: str,
    error_backtrace: str | None = None,
) -> None:
    """Record a failed attempt."""
    t = BackgroundMigrationJob.__table__
    now = _utcnow()
    with engine.begin() as conn:
        conn.execute(
            sa.update(t)
            .where(t.c.id == job_id)
            .values(
                status=JobStatus.FAILED.value,
                error_message=error_message,
                error_backtrace=error_backtrace,
                finished_at=now,
                updated_at=now,
            )
        )


def retry_failed_jobs(engine: Engine, migration_id: int) -> int:
    """Give the failed jobs of a migration a fresh attempt budget.

    Failed jobs go back to ``enqueued`` with zero attempts and a ``failed``
    migration goes back to ``enqueued``. Returns the number of jobs reset.
    """
    jobs = BackgroundMigrationJob.__table__
    migrations = BackgroundMigration.__table__
    now = _utcnow()
    with engine.begin() as conn:
        reset = conn.execute(
            sa.update(jobs)
            .where(
                jobs.c.migration_id == migration_id,
                jobs.c.status == JobStatus.FAILED.value,
            )
            .values(status=JobStatus.ENQUEUED.value, attempts=0, updated_at=now)
        ).rowcount
        conn.execute(
            sa.update(migrations)
            .where(
                migrations.c.id == migration_id,
                migrations.c.status == MigrationStatus.FAILED.value,
            )
            .values(status=MigrationStatus.ENQUEUED.value, updated_at=now)
        )
    return reset


def get_progress(engine: Engine, migration_id: int) -> MigrationProgress:
    """Summarise the jobs of a migration."""
    migration = get_migration(engine, migration_id)
    jobs = list_jobs(engine, migration_id)

    counts: dict[str, int] = {}
    for job in jobs:
        counts[job.status.value] = counts.get(job.status.value, 0) + 1

    succeeded = [j for j in jobs if j.status is JobStatus.SUCCEEDED]
    return MigrationProgress(
        migration_id=migration_id,
        status=migration.status,
        jobs_by_status=counts,
        rows_affected=sum(j.rows_affected or 0 for j in succeeded),
        covered_fraction=covered_fraction(
            migration.min_value,
            migration.max_value,
            [j.batch_range for j in succeeded],
        ),
    )
