"""bgmigrate: background migrations for very large tables.

Public API:
- enqueue / backfill / copy_columns: create a background migration
- run_all_migration_jobs / run_migration_job: drive migrations
- get_engine / run_migrations: connect and create the engine tables
"""

from __future__ import annotations

from bgmigrate.errors import ConfigurationError, MigrationNotFoundError, UnknownJobTypeError
from bgmigrate.helpers import (
    ExecutionMode,
    backfill,
    backfill_column,
    copy_column,
    copy_columns,
    enqueue,
    pause_migration,
    resume_migration,
    retry_migration,
)
from bgmigrate.models import JobRecord, JobStatus, MigrationRecord, MigrationStatus
from bgmigrate.runner import (
    run_all_migration_jobs,
    run_migration_job,
    run_next_batch,
    run_pending_migrations,
)
from bgmigrate.store import get_engine, run_migrations

__all__ = [
    "ConfigurationError",
    "ExecutionMode",
    "JobRecord",
    "JobStatus",
    "MigrationNotFoundError",
    "MigrationRecord",
    "MigrationStatus",
    "UnknownJobTypeError",
    "backfill",
    "backfill_column",
    "copy_column",
    "copy_columns",
    "enqueue",
    "get_engine",
    "pause_migration",
    "resume_migration",
    "retry_migration",
    "run_all_migration_jobs",
    "run_migration_job",
    "run_migrations",
    "run_next_batch",
    "run_pending_migrations",
]
