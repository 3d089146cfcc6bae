"""Core data models for bgmigrate."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_BATCH_SIZE = 20_000
DEFAULT_SUB_BATCH_SIZE = 1_000
DEFAULT_BATCH_PAUSE = 0
DEFAULT_SUB_BATCH_PAUSE_MS = 100
DEFAULT_BATCH_MAX_ATTEMPTS = 5


class MigrationStatus(StrEnum):
    """Lifecycle of a background migration."""

    ENQUEUED = "enqueued"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    FAILED = "failed"


class JobStatus(StrEnum):
    """Lifecycle of a single batch job."""

    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Migrations in these states are never advanced by the runner.
STOPPED_MIGRATION_STATUSES = frozenset(
    {MigrationStatus.PAUSED, MigrationStatus.FINISHED, MigrationStatus.FAILED}
)


class BatchRange(BaseModel):
    """An inclusive range of batch column values."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @model_validator(mode="after")
    def _check_order(self) -> BatchRange:
        if self.start > self.end:
            msg = f"Range start {self.start} is greater than end {self.end}"
            raise ValueError(msg)
        return self

    @property
    def size(self) -> int:
        return self.end - self.start + 1


class EnqueueOptions(BaseModel):
    """Options accepted when enqueueing a background migration.

    Unknown keys are rejected so that typos never silently fall back to a
    default.
    """

    model_config = ConfigDict(extra="forbid")

    batch_column_name: str | None = Field(
        default=None,
        description="Column to batch over. Defaults to the table's primary key.",
    )
    min_value: int | None = Field(
        default=None,
        description="First batch column value. Defaults to SELECT MIN(batch_column_name).",
    )
    max_value: int | None = Field(
        default=None,
        description="Last batch column value. Defaults to SELECT MAX(batch_column_name).",
    )
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, gt=0, description="Rows per job.")
    sub_batch_size: int = Field(
        default=DEFAULT_SUB_BATCH_SIZE,
        gt=0,
        description="Rows per committed mutation step inside a job.",
    )
    batch_pause: float = Field(
        default=DEFAULT_BATCH_PAUSE,
        ge=0,
        description="Seconds to pause between batch jobs.",
    )
    sub_batch_pause_ms: int = Field(
        default=DEFAULT_SUB_BATCH_PAUSE_MS,
        ge=0,
        description="Milliseconds to pause between sub-batches.",
    )
    batch_max_attempts: int = Field(
        default=DEFAULT_BATCH_MAX_ATTEMPTS,
        gt=0,
        description="Attempts per batch before the migration fails.",
    )

    @model_validator(mode="after")
    def _check_sizes(self) -> EnqueueOptions:
        if self.sub_batch_size > self.batch_size:
            msg = (
                f"sub_batch_size ({self.sub_batch_size}) must not exceed "
                f"batch_size ({self.batch_size})"
            )
            raise ValueError(msg)
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            msg = f"min_value ({self.min_value}) is greater than max_value ({self.max_value})"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class MigrationRecord(BaseModel):
    """A background migration as stored in ``background_migrations``."""

    id: int
    migration_name: str = Field(description="Registered job type name.")
    arguments: dict[str, Any] = Field(default_factory=dict)
    batch_column_name: str
    min_value: int | None = None
    max_value: int | None = None
    batch_size: int
    sub_batch_size: int
    batch_pause: float
    sub_batch_pause_ms: int
    batch_max_attempts: int
    status: MigrationStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_range(self) -> bool:
        return self.min_value is not None and self.max_value is not None


class JobRecord(BaseModel):
    """One batch of a migration as stored in ``background_migration_jobs``."""

    id: int
    migration_id: int
    min_value: int
    max_value: int
    status: JobStatus
    attempts: int = 0
    rows_affected: int | None = None
    error_message: str | None = None
    error_backtrace: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def batch_range(self) -> BatchRange:
        return BatchRange(start=self.min_value, end=self.max_value)


class MigrationProgress(BaseModel):
    """Summary of how far a migration has advanced."""

    migration_id: int
    status: MigrationStatus
    jobs_by_status: dict[str, int] = Field(default_factory=dict)
    rows_affected: int = 0
    covered_fraction: float = Field(default=0.0, description="0.0 to 1.0.")
