"""Enqueueing background migrations.

``enqueue`` validates everything it can before anything is written: option
keys, sizes, the range, the job type name, its typed arguments, and the
target table and columns. Problems raise ``ConfigurationError`` and leave
no record behind.

Example:
    engine = get_engine(url)
    backfill(engine, "users", {"admin": False}, batch_size=10_000)
    copy_column(engine, "users", "id", "id_for_type_change", type_cast_function="::text")
"""

from __future__ import annotations

import logging
import time
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from bgmigrate import store
from bgmigrate.errors import ConfigurationError
from bgmigrate.jobs.registry import get_job_type, parse_arguments
from bgmigrate.models import EnqueueOptions, MigrationStatus
from bgmigrate.runner import run_all_migration_jobs
from bgmigrate.schema import column_bounds, primary_key_column

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from pydantic import BaseModel
    from sqlalchemy import Engine

    from bgmigrate.models import MigrationRecord

logger = logging.getLogger(__name__)


class ExecutionMode(StrEnum):
    """How ``enqueue`` hands the migration to the runner."""

    INLINE = "inline"  # drain synchronously before returning (development, tests)
    DEFERRED = "deferred"  # return once stored; a scheduler runs it later


def parse_options(options: Mapping[str, Any]) -> EnqueueOptions:
    """Validate enqueue options, rejecting unknown keys."""
    try:
        return EnqueueOptions.model_validate(dict(options))
    except ValidationError as e:
        msg = f"Invalid background migration options: {e}"
        raise ConfigurationError(msg) from e


def enqueue(
    engine: Engine,
    job_type_name: str,
    arguments: BaseModel | Mapping[str, Any],
    *,
    mode: ExecutionMode = ExecutionMode.DEFERRED,
    bounds_query: Callable[[str], tuple[int | None, int | None]] | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    **options: Any,
) -> MigrationRecord:
    """Create a background migration for the job type *job_type_name*.

    Options are those of ``EnqueueOptions``. ``batch_column_name`` defaults
    to the primary key of the job's table. A missing ``min_value`` or
    ``max_value`` is taken from *bounds_query* (called with the batch column
    name), which defaults to ``SELECT MIN/MAX`` over that column.

    With ``ExecutionMode.INLINE`` the migration is run to completion before
    returning and the final record is returned.
    """
    parsed = parse_options(options)
    job_type = get_job_type(job_type_name)
    typed_arguments = parse_arguments(job_type, arguments)

    table_name = job_type.table_name(typed_arguments)
    batch_column_name = parsed.batch_column_name or primary_key_column(engine, table_name)

    job = job_type(
        engine,
        batch_column_name=batch_column_name,
        sub_batch_size=parsed.sub_batch_size,
        sub_batch_pause_ms=parsed.sub_batch_pause_ms,
        sleep=sleep,
    )
    job.validate(typed_arguments)

    if parsed.min_value is None or parsed.max_value is None:
        if bounds_query is None:
            observed_min, observed_max = column_bounds(engine, table_name, batch_column_name)
        else:
            observed_min, observed_max = bounds_query(batch_column_name)
        parsed = parse_options(
            {
                **parsed.model_dump(exclude_unset=True),
                "batch_column_name": batch_column_name,
                "min_value": parsed.min_value if parsed.min_value is not None else observed_min,
                "max_value": parsed.max_value if parsed.max_value is not None else observed_max,
            }
        )

    migration = store.create_migration(
        engine,
        migration_name=job_type_name,
        arguments=typed_arguments.model_dump(mode="json"),
        batch_column_name=batch_column_name,
        options=parsed,
    )
    logger.info(
        "Enqueued migration %d: %s on %s.%s [%s, %s]",
        migration.id,
        job_type_name,
        table_name,
        batch_column_name,
        migration.min_value,
        migration.max_value,
    )

    if mode is ExecutionMode.INLINE:
        return run_all_migration_jobs(engine, migration.id, sleep=sleep)
    return migration


# ---------------------------------------------------------------------------
# Built-in job type shortcuts
# ---------------------------------------------------------------------------


def backfill(
    engine: Engine,
    table_name: str,
    column_updates: Mapping[str, Any],
    **kwargs: Any,
) -> MigrationRecord:
    """Set columns to fixed values for every row, in the background.

    Example:
        backfill(engine, "users", {"admin": False, "status": "active"})
    """
    arguments = {"table_name": table_name, "updates": dict(column_updates)}
    return enqueue(engine, "BackfillColumn", arguments, **kwargs)


def backfill_column(
    engine: Engine,
    table_name: str,
    column_name: str,
    value: Any,
    **kwargs: Any,
) -> MigrationRecord:
    """Same as ``backfill`` for a single column."""
    return backfill(engine, table_name, {column_name: value}, **kwargs)


def copy_columns(
    engine: Engine,
    table_name: str,
    from_columns: Sequence[str],
    to_columns: Sequence[str],
    type_cast_functions: Mapping[str, str | None] | None = None,
    **kwargs: Any,
) -> MigrationRecord:
    """Copy each column of *from_columns* into the matching column of *to_columns*.

    Type changes that need a conversion (for example integer to text) must
    list the source column in *type_cast_functions*.
    """
    arguments = {
        "table_name": table_name,
        "copy_from": list(from_columns),
        "copy_to": list(to_columns),
        "type_cast_functions": dict(type_cast_functions or {}),
    }
    return enqueue(engine, "CopyColumn", arguments, **kwargs)


def copy_column(
    engine: Engine,
    table_name: str,
    copy_from: str,
    copy_to: str,
    type_cast_function: str | None = None,
    **kwargs: Any,
) -> MigrationRecord:
    """Same as ``copy_columns`` for a single column."""
    casts = {copy_from: type_cast_function} if type_cast_function else {}
    return copy_columns(engine, table_name, [copy_from], [copy_to], casts, **kwargs)


# ---------------------------------------------------------------------------
# Operator controls
# ---------------------------------------------------------------------------


def pause_migration(engine: Engine, migration_id: int) -> bool:
    """Stop a migration before its next batch. Returns whether it was paused."""
    paused = store.set_migration_status(
        engine,
        migration_id,
        MigrationStatus.PAUSED,
        from_statuses=[MigrationStatus.ENQUEUED, MigrationStatus.RUNNING],
    )
    if paused:
        logger.info("Paused migration %d", migration_id)
    return paused


def resume_migration(engine: Engine, migration_id: int) -> bool:
    """Make a paused migration runnable again. Returns whether it was resumed."""
    resumed = store.set_migration_status(
        engine,
        migration_id,
        MigrationStatus.ENQUEUED,
        from_statuses=[MigrationStatus.PAUSED],
    )
    if resumed:
        logger.info("Resumed migration %d", migration_id)
    return resumed


def retry_migration(engine: Engine, migration_id: int) -> int:
    """Reset the failed batches of a failed migration. Returns the number reset."""
    store.get_migration(engine, migration_id)
    reset = store.retry_failed_jobs(engine, migration_id)
    logger.info("Reset %d failed batch(es) of migration %d", reset, migration_id)
    return reset
