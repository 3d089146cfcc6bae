"""CLI entry point for bgmigrate.

Provides ``bgmigrate db-upgrade``, ``bgmigrate backfill``,
``bgmigrate copy-column``, ``bgmigrate run``, ``bgmigrate status``,
``bgmigrate pause``, ``bgmigrate resume`` and ``bgmigrate retry``.

Follows Function Core / Imperative Shell:
- Pure functions: parse_assignment, format_migration, format_job,
  format_progress, build_enqueue_options
- Click commands: main, db_upgrade, backfill, copy_column, run, status,
  pause, resume, retry
"""

from __future__ import annotations

import functools
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

import click

from bgmigrate.errors import ConfigurationError, MigrationNotFoundError
from bgmigrate.models import MigrationStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import Engine

    from bgmigrate.models import JobRecord, MigrationProgress, MigrationRecord

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def parse_assignment(text: str) -> tuple[str, Any]:
    """Parse ``column=value`` where value is JSON, or a plain string otherwise.

    Examples:
        >>> parse_assignment("admin=false")
        ('admin', False)
        >>> parse_assignment("status=active")
        ('status', 'active')
    """
    column, sep, raw = text.partition("=")
    column = column.strip()
    if not sep or not column:
        msg = f"Expected COLUMN=VALUE, got {text!r}"
        raise click.BadParameter(msg)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return column, value


def build_enqueue_options(**values: Any) -> dict[str, Any]:
    """Keep only the enqueue options that were given on the command line."""
    return {key: value for key, value in values.items() if value is not None}


def format_progress(progress: MigrationProgress) -> str:
    """Format progress as a compact single line."""
    counts = " ".join(f"{status}={count}" for status, count in sorted(progress.jobs_by_status.items()))
    return f"{progress.covered_fraction:.1%} covered, {progress.rows_affected} rows ({counts or 'no jobs'})"


def format_migration(migration: MigrationRecord, progress: MigrationProgress | None = None) -> str:
    """Format a migration as a one-line summary."""
    line = (
        f"  [{migration.id}] {migration.migration_name}  {migration.status.value}  "
        f"{migration.batch_column_name} [{migration.min_value}, {migration.max_value}]"
    )
    if progress is not None:
        line += f"  {format_progress(progress)}"
    return line


def format_job(job: JobRecord) -> str:
    """Format a batch job, with its last error if it has one."""
    lines = [
        f"    [{job.id}] [{job.min_value}, {job.max_value}]  {job.status.value}  "
        f"attempts={job.attempts} rows={job.rows_affected if job.rows_affected is not None else '-'}"
    ]
    if job.error_message:
        lines.append(f"      Error: {job.error_message}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Shell helpers
# ---------------------------------------------------------------------------


def _get_engine(ctx: click.Context) -> Engine:
    from bgmigrate.store import get_database_url, get_engine

    url = ctx.obj.get("database_url") or get_database_url()
    if url is None:
        click.echo("No database configured. Set BGMIGRATE_DATABASE_URL.", err=True)
        sys.exit(EXIT_FAILURE)
    return get_engine(url)


def _enqueue_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the options shared by every enqueueing command."""
    options = [
        click.option("--batch-column", "batch_column_name", help="Column to batch over."),
        click.option("--min-value", type=int, help="First batch column value."),
        click.option("--max-value", type=int, help="Last batch column value."),
        click.option("--batch-size", type=int, help="Rows per batch job.  [default: 20000]"),
        click.option("--sub-batch-size", type=int, help="Rows per sub-batch.  [default: 1000]"),
        click.option("--batch-pause", type=float, help="Seconds between batches.  [default: 0]"),
        click.option(
            "--sub-batch-pause-ms", type=int, help="Milliseconds between sub-batches.  [default: 100]"
        ),
        click.option(
            "--batch-max-attempts", type=int, help="Attempts per batch.  [default: 5]"
        ),
        click.option("--inline", is_flag=True, help="Run the migration now instead of enqueueing."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Map expected errors to exit codes."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ConfigurationError as e:
            click.echo(f"Configuration error: {e}", err=True)
            sys.exit(EXIT_CONFIGURATION_ERROR)
        except MigrationNotFoundError as e:
            click.echo(str(e), err=True)
            sys.exit(EXIT_FAILURE)

    return wrapper


def _report_enqueued(migration: MigrationRecord) -> None:
    click.echo(f"Migration {migration.id} ({migration.migration_name}): {migration.status.value}")
    if migration.status is MigrationStatus.FAILED:
        sys.exit(EXIT_FAILURE)


# ---------------------------------------------------------------------------
# Click commands
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="bgmigrate")
@click.option(
    "--database-url",
    default=None,
    help="SQLAlchemy URL of the database. Defaults to BGMIGRATE_DATABASE_URL.",
)
@click.option("--verbose", is_flag=True, help="Log sub-batch progress.")
@click.pass_context
def main(ctx: click.Context, database_url: str | None, verbose: bool) -> None:
    """bgmigrate: background migrations for very large tables."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


@main.command("db-upgrade")
@click.pass_context
def db_upgrade(ctx: click.Context) -> None:
    """Create or upgrade the background migration tables."""
    from bgmigrate.store import get_database_url, run_migrations

    url = ctx.obj.get("database_url") or get_database_url()
    if url is None:
        click.echo("No database configured. Set BGMIGRATE_DATABASE_URL.", err=True)
        sys.exit(EXIT_FAILURE)
    run_migrations(url)
    click.echo("Background migration tables are up to date.")


@main.command()
@click.argument("table_name")
@click.option(
    "--set",
    "assignments",
    multiple=True,
    required=True,
    help="COLUMN=VALUE to backfill (repeatable). VALUE is parsed as JSON when possible.",
)
@_enqueue_options
@click.pass_context
@_handle_errors
def backfill(
    ctx: click.Context,
    table_name: str,
    assignments: tuple[str, ...],
    inline: bool,
    **options: Any,
) -> None:
    """Backfill columns of TABLE_NAME with constant values."""
    from bgmigrate.helpers import ExecutionMode
    from bgmigrate.helpers import backfill as enqueue_backfill

    updates = dict(parse_assignment(a) for a in assignments)
    engine = _get_engine(ctx)
    migration = enqueue_backfill(
        engine,
        table_name,
        updates,
        mode=ExecutionMode.INLINE if inline else ExecutionMode.DEFERRED,
        **build_enqueue_options(**options),
    )
    _report_enqueued(migration)


@main.command("copy-column")
@click.argument("table_name")
@click.option("--from", "copy_from", multiple=True, required=True, help="Source column (repeatable).")
@click.option("--to", "copy_to", multiple=True, required=True, help="Destination column (repeatable).")
@click.option(
    "--cast",
    "casts",
    multiple=True,
    help="SOURCE=CAST, where CAST is '::type' or a SQL function name (repeatable).",
)
@_enqueue_options
@click.pass_context
@_handle_errors
def copy_column(
    ctx: click.Context,
    table_name: str,
    copy_from: tuple[str, ...],
    copy_to: tuple[str, ...],
    casts: tuple[str, ...],
    inline: bool,
    **options: Any,
) -> None:
    """Copy columns of TABLE_NAME into other columns."""
    from bgmigrate.helpers import ExecutionMode, copy_columns

    type_cast_functions = {}
    for cast in casts:
        column, _, function = cast.partition("=")
        if not column or not function:
            msg = f"Expected SOURCE=CAST, got {cast!r}"
            raise click.BadParameter(msg, param_hint="--cast")
        type_cast_functions[column.strip()] = function.strip()

    engine = _get_engine(ctx)
    migration = copy_columns(
        engine,
        table_name,
        list(copy_from),
        list(copy_to),
        type_cast_functions,
        mode=ExecutionMode.INLINE if inline else ExecutionMode.DEFERRED,
        **build_enqueue_options(**options),
    )
    _report_enqueued(migration)


@main.command()
@click.option("--migration-id", type=int, default=None, help="Run only this migration.")
@click.option("--once", is_flag=True, help="Run a single batch instead of draining.")
@click.option(
    "--stuck-job-timeout",
    type=float,
    default=3600.0,
    show_default=True,
    help="Seconds after which a running batch is considered abandoned.",
)
@click.option("--trace", is_flag=True, help="Export OpenTelemetry spans (see BGMIGRATE_OTEL_EXPORTER).")
@click.pass_context
@_handle_errors
def run(
    ctx: click.Context,
    migration_id: int | None,
    once: bool,
    stuck_job_timeout: float,
    trace: bool,
) -> None:
    """Run enqueued background migrations one at a time."""
    from bgmigrate.runner import run_all_migration_jobs, run_next_batch, run_pending_migrations
    from bgmigrate.store import get_migration
    from bgmigrate.tracing import init_tracing, shutdown_tracing

    engine = _get_engine(ctx)
    if trace:
        init_tracing()

    try:
        if migration_id is None:
            if once:
                raise click.UsageError("--once requires --migration-id")
            migrations = run_pending_migrations(engine, stuck_job_timeout=stuck_job_timeout)
        elif once:
            job = run_next_batch(engine, migration_id, stuck_job_timeout=stuck_job_timeout)
            if job is not None:
                click.echo(format_job(job))
            migrations = [get_migration(engine, migration_id)]
        else:
            migrations = [
                run_all_migration_jobs(engine, migration_id, stuck_job_timeout=stuck_job_timeout)
            ]
    finally:
        if trace:
            shutdown_tracing()

    if not migrations:
        click.echo("No pending migrations.")
        return

    for migration in migrations:
        click.echo(format_migration(migration))
    if any(m.status is MigrationStatus.FAILED for m in migrations):
        sys.exit(EXIT_FAILURE)


@main.command()
@click.option("--migration-id", type=int, default=None, help="Show details for one migration.")
@click.option("--json", "output_json", is_flag=True, help="Machine-readable JSON output.")
@click.option(
    "--limit",
    type=int,
    default=20,
    show_default=True,
    help="Number of migrations to list.",
)
@click.pass_context
@_handle_errors
def status(ctx: click.Context, migration_id: int | None, output_json: bool, limit: int) -> None:
    """List migrations or show the batches of one migration."""
    from bgmigrate.store import get_migration, get_progress, list_jobs, list_migrations

    engine = _get_engine(ctx)

    if migration_id is not None:
        migration = get_migration(engine, migration_id)
        progress = get_progress(engine, migration_id)
        jobs = list_jobs(engine, migration_id)

        if output_json:
            data = {
                "migration": migration.model_dump(mode="json"),
                "progress": progress.model_dump(mode="json"),
                "jobs": [j.model_dump(mode="json") for j in jobs],
            }
            click.echo(json.dumps(data, indent=2))
            return

        click.echo(format_migration(migration, progress))
        click.echo(f"    Arguments: {json.dumps(migration.arguments)}")
        click.echo(
            f"    Batch size: {migration.batch_size} "
            f"(sub-batches of {migration.sub_batch_size}, "
            f"pauses {migration.batch_pause}s / {migration.sub_batch_pause_ms}ms, "
            f"max attempts {migration.batch_max_attempts})"
        )
        if jobs:
            click.echo("")
            click.echo(f"  Batches ({len(jobs)}):")
            for job in jobs:
                click.echo(format_job(job))
        return

    migrations = list_migrations(engine, limit=limit)
    if not migrations:
        click.echo("No migrations found.")
        return

    if output_json:
        click.echo(json.dumps([m.model_dump(mode="json") for m in migrations], indent=2))
        return

    click.echo(f"Migrations ({len(migrations)}):")
    click.echo("")
    for migration in migrations:
        click.echo(format_migration(migration, get_progress(engine, migration.id)))


@main.command()
@click.argument("migration_id", type=int)
@click.pass_context
@_handle_errors
def pause(ctx: click.Context, migration_id: int) -> None:
    """Stop a migration before its next batch."""
    from bgmigrate.helpers import pause_migration
    from bgmigrate.store import get_migration

    engine = _get_engine(ctx)
    migration = get_migration(engine, migration_id)
    if not pause_migration(engine, migration_id):
        click.echo(f"Migration {migration_id} is {migration.status.value}; not paused.", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f"Migration {migration_id} paused.")


@main.command()
@click.argument("migration_id", type=int)
@click.pass_context
@_handle_errors
def resume(ctx: click.Context, migration_id: int) -> None:
    """Make a paused migration runnable again."""
    from bgmigrate.helpers import resume_migration
    from bgmigrate.store import get_migration

    engine = _get_engine(ctx)
    migration = get_migration(engine, migration_id)
    if not resume_migration(engine, migration_id):
        click.echo(f"Migration {migration_id} is {migration.status.value}; not resumed.", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f"Migration {migration_id} resumed.")


@main.command()
@click.argument("migration_id", type=int)
@click.pass_context
@_handle_errors
def retry(ctx: click.Context, migration_id: int) -> None:
    """Retry the failed batches of a failed migration."""
    from bgmigrate.helpers import retry_migration

    engine = _get_engine(ctx)
    reset = retry_migration(engine, migration_id)
    click.echo(f"Reset {reset} failed batch(es) of migration {migration_id}.")
