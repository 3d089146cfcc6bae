"""OpenTelemetry spans for batch attempts.

The runner wraps every batch attempt in a ``bgmigrate.run_migration_job``
span tagged with the migration and the batch range, so slow or failing
ranges can be found in the tracing backend. Nothing is exported until
``init_tracing`` installs a provider; until then the OTel no-op provider
is in effect.

Exporters are picked with ``BGMIGRATE_OTEL_EXPORTER`` and, for the OTLP
ones, ``BGMIGRATE_OTEL_ENDPOINT``. The OTLP exporters come from the
``otlp`` extra and are imported only when selected.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import TYPE_CHECKING

from bgmigrate.errors import ConfigurationError

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
    from opentelemetry.trace import Tracer

    from bgmigrate.models import JobRecord, MigrationRecord

SERVICE_NAME = "bgmigrate"
SERVICE_VERSION = "0.1.0"

BGMIGRATE_OTEL_EXPORTER_ENV = "BGMIGRATE_OTEL_EXPORTER"
BGMIGRATE_OTEL_ENDPOINT_ENV = "BGMIGRATE_OTEL_ENDPOINT"


class ExporterType(Enum):
    CONSOLE = "console"
    OTLP_GRPC = "otlp_grpc"
    OTLP_HTTP = "otlp_http"
    NONE = "none"


def build_resource() -> dict[str, str]:
    """Resource attributes identifying bgmigrate as the span producer."""
    return {"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION}


def resolve_exporter_type(exporter: ExporterType | None = None) -> ExporterType:
    """Return *exporter*, else the one named by the environment, else console.

    Raises:
        ConfigurationError: If ``BGMIGRATE_OTEL_EXPORTER`` names no exporter.
    """
    if exporter is not None:
        return exporter

    name = os.environ.get(BGMIGRATE_OTEL_EXPORTER_ENV, ExporterType.CONSOLE.value)
    try:
        return ExporterType(name.strip().lower())
    except ValueError:
        choices = "/".join(e.value for e in ExporterType)
        msg = f"{BGMIGRATE_OTEL_EXPORTER_ENV}={name!r} is not one of {choices}"
        raise ConfigurationError(msg) from None


def migration_attributes(migration: MigrationRecord) -> dict[str, str | int]:
    attrs: dict[str, str | int] = {
        "bgmigrate.migration.id": migration.id,
        "bgmigrate.migration.name": migration.migration_name,
        "bgmigrate.migration.batch_column": migration.batch_column_name,
        "bgmigrate.migration.batch_size": migration.batch_size,
        "bgmigrate.migration.sub_batch_size": migration.sub_batch_size,
    }
    # An empty table leaves the bounds unset.
    if migration.min_value is not None:
        attrs["bgmigrate.migration.min_value"] = migration.min_value
    if migration.max_value is not None:
        attrs["bgmigrate.migration.max_value"] = migration.max_value
    return attrs


def job_attributes(job: JobRecord, rows_affected: int | None = None) -> dict[str, str | int]:
    attrs: dict[str, str | int] = {
        "bgmigrate.job.id": job.id,
        "bgmigrate.job.min_value": job.min_value,
        "bgmigrate.job.max_value": job.max_value,
        "bgmigrate.job.attempt": job.attempts,
    }
    if rows_affected is not None:
        attrs["bgmigrate.job.rows_affected"] = rows_affected
    return attrs


def _span_processor(exporter_type: ExporterType, endpoint: str | None) -> SpanProcessor | None:
    """Build the processor for *exporter_type*; ``None`` for ``ExporterType.NONE``."""
    if exporter_type is ExporterType.NONE:
        return None

    if exporter_type is ExporterType.CONSOLE:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

        return SimpleSpanProcessor(ConsoleSpanExporter())

    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    if exporter_type is ExporterType.OTLP_GRPC:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    else:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

    kwargs = {"endpoint": endpoint} if endpoint else {}
    return BatchSpanProcessor(OTLPSpanExporter(**kwargs))


def _create_tracer_provider(
    exporter_type: ExporterType,
    endpoint: str | None = None,
) -> TracerProvider:
    """Build a provider for *exporter_type* without registering it."""
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider

    provider = TracerProvider(resource=Resource.create(build_resource()))
    processor = _span_processor(exporter_type, endpoint)
    if processor is not None:
        provider.add_span_processor(processor)
    return provider


def init_tracing(exporter: ExporterType | None = None, endpoint: str | None = None) -> None:
    """Install a tracer provider globally, replacing and shutting down any previous one."""
    from opentelemetry import trace

    provider = _create_tracer_provider(
        resolve_exporter_type(exporter),
        endpoint or os.environ.get(BGMIGRATE_OTEL_ENDPOINT_ENV) or None,
    )
    shutdown_tracing()

    # set_tracer_provider only accepts the first provider of a process.
    once = trace._TRACER_PROVIDER_SET_ONCE
    with once._lock:
        once._done = False
    trace.set_tracer_provider(provider)


def get_tracer() -> Tracer:
    from opentelemetry import trace

    return trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)


def shutdown_tracing() -> None:
    """Flush and stop the installed provider, if any."""
    from opentelemetry import trace

    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()
