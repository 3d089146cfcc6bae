"""Job type registry.

Job types are looked up by the name stored on the migration record. The
built-in types are always present; applications may register their own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from bgmigrate.errors import ConfigurationError, UnknownJobTypeError
from bgmigrate.jobs.backfill_column import BackfillColumn
from bgmigrate.jobs.copy_column import CopyColumn

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bgmigrate.jobs.protocol import BatchJob

BUILTIN_JOB_TYPES: dict[str, type[BatchJob]] = {
    "BackfillColumn": BackfillColumn,
    "CopyColumn": CopyColumn,
}

_job_types: dict[str, type[BatchJob]] = dict(BUILTIN_JOB_TYPES)


def get_job_type(name: str) -> type[BatchJob]:
    """Return the job type class registered under *name*."""
    try:
        return _job_types[name]
    except KeyError:
        known = ", ".join(sorted(_job_types))
        msg = f"Unknown background migration job type {name!r}. Known types: {known}"
        raise UnknownJobTypeError(msg) from None


def register_job_type(name: str, job_type: type[BatchJob]) -> None:
    """Register an application-defined job type.

    Built-in names cannot be replaced.
    """
    if name in BUILTIN_JOB_TYPES:
        msg = f"Job type {name!r} is built in and cannot be replaced"
        raise ValueError(msg)
    _job_types[name] = job_type


def unregister_job_type(name: str) -> None:
    """Remove an application-defined job type. Unknown names are ignored."""
    if name not in BUILTIN_JOB_TYPES:
        _job_types.pop(name, None)


def registered_job_types() -> list[str]:
    return sorted(_job_types)


def parse_arguments(job_type: type[BatchJob], arguments: BaseModel | Mapping[str, Any]) -> BaseModel:
    """Validate *arguments* into the job type's typed arguments model."""
    model = job_type.arguments_model
    if isinstance(arguments, model):
        return arguments
    arguments = arguments.model_dump() if isinstance(arguments, BaseModel) else dict(arguments)
    try:
        return model.model_validate(arguments)
    except ValidationError as e:
        msg = f"Invalid arguments for {job_type.__name__}: {e}"
        raise ConfigurationError(msg) from e
