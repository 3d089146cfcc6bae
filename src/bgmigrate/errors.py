"""Exceptions raised by bgmigrate.

Configuration problems are raised synchronously at enqueue time and are
never persisted. Failures inside a batch are recorded on the job instead of
being raised (see ``bgmigrate.runner``).
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a background migration cannot be enqueued as configured."""


class UnknownJobTypeError(ConfigurationError):
    """Raised when a job type name is not registered."""


class MigrationNotFoundError(LookupError):
    """Raised when a migration or job id does not exist in the store."""
