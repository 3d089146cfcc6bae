"""BatchJob protocol definition."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pydantic import BaseModel

    from bgmigrate.models import BatchRange


@runtime_checkable
class BatchJob(Protocol):
    """Protocol for job types a background migration can run.

    A job type is constructed once per batch attempt by the runner and is
    asked to process exactly one range of the batch column. It must be safe
    to process the same range again: the runner relies on that to recover
    from crashes instead of on distributed transactions.
    """

    arguments_model: ClassVar[type[BaseModel]]

    @classmethod
    def table_name(cls, arguments: BaseModel) -> str:
        """Table whose batch column the migration iterates over."""
        ...

    def validate(self, arguments: BaseModel) -> None:
        """Check the arguments against the database before enqueueing.

        Raises ``ConfigurationError`` when the migration cannot work.
        """
        ...

    def process_batch(self, batch_range: BatchRange, arguments: BaseModel) -> int:
        """Process one batch and return the number of affected rows."""
        ...
