"""Shared sub-batching for the built-in job types."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, ClassVar

from bgmigrate.bounds import iter_sub_batches
from bgmigrate.models import DEFAULT_SUB_BATCH_PAUSE_MS, DEFAULT_SUB_BATCH_SIZE
from bgmigrate.schema import get_column, reflect_table

if TYPE_CHECKING:
    from collections.abc import Callable

    import sqlalchemy as sa
    from pydantic import BaseModel
    from sqlalchemy import Engine

    from bgmigrate.models import BatchRange

logger = logging.getLogger(__name__)


class SubBatchedJob:
    """Runs one UPDATE per sub-batch, each in its own committed transaction.

    Subclasses provide ``arguments_model`` and ``build_update``. The UPDATE
    they return is restricted to the current sub-range of the batch column
    here, and the runner-facing ``process_batch`` sleeps
    ``sub_batch_pause_ms`` between sub-batches to limit lock contention and
    replication lag on the live database.
    """

    arguments_model: ClassVar[type[BaseModel]]

    def __init__(
        self,
        engine: Engine,
        *,
        batch_column_name: str,
        sub_batch_size: int = DEFAULT_SUB_BATCH_SIZE,
        sub_batch_pause_ms: int = DEFAULT_SUB_BATCH_PAUSE_MS,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.engine = engine
        self.batch_column_name = batch_column_name
        self.sub_batch_size = sub_batch_size
        self.sub_batch_pause_ms = sub_batch_pause_ms
        self._sleep = sleep

    @classmethod
    def table_name(cls, arguments: Any) -> str:
        return arguments.table_name

    def validate(self, arguments: Any) -> None:
        table = reflect_table(self.engine, self.table_name(arguments))
        get_column(table, self.batch_column_name)
        self.check_columns(table, arguments)

    def check_columns(self, table: sa.Table, arguments: Any) -> None:
        """Hook for enqueue-time checks of the target columns."""

    def build_update(self, table: sa.Table, arguments: Any) -> sa.Update:
        raise NotImplementedError

    def process_batch(self, batch_range: BatchRange, arguments: Any) -> int:
        table = reflect_table(self.engine, self.table_name(arguments))
        batch_column = get_column(table, self.batch_column_name)

        total = 0
        for index, sub_range in enumerate(iter_sub_batches(batch_range, self.sub_batch_size)):
            if index and self.sub_batch_pause_ms:
                self._sleep(self.sub_batch_pause_ms / 1000)

            stmt = self.build_update(table, arguments).where(
                batch_column.between(sub_range.start, sub_range.end)
            )
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).rowcount

            logger.debug(
                "%s: %s [%d, %d] updated %d rows",
                type(self).__name__,
                table.name,
                sub_range.start,
                sub_range.end,
                rows,
            )
            total += max(rows, 0)
        return total
