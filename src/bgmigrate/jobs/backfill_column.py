"""BackfillColumn job type: set columns to constant values."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from pydantic import BaseModel, Field

from bgmigrate.errors import ConfigurationError
from bgmigrate.jobs.base import SubBatchedJob
from bgmigrate.schema import get_column

if TYPE_CHECKING:
    from sqlalchemy import Table


class BackfillColumnArguments(BaseModel):
    """Arguments of a BackfillColumn migration."""

    table_name: str
    updates: dict[str, Any] = Field(
        min_length=1,
        description="Column names mapped to the value every row should hold.",
    )


class BackfillColumn(SubBatchedJob):
    """Sets one or more columns to fixed values.

    Rows already holding all target values are left untouched, so running a
    range twice changes nothing the second time.

    Example:
        UPDATE users SET admin = false
        WHERE admin IS DISTINCT FROM false AND id BETWEEN 1 AND 1000
    """

    arguments_model = BackfillColumnArguments

    def check_columns(self, table: Table, arguments: BackfillColumnArguments) -> None:
        for column_name in arguments.updates:
            get_column(table, column_name)
            if column_name == self.batch_column_name:
                msg = f"Cannot backfill the batch column {column_name!r}"
                raise ConfigurationError(msg)

    def build_update(self, table: Table, arguments: BackfillColumnArguments) -> sa.Update:
        pending = [
            table.c[column_name].is_distinct_from(value)
            for column_name, value in arguments.updates.items()
        ]
        return sa.update(table).values(arguments.updates).where(sa.or_(*pending))
