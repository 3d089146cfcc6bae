"""CopyColumn job type: copy values between columns, optionally casting."""

from __future__ import annotations

from typing import TYPE_CHECKING

import sqlalchemy as sa
from pydantic import BaseModel, Field, model_validator

from bgmigrate.errors import ConfigurationError
from bgmigrate.jobs.base import SubBatchedJob
from bgmigrate.schema import cast_expression, get_column, types_compatible

if TYPE_CHECKING:
    from sqlalchemy import Table


class CopyColumnArguments(BaseModel):
    """Arguments of a CopyColumn migration."""

    table_name: str
    copy_from: list[str] = Field(min_length=1, description="Source columns.")
    copy_to: list[str] = Field(min_length=1, description="Destination columns, same order.")
    type_cast_functions: dict[str, str | None] = Field(
        default_factory=dict,
        description=(
            "Source column name mapped to a cast: '::type' for CAST(col AS type) "
            "or a SQL function name applied to the column."
        ),
    )

    @model_validator(mode="after")
    def _check_pairs(self) -> CopyColumnArguments:
        if len(self.copy_from) != len(self.copy_to):
            msg = (
                f"copy_from has {len(self.copy_from)} columns but "
                f"copy_to has {len(self.copy_to)}"
            )
            raise ValueError(msg)
        unknown = set(self.type_cast_functions) - set(self.copy_from)
        if unknown:
            msg = f"type_cast_functions refers to columns not copied: {sorted(unknown)}"
            raise ValueError(msg)
        return self

    def pairs(self) -> list[tuple[str, str, str | None]]:
        return [
            (source, destination, self.type_cast_functions.get(source))
            for source, destination in zip(self.copy_from, self.copy_to, strict=True)
        ]


class CopyColumn(SubBatchedJob):
    """Copies each source column into its destination column.

    Rows whose destination already equals the (cast) source are skipped, so
    a re-run of a finished range is a no-op. Type changes that need a
    conversion must be given one in ``type_cast_functions``; enqueueing
    without it fails instead of letting the database truncate or coerce.
    """

    arguments_model = CopyColumnArguments

    def check_columns(self, table: Table, arguments: CopyColumnArguments) -> None:
        for source_name, destination_name, cast in arguments.pairs():
            source = get_column(table, source_name)
            destination = get_column(table, destination_name)
            if destination_name == self.batch_column_name:
                msg = f"Cannot copy into the batch column {destination_name!r}"
                raise ConfigurationError(msg)
            if cast:
                cast_expression(source, cast)
            elif not types_compatible(source.type, destination.type):
                msg = (
                    f"Cannot copy {table.name}.{source_name} ({source.type}) to "
                    f"{destination_name} ({destination.type}) without a type cast; "
                    f"add {source_name!r} to type_cast_functions"
                )
                raise ConfigurationError(msg)

    def build_update(self, table: Table, arguments: CopyColumnArguments) -> sa.Update:
        values = {}
        pending = []
        for source_name, destination_name, cast in arguments.pairs():
            expression = cast_expression(table.c[source_name], cast)
            values[destination_name] = expression
            pending.append(table.c[destination_name].is_distinct_from(expression))
        return sa.update(table).values(values).where(sa.or_(*pending))
