"""Schema introspection helpers for the tables being migrated.

Thin wrappers over SQLAlchemy reflection. Missing tables or columns are
reported as ``ConfigurationError`` so they surface at enqueue time.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import sqlalchemy as sa

from bgmigrate.errors import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

_SAFE_TYPE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_ ]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?$")
_SAFE_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class _NamedType(sa.types.UserDefinedType):
    """A column type rendered verbatim, used as the target of ``CAST``."""

    cache_ok = True

    def __init__(self, name: str) -> None:
        self.name = name

    def get_col_spec(self, **_kw: object) -> str:
        return self.name


def reflect_table(engine: Engine, table_name: str) -> sa.Table:
    """Load a table definition from the database."""
    try:
        return sa.Table(table_name, sa.MetaData(), autoload_with=engine)
    except sa.exc.NoSuchTableError:
        msg = f"Table {table_name!r} does not exist"
        raise ConfigurationError(msg) from None


def get_column(table: sa.Table, column_name: str) -> sa.Column:
    """Return a column of *table* or raise ``ConfigurationError``."""
    if column_name not in table.c:
        msg = f"Column {column_name!r} does not exist on table {table.name!r}"
        raise ConfigurationError(msg)
    return table.c[column_name]


def primary_key_column(engine: Engine, table_name: str) -> str:
    """Name of the single-column primary key of *table_name*."""
    table = reflect_table(engine, table_name)
    columns = list(table.primary_key.columns)
    if len(columns) != 1:
        msg = (
            f"Table {table_name!r} has no single-column primary key; "
            "pass batch_column_name explicitly"
        )
        raise ConfigurationError(msg)
    return columns[0].name


def column_bounds(engine: Engine, table_name: str, column_name: str) -> tuple[int | None, int | None]:
    """Return ``(MIN(column), MAX(column))``; both ``None`` for an empty table."""
    table = reflect_table(engine, table_name)
    column = get_column(table, column_name)
    stmt = sa.select(sa.func.min(column), sa.func.max(column))
    with engine.connect() as conn:
        row = conn.execute(stmt).one()
    return row[0], row[1]


def cast_expression(column: sa.ColumnElement, type_cast_function: str | None) -> sa.ColumnElement:
    """Wrap *column* in the requested conversion.

    ``"::type"`` renders as ``CAST(column AS type)``; any other value is
    treated as a SQL function name and renders as ``function(column)``.
    """
    if not type_cast_function:
        return column

    if type_cast_function.startswith("::"):
        type_name = type_cast_function[2:].strip()
        if not _SAFE_TYPE_NAME.match(type_name):
            msg = f"Unsupported cast target {type_cast_function!r}"
            raise ConfigurationError(msg)
        return sa.cast(column, _NamedType(type_name))

    if not _SAFE_FUNCTION_NAME.match(type_cast_function):
        msg = f"Unsupported type cast function {type_cast_function!r}"
        raise ConfigurationError(msg)
    func = sa.func
    for part in type_cast_function.split("."):
        func = getattr(func, part)
    return func(column)


def types_compatible(source: sa.types.TypeEngine, destination: sa.types.TypeEngine) -> bool:
    """Whether values of *source* can be copied into *destination* without a cast.

    Types are compared by the Python type they map to; types without a
    Python mapping must be of the same SQLAlchemy class.
    """
    try:
        return source.python_type is destination.python_type
    except NotImplementedError:
        return type(source) is type(destination)
