"""Tests for bgmigrate.jobs.registry: job type lookup and argument parsing."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from pydantic import BaseModel

from bgmigrate.errors import ConfigurationError, UnknownJobTypeError
from bgmigrate.jobs import (
    BackfillColumn,
    BackfillColumnArguments,
    CopyColumn,
    get_job_type,
    parse_arguments,
    register_job_type,
    registered_job_types,
    unregister_job_type,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


class _NoopArguments(BaseModel):
    table_name: str


class _NoopJob(BackfillColumn):
    arguments_model = _NoopArguments


@pytest.fixture
def noop_job_type() -> Iterator[str]:
    register_job_type("NoopJob", _NoopJob)
    yield "NoopJob"
    unregister_job_type("NoopJob")


class TestGetJobType:
    def test_builtins(self) -> None:
        assert get_job_type("BackfillColumn") is BackfillColumn
        assert get_job_type("CopyColumn") is CopyColumn

    def test_unknown_name(self) -> None:
        with pytest.raises(UnknownJobTypeError, match="Known types: BackfillColumn, CopyColumn"):
            get_job_type("DropEverything")

    def test_unknown_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            get_job_type("DropEverything")


class TestRegisterJobType:
    def test_register_and_unregister(self, noop_job_type: str) -> None:
        assert get_job_type(noop_job_type) is _NoopJob
        assert noop_job_type in registered_job_types()

        unregister_job_type(noop_job_type)
        assert noop_job_type not in registered_job_types()

    def test_builtin_cannot_be_replaced(self) -> None:
        with pytest.raises(ValueError, match="built in"):
            register_job_type("CopyColumn", _NoopJob)

    def test_builtin_cannot_be_unregistered(self) -> None:
        unregister_job_type("BackfillColumn")
        assert get_job_type("BackfillColumn") is BackfillColumn


class TestParseArguments:
    def test_from_mapping(self) -> None:
        arguments = parse_arguments(
            BackfillColumn, {"table_name": "users", "updates": {"admin": False}}
        )
        assert isinstance(arguments, BackfillColumnArguments)
        assert arguments.updates == {"admin": False}

    def test_model_passed_through(self) -> None:
        arguments = BackfillColumnArguments(table_name="users", updates={"admin": True})
        assert parse_arguments(BackfillColumn, arguments) is arguments

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid arguments for CopyColumn"):
            parse_arguments(CopyColumn, {"table_name": "users"})
