"""Shared test fixtures for bgmigrate."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import sqlalchemy as sa

from bgmigrate.store import get_engine, run_migrations, sqlite_url

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy import Engine


USER_COUNT = 100


def setup_db(tmp_path: Path) -> Engine:
    """Create a SQLite database with the engine tables and return an engine."""
    url = sqlite_url(tmp_path / "test.db")
    run_migrations(url)
    return get_engine(url)


def create_users_table(engine: Engine, count: int = USER_COUNT) -> sa.Table:
    """Create a ``users`` table holding ids 1..count, with columns to migrate."""
    metadata = sa.MetaData()
    users = sa.Table(
        "users",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("admin", sa.Boolean, nullable=True),
        sa.Column("status", sa.String, nullable=True),
        sa.Column("score", sa.Integer, nullable=True),
        sa.Column("score_copy", sa.Integer, nullable=True),
        sa.Column("id_for_type_change", sa.Text, nullable=True),
    )
    metadata.create_all(engine)
    if count:
        with engine.begin() as conn:
            conn.execute(
                sa.insert(users),
                [{"id": i, "name": f"user-{i}", "score": i * 10} for i in range(1, count + 1)],
            )
    return users


class SleepRecorder:
    """Stand-in for ``time.sleep`` that records requested pauses."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def engine(tmp_path: Path) -> Engine:
    return setup_db(tmp_path)


@pytest.fixture
def users(engine: Engine) -> sa.Table:
    return create_users_table(engine)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()
