"""Initial schema: background_migrations and background_migration_jobs tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "background_migrations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("migration_name", sa.String, nullable=False),
        sa.Column("arguments_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("batch_column_name", sa.String, nullable=False),
        sa.Column("min_value", sa.BigInteger, nullable=True),
        sa.Column("max_value", sa.BigInteger, nullable=True),
        sa.Column("batch_size", sa.Integer, nullable=False),
        sa.Column("sub_batch_size", sa.Integer, nullable=False),
        sa.Column("batch_pause", sa.Float, nullable=False),
        sa.Column("sub_batch_pause_ms", sa.Integer, nullable=False),
        sa.Column("batch_max_attempts", sa.Integer, nullable=False),
        sa.Column("status", sa.String, nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_background_migrations_status", "background_migrations", ["status"]
    )

    op.create_table(
        "background_migration_jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "migration_id",
            sa.Integer,
            sa.ForeignKey("background_migrations.id"),
            nullable=False,
        ),
        sa.Column("min_value", sa.BigInteger, nullable=False),
        sa.Column("max_value", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rows_affected", sa.BigInteger, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_backtrace", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "migration_id", "min_value", name="uq_background_migration_jobs_range"
        ),
    )
    op.create_index(
        "ix_background_migration_jobs_migration_status",
        "background_migration_jobs",
        ["migration_id", "status"],
    )


def downgrade() -> None:
    op.drop_table("background_migration_jobs")
    op.drop_table("background_migrations")
