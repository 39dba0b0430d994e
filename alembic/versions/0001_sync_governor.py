"""Sync governor schema: queue items, activity, scores, project sources, accounts, runs.

Revision ID: 0001_sync_governor
Revises: None
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_sync_governor"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_queue_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("newest_cursor_at", sa.DateTime(), nullable=False),
        sa.Column("newest_cursor_id", sa.String(), nullable=True),
        sa.Column("oldest_cursor_at", sa.DateTime(), nullable=True),
        sa.Column("oldest_cursor_id", sa.String(), nullable=True),
        sa.Column("floor_cursor_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sync_queue_items_project_id", "sync_queue_items", ["project_id"], unique=False)
    op.create_index("ix_sync_queue_items_source_status", "sync_queue_items", ["source", "status"], unique=False)
    op.create_index(
        "ix_sync_queue_items_unit_newest", "sync_queue_items", ["source", "unit_key", "newest_cursor_at"], unique=False
    )
    op.create_index(
        "uq_sync_queue_items_open_unit",
        "sync_queue_items",
        ["source", "unit_key"],
        unique=True,
        postgresql_where=sa.text("status <> 'completed'"),
        sqlite_where=sa.text("status <> 'completed'"),
    )

    op.create_table(
        "activity_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("author_id", sa.String(), nullable=True),
        sa.Column("author_name", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_timestamp", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "project_id", "external_id", name="uq_activity_records_natural_key"),
    )
    op.create_index("ix_activity_records_unit_key", "activity_records", ["unit_key"], unique=False)
    op.create_index(
        "ix_activity_records_author_created",
        "activity_records",
        ["source", "project_id", "author_id", "created_timestamp"],
        unique=False,
    )

    op.create_table(
        "score_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("signal_source_id", sa.String(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("raw_value", sa.Float(), nullable=True),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("max_value", sa.Float(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_score_records_key", "score_records", ["user_id", "project_id", "signal_source_id", "day"], unique=False
    )

    op.create_table(
        "project_sources",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("signal_source_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("previous_days", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("max_chars", sa.Integer(), nullable=True),
        sa.Column("max_value", sa.Float(), nullable=False, server_default="100"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "source", name="uq_project_sources_project_source"),
    )
    op.create_index("ix_project_sources_source", "project_sources", ["source"], unique=False)

    op.create_table(
        "platform_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("external_user_id", sa.String(), nullable=False),
        sa.Column("external_username", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "project_id", "external_user_id", name="uq_platform_accounts_external_user"),
    )
    op.create_index("ix_platform_accounts_user_id", "platform_accounts", ["user_id"], unique=False)

    op.create_table(
        "governor_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("reaped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enqueued", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("crashed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scores_written", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_governor_runs_source", "governor_runs", ["source"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_governor_runs_source", table_name="governor_runs")
    op.drop_table("governor_runs")
    op.drop_index("ix_platform_accounts_user_id", table_name="platform_accounts")
    op.drop_table("platform_accounts")
    op.drop_index("ix_project_sources_source", table_name="project_sources")
    op.drop_table("project_sources")
    op.drop_index("ix_score_records_key", table_name="score_records")
    op.drop_table("score_records")
    op.drop_index("ix_activity_records_author_created", table_name="activity_records")
    op.drop_index("ix_activity_records_unit_key", table_name="activity_records")
    op.drop_table("activity_records")
    op.drop_index("uq_sync_queue_items_open_unit", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_items_unit_newest", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_items_source_status", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_items_project_id", table_name="sync_queue_items")
    op.drop_table("sync_queue_items")
