"""Mark platform accounts provisioned for unlinked authors.

Revision ID: 0002_shell_accounts
Revises: 0001_sync_governor
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_shell_accounts"
down_revision = "0001_sync_governor"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    cols = {col.get("name") for col in insp.get_columns("platform_accounts")}

    if "is_shell" not in cols:
        op.add_column(
            "platform_accounts",
            sa.Column("is_shell", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    cols = {col.get("name") for col in insp.get_columns("platform_accounts")}

    if "is_shell" in cols:
        op.drop_column("platform_accounts", "is_shell")
