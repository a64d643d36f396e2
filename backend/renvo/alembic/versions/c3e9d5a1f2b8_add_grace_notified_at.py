"""Add grace_notified_at

Revision ID: c3e9d5a1f2b8
Revises: a1c4e2f09b7d
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c3e9d5a1f2b8"
down_revision = "a1c4e2f09b7d"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "subscriptions",
        sa.Column("grace_notified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "deletion_records",
        sa.Column("grace_notified_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("deletion_records", "grace_notified_at")
    op.drop_column("subscriptions", "grace_notified_at")
