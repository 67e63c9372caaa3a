"""add processed payments table

Revision ID: 20261020_000002
Revises: 20261019_000001
Create Date: 2026-10-20 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261020_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processed_payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "reference", name="uq_processed_payments_provider_reference"),
    )
    op.create_index(
        "ix_processed_payments_user_id",
        "processed_payments",
        ["user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_processed_payments_user_id", table_name="processed_payments")
    op.drop_table("processed_payments")
