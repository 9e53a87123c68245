"""add pending handoff claims

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "pending_claims",
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("flow_type", sa.String(), nullable=False, server_default="app_first"),
        sa.Column("flow_data_encrypted", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'claimed', 'expired')", name="ck_pending_claims_status"),
        sa.CheckConstraint("flow_type IN ('app_first', 'marketplace_first')", name="ck_pending_claims_flow_type"),
        sa.CheckConstraint(
            "(status = 'claimed' AND claimed_at IS NOT NULL) OR (status != 'claimed' AND claimed_at IS NULL)",
            name="ck_pending_claims_claimed_at",
        ),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index(op.f("ix_pending_claims_account_id"), "pending_claims", ["account_id"], unique=False)
    op.create_index("ix_pending_claims_status_expires", "pending_claims", ["status", "expires_at"], unique=False)
    op.create_index("ix_pending_claims_provider", "pending_claims", ["provider"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_pending_claims_provider", table_name="pending_claims")
    op.drop_index("ix_pending_claims_status_expires", table_name="pending_claims")
    op.drop_index(op.f("ix_pending_claims_account_id"), table_name="pending_claims")
    op.drop_table("pending_claims")
