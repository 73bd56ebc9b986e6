"""add idempotency ledger and stale-pending scan index

Revision ID: 0002_idempotency_keys
Revises: 0001_payments
Create Date: 2026-10-09
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_idempotency_keys"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "idempotency_keys",
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=36), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("idempotency_key"),
    )
    op.create_index("ix_idempotency_keys_payment_id", "idempotency_keys", ["payment_id"])
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])
    op.create_index(
        "ix_payments_status_created_at",
        "payments",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_payments_status_created_at", table_name="payments")
    op.drop_index("ix_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_index("ix_idempotency_keys_payment_id", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
