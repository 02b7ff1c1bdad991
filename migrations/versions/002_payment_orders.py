"""Ledger of gateway orders per payment.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_orders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False
        ),
        sa.Column("order_id", sa.String(64), unique=True, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("captured_amount", sa.Integer, nullable=True),
        sa.Column("settlement", sa.String(40), nullable=True),
        sa.Column("settlement_amount", sa.Integer, nullable=True),
        sa.Column("refund_id", sa.String(64), nullable=True),
        sa.Column("note", sa.String(255), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index("idx_payment_orders_payment", "payment_orders", ["payment_id"])
    op.create_index("idx_payment_orders_settlement", "payment_orders", ["settlement"])

    # Orders opened before this table existed.
    op.execute(
        "INSERT INTO payment_orders (payment_id, order_id, amount) "
        "SELECT id, gateway_order_id, amount FROM payments "
        "WHERE gateway_order_id IS NOT NULL"
    )


def downgrade() -> None:
    op.drop_table("payment_orders")
