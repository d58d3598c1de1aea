"""initial payments schema

Revision ID: 0001_payments
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("order_reference", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("provider_reference", sa.String(), nullable=True),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("order_reference"),
    )
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
    op.create_index("ix_orders_provider_reference", "orders", ["provider_reference"])

    op.create_table(
        "order_status_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("order_reference", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["order_reference"], ["orders.order_reference"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_order_status_timeline_order_reference", "order_status_timeline", ["order_reference"])

    op.create_table(
        "payment_attempts",
        sa.Column("order_reference", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("provider_reference", sa.String(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("order_reference"),
    )
    op.create_index("ix_payment_attempts_provider", "payment_attempts", ["provider"])
    op.create_index("ix_payment_attempts_status", "payment_attempts", ["status"])
    op.create_index("ix_payment_attempts_provider_reference", "payment_attempts", ["provider_reference"])

    op.create_table(
        "processed_notifications",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=False),
        sa.Column("order_reference", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("provider", "provider_transaction_id"),
        sa.UniqueConstraint("provider", "provider_transaction_id", name="uq_processed_notification"),
    )
    op.create_index("ix_processed_notifications_order_reference", "processed_notifications", ["order_reference"])


def downgrade() -> None:
    op.drop_index("ix_processed_notifications_order_reference", table_name="processed_notifications")
    op.drop_table("processed_notifications")
    op.drop_index("ix_payment_attempts_provider_reference", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_status", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_provider", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_order_status_timeline_order_reference", table_name="order_status_timeline")
    op.drop_table("order_status_timeline")
    op.drop_index("ix_orders_provider_reference", table_name="orders")
    op.drop_index("ix_orders_payment_status", table_name="orders")
    op.drop_table("orders")
