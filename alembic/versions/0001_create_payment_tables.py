"""create payment tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

payment_status = sa.Enum(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", "REFUNDED", name="paymentstatus"
)
payment_method_type = sa.Enum(
    "CREDIT_CARD", "DEBIT_CARD", "PAYPAL", "APPLE_PAY", "GOOGLE_PAY", name="paymentmethodtype"
)
gateway_event_kind = sa.Enum("CHARGE", "REFUND", name="gatewayeventkind")


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("customer_id", sa.String(36), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method_type", payment_method_type, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("gateway_transaction_id", sa.String(100), nullable=True),
        sa.Column("gateway_reference", sa.String(100), nullable=True),
        sa.Column("card_last_four", sa.String(4), nullable=True),
        sa.Column("card_brand", sa.String(20), nullable=True),
        sa.Column("processing_fee", sa.Numeric(8, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("gateway_raw_response", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("refund_amount >= 0 AND refund_amount <= amount", name="ck_payments_refund_bound"),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"], unique=True)
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_gateway_transaction_id", "payments", ["gateway_transaction_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    op.create_table(
        "payment_gateway_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("kind", gateway_event_kind, nullable=False),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("kind", "external_id", name="uq_payment_gateway_events_kind_external_id"),
    )
    op.create_index("ix_payment_gateway_events_payment_id", "payment_gateway_events", ["payment_id"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("customer_id", sa.String(36), nullable=False),
        sa.Column("type", payment_method_type, nullable=False),
        sa.Column("card_last_four", sa.String(4), nullable=True),
        sa.Column("card_brand", sa.String(20), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("card_holder_name", sa.String(100), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("gateway_token_hash", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payment_methods_customer_id", "payment_methods", ["customer_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_methods_customer_id", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_payment_gateway_events_payment_id", table_name="payment_gateway_events")
    op.drop_table("payment_gateway_events")
    for name in (
        "ix_payments_created_at",
        "ix_payments_gateway_transaction_id",
        "ix_payments_status",
        "ix_payments_customer_id",
        "ix_payments_order_id",
    ):
        op.drop_index(name, table_name="payments")
    op.drop_table("payments")
    gateway_event_kind.drop(op.get_bind(), checkfirst=True)
    payment_method_type.drop(op.get_bind(), checkfirst=True)
    payment_status.drop(op.get_bind(), checkfirst=True)
