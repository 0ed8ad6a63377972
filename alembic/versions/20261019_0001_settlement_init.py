"""Initialize payment settlement schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_ORDER_STATUSES = (
    "TO_PAY",
    "PAYMENT_FAILED",
    "TO_SHIP",
    "TO_RECEIVE",
    "COMPLETED",
    "CANCELLED",
    "PENDING_CANCELLATION",
    "RETURN_REFUND",
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    def has_index(table: str, index_name: str) -> bool:
        if table not in set(sa.inspect(bind).get_table_names()):
            return False
        return any(item.get("name") == index_name for item in sa.inspect(bind).get_indexes(table))

    if "settlement_orders" not in existing_tables:
        op.create_table(
            "settlement_orders",
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column(
                "status",
                sa.Enum(*_ORDER_STATUSES, name="orderstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("total_amount_centavos", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="PHP"),
            sa.Column("payment_reference", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("order_id"),
        )
    if not has_index("settlement_orders", op.f("ix_settlement_orders_user_id")):
        op.create_index(op.f("ix_settlement_orders_user_id"), "settlement_orders", ["user_id"], unique=False)
    if not has_index("settlement_orders", op.f("ix_settlement_orders_status")):
        op.create_index(op.f("ix_settlement_orders_status"), "settlement_orders", ["status"], unique=False)
    if not has_index("settlement_orders", "ix_settlement_orders_user_status"):
        op.create_index("ix_settlement_orders_user_status", "settlement_orders", ["user_id", "status"], unique=False)

    if "settlement_user_credits" not in existing_tables:
        op.create_table(
            "settlement_user_credits",
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("credits_remaining", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_credits_purchased", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("credits_remaining >= 0", name="ck_settlement_user_credits_remaining_nonneg"),
            sa.PrimaryKeyConstraint("user_id"),
        )

    if "settlement_credit_grants" not in existing_tables:
        op.create_table(
            "settlement_credit_grants",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("credits", sa.Integer(), nullable=False),
            sa.Column("provider_event_id", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("settlement_credit_grants", op.f("ix_settlement_credit_grants_idempotency_key")):
        op.create_index(
            op.f("ix_settlement_credit_grants_idempotency_key"),
            "settlement_credit_grants",
            ["idempotency_key"],
            unique=True,
        )
    for column in ("user_id", "order_id", "provider_event_id"):
        index_name = op.f(f"ix_settlement_credit_grants_{column}")
        if not has_index("settlement_credit_grants", index_name):
            op.create_index(index_name, "settlement_credit_grants", [column], unique=False)

    if "settlement_webhook_audit_logs" not in existing_tables:
        op.create_table(
            "settlement_webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("provider_event_id", sa.String(length=128), nullable=True),
            sa.Column("order_id", sa.String(length=64), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "request_id", "event_type", "provider_event_id", "order_id", "outcome"):
        index_name = op.f(f"ix_settlement_webhook_audit_logs_{column}")
        if not has_index("settlement_webhook_audit_logs", index_name):
            op.create_index(index_name, "settlement_webhook_audit_logs", [column], unique=False)


def downgrade() -> None:
    op.drop_table("settlement_webhook_audit_logs")
    op.drop_table("settlement_credit_grants")
    op.drop_table("settlement_user_credits")
    op.drop_table("settlement_orders")
