"""Initialize monetization schema.

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

_MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    def has_index(table: str, index_name: str) -> bool:
        if table not in set(sa.inspect(bind).get_table_names()):
            return False
        return any(item.get("name") == index_name for item in sa.inspect(bind).get_indexes(table))

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("name", sa.String(length=120), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=True),
            sa.Column("role", sa.Enum("USER", "VIP", "ADMIN", name="userrole", native_enum=False), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False),
            sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("users", op.f("ix_users_email")):
        op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    if not has_index("users", op.f("ix_users_role")):
        op.create_index(op.f("ix_users_role"), "users", ["role"], unique=False)
    if not has_index("users", op.f("ix_users_active")):
        op.create_index(op.f("ix_users_active"), "users", ["active"], unique=False)

    if "jeez_balances" not in existing_tables:
        op.create_table(
            "jeez_balances",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("balance", _MONEY, nullable=False),
            sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("balance >= 0", name="ck_jeez_balances_non_negative"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("jeez_balances", op.f("ix_jeez_balances_user_id")):
        op.create_index(op.f("ix_jeez_balances_user_id"), "jeez_balances", ["user_id"], unique=True)

    if "vip_subscriptions" not in existing_tables:
        op.create_table(
            "vip_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column(
                "plan_type",
                sa.Enum("MONTHLY", "QUARTERLY", "ANNUAL", name="plantype", native_enum=False),
                nullable=False,
            ),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("auto_renew", sa.Boolean(), nullable=False),
            sa.Column("renewal_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("vip_subscriptions", op.f("ix_vip_subscriptions_user_id")):
        op.create_index(op.f("ix_vip_subscriptions_user_id"), "vip_subscriptions", ["user_id"], unique=True)
    if not has_index("vip_subscriptions", op.f("ix_vip_subscriptions_is_active")):
        op.create_index(op.f("ix_vip_subscriptions_is_active"), "vip_subscriptions", ["is_active"], unique=False)
    if not has_index("vip_subscriptions", op.f("ix_vip_subscriptions_expires_at")):
        op.create_index(op.f("ix_vip_subscriptions_expires_at"), "vip_subscriptions", ["expires_at"], unique=False)
    if not has_index("vip_subscriptions", "ix_vip_subscriptions_active_expires"):
        op.create_index(
            "ix_vip_subscriptions_active_expires",
            "vip_subscriptions",
            ["is_active", "expires_at"],
            unique=False,
        )

    if "transactions" not in existing_tables:
        op.create_table(
            "transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("transaction_id", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column(
                "transaction_type",
                sa.Enum(
                    "JEEZ_PURCHASE",
                    "JEEZ_SPEND",
                    "VIP_SUBSCRIPTION",
                    "REFUND",
                    "ADJUSTMENT",
                    name="transactiontype",
                    native_enum=False,
                ),
                nullable=False,
            ),
            sa.Column("amount", _MONEY, nullable=False),
            sa.Column(
                "status",
                sa.Enum("PENDING", "COMPLETED", "FAILED", "REFUNDED", name="transactionstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column(
                "payment_method",
                sa.Enum("PAYPAL", "CREDIT_CARD", "WALLET", name="paymentmethod", native_enum=False),
                nullable=False,
            ),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("order_id", sa.String(length=128), nullable=True),
            sa.Column("capture_id", sa.String(length=128), nullable=True),
            sa.Column("vip_subscription_id", sa.String(length=36), nullable=True),
            sa.Column("metadata", sa.Text(), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("transactions", op.f("ix_transactions_transaction_id")):
        op.create_index(op.f("ix_transactions_transaction_id"), "transactions", ["transaction_id"], unique=True)
    if not has_index("transactions", op.f("ix_transactions_user_id")):
        op.create_index(op.f("ix_transactions_user_id"), "transactions", ["user_id"], unique=False)
    if not has_index("transactions", op.f("ix_transactions_order_id")):
        op.create_index(op.f("ix_transactions_order_id"), "transactions", ["order_id"], unique=False)
    if not has_index("transactions", op.f("ix_transactions_vip_subscription_id")):
        op.create_index(
            op.f("ix_transactions_vip_subscription_id"),
            "transactions",
            ["vip_subscription_id"],
            unique=False,
        )
    if not has_index("transactions", op.f("ix_transactions_created_at")):
        op.create_index(op.f("ix_transactions_created_at"), "transactions", ["created_at"], unique=False)
    if not has_index("transactions", "ix_transactions_user_created"):
        op.create_index("ix_transactions_user_created", "transactions", ["user_id", "created_at"], unique=False)

    if "paypal_orders" not in existing_tables:
        op.create_table(
            "paypal_orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=128), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=64), nullable=False),
            sa.Column("amount", _MONEY, nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False),
            sa.Column(
                "status",
                sa.Enum("CREATED", "PENDING", "APPROVED", "COMPLETED", "FAILED", name="orderstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("approve_url", sa.Text(), nullable=True),
            sa.Column("payer_email", sa.String(length=255), nullable=True),
            sa.Column("payer_name", sa.String(length=255), nullable=True),
            sa.Column("capture_id", sa.String(length=128), nullable=True),
            sa.Column("webhook_verified", sa.Boolean(), nullable=False),
            sa.Column("raw_webhook_data", sa.Text(), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    if not has_index("paypal_orders", op.f("ix_paypal_orders_order_id")):
        op.create_index(op.f("ix_paypal_orders_order_id"), "paypal_orders", ["order_id"], unique=True)
    if not has_index("paypal_orders", op.f("ix_paypal_orders_user_id")):
        op.create_index(op.f("ix_paypal_orders_user_id"), "paypal_orders", ["user_id"], unique=False)
    if not has_index("paypal_orders", op.f("ix_paypal_orders_product_id")):
        op.create_index(op.f("ix_paypal_orders_product_id"), "paypal_orders", ["product_id"], unique=False)
    if not has_index("paypal_orders", "ix_paypal_orders_user_status"):
        op.create_index("ix_paypal_orders_user_status", "paypal_orders", ["user_id", "status"], unique=False)

    if "webhook_audit_logs" not in existing_tables:
        op.create_table(
            "webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("external_event_id", sa.String(length=128), nullable=True),
            sa.Column("external_order_id", sa.String(length=128), nullable=True),
            sa.Column("transmission_id", sa.String(length=128), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("http_status", sa.Integer(), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "event_type", "external_event_id", "external_order_id", "outcome"):
        index_name = op.f(f"ix_webhook_audit_logs_{column}")
        if not has_index("webhook_audit_logs", index_name):
            op.create_index(index_name, "webhook_audit_logs", [column], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    for table in ("webhook_audit_logs", "paypal_orders", "transactions", "vip_subscriptions", "jeez_balances", "users"):
        if table in existing_tables:
            # Dropping the table drops its indexes.
            op.drop_table(table)
