"""Initialize license schema.

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


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "license_orders"):
        op.create_table(
            "license_orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("out_trade_no", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column("term", sa.String(length=16), nullable=False),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("product_name", sa.String(length=255), nullable=False),
            sa.Column("pay_type", sa.String(length=32), nullable=False),
            sa.Column("gateway", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("gateway_trade_no", sa.String(length=128), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "license_orders", "ix_license_orders_out_trade_no"):
        op.create_index("ix_license_orders_out_trade_no", "license_orders", ["out_trade_no"], unique=True)
    if not _has_index(bind, "license_orders", "ix_license_orders_user_id"):
        op.create_index("ix_license_orders_user_id", "license_orders", ["user_id"], unique=False)
    if not _has_index(bind, "license_orders", "ix_license_orders_user_status"):
        op.create_index("ix_license_orders_user_status", "license_orders", ["user_id", "status"], unique=False)

    if not _table_exists(bind, "license_activation_tokens"):
        op.create_table(
            "license_activation_tokens",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=255), nullable=False),
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column("term", sa.String(length=16), nullable=False),
            sa.Column("purchase_time", sa.BigInteger(), nullable=False),
            sa.Column("source", sa.String(length=16), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["license_orders.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "license_activation_tokens", "ix_license_activation_tokens_code"):
        op.create_index("ix_license_activation_tokens_code", "license_activation_tokens", ["code"], unique=True)
    if not _has_index(bind, "license_activation_tokens", "ix_license_activation_tokens_user_id"):
        op.create_index("ix_license_activation_tokens_user_id", "license_activation_tokens", ["user_id"], unique=False)
    if not _has_index(bind, "license_activation_tokens", "ix_license_activation_tokens_order_id"):
        op.create_index(
            "ix_license_activation_tokens_order_id", "license_activation_tokens", ["order_id"], unique=True
        )
    if not _has_index(bind, "license_activation_tokens", "ix_license_tokens_user_purchase"):
        op.create_index(
            "ix_license_tokens_user_purchase",
            "license_activation_tokens",
            ["user_id", "purchase_time"],
            unique=False,
        )

    if not _table_exists(bind, "license_trial_records"):
        op.create_table(
            "license_trial_records",
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("user_id"),
        )

    if not _table_exists(bind, "license_subscriptions"):
        op.create_table(
            "license_subscriptions",
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column("expire_at", sa.BigInteger(), nullable=False),
            sa.Column("is_lifetime", sa.Boolean(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("user_id"),
        )

    if not _table_exists(bind, "license_audit_logs"):
        op.create_table(
            "license_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("source", sa.String(length=32), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("out_trade_no", sa.String(length=64), nullable=True),
            sa.Column("signature", sa.String(length=512), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "source", "event_type", "out_trade_no", "outcome"):
        index_name = f"ix_license_audit_logs_{column}"
        if not _has_index(bind, "license_audit_logs", index_name):
            op.create_index(index_name, "license_audit_logs", [column], unique=False)


def downgrade() -> None:
    op.drop_table("license_audit_logs")
    op.drop_table("license_subscriptions")
    op.drop_table("license_trial_records")
    op.drop_table("license_activation_tokens")
    op.drop_table("license_orders")
