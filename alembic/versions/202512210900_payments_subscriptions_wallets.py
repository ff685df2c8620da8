"""payments, subscriptions and wallets

Revision ID: 202512210900
Revises: 202512200900
Create Date: 2025-12-21 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202512210900"
down_revision = "202512200900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "upcoming_payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_upcoming_payments_amount_positive"),
    )
    op.create_index(
        "ix_upcoming_payments_user_due", "upcoming_payments", ["user_id", "due_date"]
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="TL"),
        sa.Column(
            "billing_cycle",
            sa.Enum("monthly", "yearly", name="billingcycle"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("next_renewal_date", sa.Date(), nullable=False),
        sa.Column("icon_url", sa.String(length=500)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_subscriptions_amount_positive"),
    )
    op.create_index(
        "ix_subscriptions_user_renewal",
        "subscriptions",
        ["user_id", "next_renewal_date"],
    )

    op.create_table(
        "wallets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )
    op.create_index("ix_wallets_user", "wallets", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_wallets_user", table_name="wallets")
    op.drop_table("wallets")
    op.drop_index("ix_subscriptions_user_renewal", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_upcoming_payments_user_due", table_name="upcoming_payments")
    op.drop_table("upcoming_payments")
    if op.get_bind().dialect.name == "postgresql":
        sa.Enum(name="billingcycle").drop(op.get_bind(), checkfirst=True)
