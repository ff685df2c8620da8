"""initial schema

Revision ID: 202512200900
Revises:
Create Date: 2025-12-20 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202512200900"
down_revision = None
branch_labels = None
depends_on = None


CHECK_RATE_LIMIT_FUNCTION = """
CREATE OR REPLACE FUNCTION check_rate_limit(
    p_key text, p_limit integer, p_window_seconds integer
) RETURNS boolean
LANGUAGE plpgsql AS $$
DECLARE
    v_count integer;
BEGIN
    INSERT INTO rate_limit_buckets AS b (key, window_started_at, count)
    VALUES (p_key, timezone('utc', now()), 1)
    ON CONFLICT (key) DO UPDATE SET
        window_started_at = CASE
            WHEN b.window_started_at + make_interval(secs => p_window_seconds)
                <= timezone('utc', now())
            THEN timezone('utc', now())
            ELSE b.window_started_at
        END,
        count = CASE
            WHEN b.window_started_at + make_interval(secs => p_window_seconds)
                <= timezone('utc', now())
            THEN 1
            ELSE b.count + 1
        END
    RETURNING count INTO v_count;
    RETURN v_count <= p_limit;
END;
$$;
"""


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date_id", "transactions", ["user_id", "date", "id"]
    )

    op.create_table(
        "profiles",
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column("full_name", sa.String(length=100)),
        sa.Column("monthly_budget_goal", sa.Numeric(12, 2)),
        sa.Column("monthly_fixed_expenses", sa.Numeric(12, 2)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "fixed_expenses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_fixed_expenses_amount_positive"),
    )
    op.create_index("ix_fixed_expenses_user", "fixed_expenses", ["user_id"])

    op.create_table(
        "rate_limit_buckets",
        sa.Column("key", sa.String(length=200), primary_key=True),
        sa.Column("window_started_at", sa.DateTime(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
    )

    if op.get_bind().dialect.name == "postgresql":
        op.execute(CHECK_RATE_LIMIT_FUNCTION)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP FUNCTION IF EXISTS check_rate_limit(text, integer, integer)")
    op.drop_table("rate_limit_buckets")
    op.drop_index("ix_fixed_expenses_user", table_name="fixed_expenses")
    op.drop_table("fixed_expenses")
    op.drop_table("profiles")
    op.drop_index("ix_transactions_user_date_id", table_name="transactions")
    op.drop_table("transactions")
    if op.get_bind().dialect.name == "postgresql":
        sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
