"""initial schema: wallets, categories, transactions, budgets, snapshots

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")
CATEGORY_TYPE = sa.Enum("income", "expense", name="categorytype")
WALLET_KIND = sa.Enum("cash", "bank", "investment", name="walletkind")
BUDGET_PERIOD = sa.Enum("daily", "weekly", "monthly", "yearly", name="budgetperiod")
RECURRENCE = sa.Enum("daily", "weekly", "monthly", "yearly", name="recurrence")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("kind", WALLET_KIND, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_wallet_user_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", CATEGORY_TYPE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True),
        sa.Column(
            "to_wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("subcategory_id", sa.Integer(), nullable=True),
        sa.Column("trip_id", sa.Integer(), nullable=True),
        sa.Column("investment_asset_id", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "exclude_from_stats", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurrence", RECURRENCE, nullable=True),
        sa.Column(
            "parent_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True
        ),
        sa.Column("occurrence_date", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "parent_id", "occurrence_date", name="uq_txn_parent_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_wallet_date",
        "transactions",
        ["user_id", "wallet_id", "date"],
    )
    op.create_index(
        "ix_transactions_parent_date", "transactions", ["parent_id", "date"]
    )
    op.create_index(
        "ix_transactions_recurring", "transactions", ["is_recurring", "active"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("period", BUDGET_PERIOD, nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
    )
    op.create_index(
        "ix_budgets_user_active_period", "budgets", ["user_id", "active", "period"]
    )

    op.create_table(
        "budget_period_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("period_from", sa.DateTime(), nullable=False),
        sa.Column("period_to", sa.DateTime(), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False),
        sa.Column("remaining_cents", sa.Integer(), nullable=False),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("closed_at", sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "period_from", name="uq_snapshot_budget_from"
        ),
    )
    op.create_index(
        "ix_snapshots_budget_to",
        "budget_period_snapshots",
        ["budget_id", "period_to"],
    )


def downgrade() -> None:
    op.drop_index("ix_snapshots_budget_to", table_name="budget_period_snapshots")
    op.drop_table("budget_period_snapshots")
    op.drop_index("ix_budgets_user_active_period", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_recurring", table_name="transactions")
    op.drop_index("ix_transactions_parent_date", table_name="transactions")
    op.drop_index("ix_transactions_user_wallet_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("wallets")
