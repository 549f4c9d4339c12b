"""obligations, transactions, budgets

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


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "obligations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("frequency", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_due", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "ended", name="obligationstatus"),
            nullable=False,
        ),
        sa.Column("last_processed", sa.Date(), nullable=True),
        sa.Column(
            "total_occurrences", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("ledger_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
        sa.CheckConstraint(
            "total_occurrences >= 0", name="ck_obligation_occurrences_positive"
        ),
    )
    op.create_index(
        "ix_obligations_user_status_due",
        "obligations",
        ["user_id", "status", "next_due"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("ledger_id", sa.String(length=64), nullable=True),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "cancelled", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column(
            "origin_obligation_id",
            sa.Integer(),
            sa.ForeignKey("obligations.id"),
            nullable=True,
        ),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "origin_obligation_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category", "date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "yearly", name="budgetperiod"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("active", "exceeded", name="budgetstatus"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
        sa.CheckConstraint("start_date <= end_date", name="ck_budget_window_ordered"),
    )
    op.create_index(
        "ix_budgets_user_category_window",
        "budgets",
        ["user_id", "category", "start_date", "end_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_budgets_user_category_window", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_obligations_user_status_due", table_name="obligations")
    op.drop_table("obligations")
