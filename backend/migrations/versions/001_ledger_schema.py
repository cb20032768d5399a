"""Ledger schema — expenses, splits, pairwise balances, payment records.

Revision: 001_ledger_schema
Created:  2026-10-19

Append-only: this file must never be edited after it has been applied to any
database. Schema changes go in a new migration.

Creation order:
  1. PostgreSQL enum types (must exist before the tables that use them)
  2. expenses → expense_splits (FK), pairwise_balances, payment_records
  3. Indexes

Groups and users are owned by the membership service; group_id and the
*_user_id columns are plain integers with no foreign keys.

ON DELETE policies:
  expense_splits.expense_id → CASCADE (splits owned by expense)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_ledger_schema"
down_revision: str | None = None
branch_labels: tuple | None = None
depends_on: tuple | None = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


def upgrade() -> None:
    """
    Enum types are created with op.execute() so the exact SQL is explicit;
    the columns reference them with create_type=False.
    """

    # ── Step 1: enum types ─────────────────────────────────────────────────
    op.execute("CREATE TYPE split_type_enum AS ENUM ('equal', 'custom')")
    op.execute("CREATE TYPE payment_method_enum AS ENUM ('upi', 'cash', 'bank', 'other')")
    op.execute("CREATE TYPE payment_status_enum AS ENUM ('pending', 'completed', 'failed')")

    # ── Step 2: expenses ───────────────────────────────────────────────────
    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("paid_by_user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "split_type",
            _enum("split_type_enum", "equal", "custom"),
            nullable=False,
        ),
        sa.Column("client_ref", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_ref", name="uq_expenses_client_ref"),
        sa.CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint("LENGTH(TRIM(title)) > 0", name="ck_expenses_title_not_blank"),
    )

    # ── Step 3: expense_splits ─────────────────────────────────────────────
    op.create_table(
        "expense_splits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("expense_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["expense_id"],
            ["expenses.id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("expense_id", "user_id", name="uq_expense_splits_expense_user"),
        sa.CheckConstraint("amount > 0", name="ck_expense_splits_amount_positive"),
    )

    # ── Step 4: pairwise_balances ──────────────────────────────────────────
    # At most one row per ordered pair; a row never holds zero or less.
    op.create_table(
        "pairwise_balances",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("from_user_id", sa.Integer(), nullable=False),
        sa.Column("to_user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "group_id",
            "from_user_id",
            "to_user_id",
            name="uq_pairwise_balances_group_pair",
        ),
        sa.CheckConstraint("amount > 0", name="ck_pairwise_balances_amount_positive"),
        sa.CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_pairwise_balances_no_self_debt",
        ),
    )

    # ── Step 5: payment_records ────────────────────────────────────────────
    op.create_table(
        "payment_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("from_user_id", sa.Integer(), nullable=False),
        sa.Column("to_user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "payment_method",
            _enum("payment_method_enum", "upi", "cash", "bank", "other"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("payment_status_enum", "pending", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("reference_id", sa.String(128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("client_ref", sa.String(64), nullable=True),
        sa.Column(
            "payment_date",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_ref", name="uq_payment_records_client_ref"),
        sa.CheckConstraint("amount > 0", name="ck_payment_records_amount_positive"),
        sa.CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_payment_records_no_self_payment",
        ),
    )

    # ── Step 6: indexes ────────────────────────────────────────────────────
    op.create_index("ix_expenses_group_id", "expenses", ["group_id"])
    op.create_index("ix_expense_splits_expense_id", "expense_splits", ["expense_id"])
    op.create_index("ix_pairwise_balances_group_id", "pairwise_balances", ["group_id"])
    op.create_index("ix_payment_records_group_id", "payment_records", ["group_id"])

    # Active-expense scans (balance recalculation, expense lists).
    op.create_index(
        "idx_expenses_active",
        "expenses",
        ["group_id", "created_at"],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )


def downgrade() -> None:
    """Drops everything in reverse dependency order."""
    op.drop_index("idx_expenses_active", table_name="expenses")
    op.drop_index("ix_payment_records_group_id", table_name="payment_records")
    op.drop_index("ix_pairwise_balances_group_id", table_name="pairwise_balances")
    op.drop_index("ix_expense_splits_expense_id", table_name="expense_splits")
    op.drop_index("ix_expenses_group_id", table_name="expenses")

    op.drop_table("payment_records")
    op.drop_table("pairwise_balances")
    op.drop_table("expense_splits")
    op.drop_table("expenses")

    op.execute("DROP TYPE IF EXISTS payment_status_enum")
    op.execute("DROP TYPE IF EXISTS payment_method_enum")
    op.execute("DROP TYPE IF EXISTS split_type_enum")
