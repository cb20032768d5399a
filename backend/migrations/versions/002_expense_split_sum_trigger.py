"""Add expense split sum integrity trigger.

Revision: 002_expense_split_sum_trigger
Created:  2026-10-19

Database-level enforcement of sum(expense_splits.amount) == expenses.amount,
backing the SPLIT_SUM_MISMATCH check in expense_service.

A CHECK constraint cannot aggregate sibling rows against a parent column, so
this is a row-level trigger on expense_splits.

The trigger is a CONSTRAINT TRIGGER, DEFERRABLE INITIALLY DEFERRED: it fires
at COMMIT, not after each row. expense_service writes the expense row and
then its splits one by one, and a re-split deletes the old splits before
inserting the new ones and updating the amount. The intermediate states do
not satisfy the sum; only the committed state must.

Append-only: never edit after it has been applied. Add a corrective migration.
"""

from __future__ import annotations

from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "002_expense_split_sum_trigger"
down_revision: str | None = "001_ledger_schema"
branch_labels: tuple | None = None
depends_on: tuple | None = None


_CREATE_FUNCTION = """
CREATE OR REPLACE FUNCTION fn_check_expense_split_sum()
RETURNS TRIGGER
LANGUAGE plpgsql
AS $$
DECLARE
    v_expense_id  INTEGER;
    v_split_sum   NUMERIC(12, 2);
    v_expense_amt NUMERIC(12, 2);
BEGIN
    IF TG_OP = 'DELETE' THEN
        v_expense_id := OLD.expense_id;
    ELSE
        v_expense_id := NEW.expense_id;
    END IF;

    SELECT COALESCE(SUM(amount), 0)
      INTO v_split_sum
      FROM expense_splits
     WHERE expense_id = v_expense_id;

    SELECT amount
      INTO v_expense_amt
      FROM expenses
     WHERE id = v_expense_id;

    -- Parent already gone (cascade delete): nothing to compare against.
    IF v_expense_amt IS NOT NULL AND v_split_sum <> v_expense_amt THEN
        RAISE EXCEPTION
            'split sum (%) does not equal expense amount (%) for expense id=%',
            v_split_sum, v_expense_amt, v_expense_id
            USING ERRCODE = '23514';  -- check_violation
    END IF;

    IF TG_OP = 'DELETE' THEN
        RETURN OLD;
    ELSE
        RETURN NEW;
    END IF;
END;
$$;
"""

_CREATE_TRIGGER = """
CREATE CONSTRAINT TRIGGER trg_expense_splits_sum_check
    AFTER INSERT OR UPDATE OR DELETE
    ON expense_splits
    DEFERRABLE INITIALLY DEFERRED
    FOR EACH ROW
    EXECUTE FUNCTION fn_check_expense_split_sum();
"""

_DROP_TRIGGER = "DROP TRIGGER IF EXISTS trg_expense_splits_sum_check ON expense_splits;"
_DROP_FUNCTION = "DROP FUNCTION IF EXISTS fn_check_expense_split_sum();"


def upgrade() -> None:
    """Function first; the trigger references it."""
    op.execute(_CREATE_FUNCTION)
    op.execute(_CREATE_TRIGGER)


def downgrade() -> None:
    """Trigger first, then the function it references."""
    op.execute(_DROP_TRIGGER)
    op.execute(_DROP_FUNCTION)
