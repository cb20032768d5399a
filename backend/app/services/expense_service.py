"""
services/expense_service.py — Expense business logic and its ledger effect.

An expense of `amount` paid by P with splits {U_i: a_i} means every
non-payer U_i owes P a_i more. The payer's own split is their share and
creates no debt. Because sum(a_i) == amount, the ledger deltas of one expense
sum to zero: P is credited exactly what the others are debited.

Rules enforced here:
  SPLIT_SUM_MISMATCH (422)  — sum(splits.amount) must equal amount exactly
  FORBIDDEN (403)           — only the payer may edit or delete an expense
  EXPENSE_DELETED (422)     — deleted expenses cannot be edited
  INVARIANT_VIOLATION (500) — server-computed equal splits do not sum to amount

Ledger effect:
  create → apply_debt(split_user → payer) per non-payer split
  update → reverse the old splits' debts, then apply the new ones
  delete → reverse the splits' debts, then soft-delete

Idempotency:
  An expense created through the offline queue carries the queued action id
  as `client_ref`. Replaying a create whose client_ref already exists returns
  the stored expense and applies nothing. Update replays re-apply the same
  target state; delete replays on an already-deleted expense are no-ops.

Layer rules:
  - No Flask imports. Receives plain ints and dicts; returns ORM objects or
    raises AppError.
  - Commits are the caller's responsibility — only flush here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode, invariant_violation
from backend.app.models.expense import Expense, SplitType
from backend.app.models.split import ExpenseSplit
from backend.app.services import ledger_service


# ── Private helpers ────────────────────────────────────────────────────────

def find_by_client_ref(client_ref: str, session: Session) -> Expense | None:
    return session.execute(
        select(Expense).where(Expense.client_ref == client_ref)
    ).scalar_one_or_none()


def get_expense_or_404(
        session: Session,
        expense_id: int | None = None,
        client_ref: str | None = None,
) -> Expense:
    """
    Returns the Expense (active or deleted) by server id or by client_ref.

    client_ref lets a queued update/delete address an expense that was itself
    created offline, before its server id was known.
    """
    expense = None
    if expense_id is not None:
        expense = session.get(Expense, expense_id)
    elif client_ref is not None:
        expense = find_by_client_ref(client_ref, session)

    if expense is None:
        ref = expense_id if expense_id is not None else client_ref
        raise AppError(
            ErrorCode.EXPENSE_NOT_FOUND,
            f"Expense {ref} does not exist.",
            404,
        )
    return expense


def _require_payer(expense: Expense, caller_id: int, action: str) -> None:
    if caller_id != expense.paid_by_user_id:
        raise AppError(
            ErrorCode.FORBIDDEN,
            f"Only the payer can {action} this expense.",
            403,
        )


def _validate_split_sum(splits: list[dict], expected_amount: Decimal) -> None:
    total = sum((s["amount"] for s in splits), Decimal("0.00"))
    if total != expected_amount:
        raise AppError(
            ErrorCode.SPLIT_SUM_MISMATCH,
            f"Split amounts ({total}) do not equal expense amount ({expected_amount}).",
            422,
            field="splits",
        )


def compute_equal_splits(
        amount: Decimal,
        participant_ids: list[int],
        payer_id: int,
) -> list[dict]:
    """
    Divides amount evenly using ROUND_DOWN; the leftover cents go to the
    payer's split (or the first participant when the payer is not one).

    Guarantees sum(result amounts) == amount.
    """
    n = len(participant_ids)
    base = (amount / Decimal(n)).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    remainder = amount - (base * n)

    splits = [{"user_id": uid, "amount": base} for uid in participant_ids]

    if remainder > Decimal("0"):
        payer_split = next(
            (s for s in splits if s["user_id"] == payer_id),
            splits[0],
        )
        payer_split["amount"] += remainder

    # ROUND_DOWN can leave a zero share when amount < n cents.
    splits = [s for s in splits if s["amount"] > Decimal("0")]

    computed_sum = sum((s["amount"] for s in splits), Decimal("0.00"))
    if computed_sum != amount:
        raise invariant_violation(
            f"Equal split computation produced sum {computed_sum} for amount {amount}."
        )
    return splits


def _resolve_splits(
        split_type: SplitType,
        amount: Decimal,
        payer_id: int,
        splits: list[dict] | None,
        participant_ids: list[int] | None,
) -> list[dict]:
    if split_type == SplitType.EQUAL:
        return compute_equal_splits(amount, participant_ids, payer_id)
    _validate_split_sum(splits, amount)
    return [{"user_id": s["user_id"], "amount": s["amount"]} for s in splits]


def _apply_ledger_effect(
        group_id: int,
        payer_id: int,
        splits: list[dict],
        session: Session,
        reverse: bool = False,
) -> None:
    """
    One ledger write per non-payer split. reverse=True undoes a previous
    application by applying the opposite debt, which apply_debt() nets.
    """
    for split in splits:
        if split["user_id"] == payer_id:
            continue
        if reverse:
            ledger_service.apply_debt(group_id, payer_id, split["user_id"], split["amount"], session)
        else:
            ledger_service.apply_debt(group_id, split["user_id"], payer_id, split["amount"], session)


def _current_splits(expense: Expense) -> list[dict]:
    return [{"user_id": s.user_id, "amount": s.amount} for s in expense.splits]


def _replace_split_rows(expense: Expense, splits: list[dict], session: Session) -> None:
    for split in list(expense.splits):
        session.delete(split)
    session.flush()
    _create_split_rows(expense, splits, session)


def _create_split_rows(expense: Expense, splits: list[dict], session: Session) -> None:
    for s in splits:
        session.add(ExpenseSplit(
            expense_id=expense.id,
            user_id=s["user_id"],
            amount=s["amount"],
        ))
    session.flush()


# ── Public service functions ───────────────────────────────────────────────

def create_expense(
        group_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        client_ref: str | None = None,
) -> Expense:
    """
    Records a new expense and applies its debts to the ledger.

    Args:
        group_id:   Group the expense belongs to.
        caller_id:  Authenticated user creating the expense.
        data:       Validated dict from CreateExpenseSchema.
        client_ref: Idempotency key (queued action id), if any.

    Returns:
        The Expense ORM object, with splits loaded. When client_ref matches an
        existing expense, that expense is returned unchanged.
    """
    if client_ref is not None:
        existing = find_by_client_ref(client_ref, session)
        if existing is not None:
            return existing

    payer_id: int = data["paid_by_user_id"]
    amount: Decimal = data["amount"]
    split_type: SplitType = data.get("split_type", SplitType.CUSTOM)

    splits = _resolve_splits(
        split_type,
        amount,
        payer_id,
        data.get("splits"),
        data.get("participant_ids"),
    )

    expense = Expense(
        group_id=group_id,
        paid_by_user_id=payer_id,
        title=data["title"].strip(),
        description=data.get("description"),
        amount=amount,
        split_type=split_type,
        client_ref=client_ref,
    )
    session.add(expense)
    session.flush()  # populate expense.id before creating splits

    _create_split_rows(expense, splits, session)
    _apply_ledger_effect(group_id, payer_id, splits, session)

    session.refresh(expense)
    return expense


def update_expense(
        caller_id: int,
        data: dict,
        session: Session,
        expense_id: int | None = None,
        client_ref: str | None = None,
) -> Expense:
    """
    Partially updates an expense.

    Title/description edits are plain column updates. A change to amount,
    split_type, splits or participant_ids re-splits the expense: the previous
    splits' debts are reversed before the new ones are applied, so the ledger
    always reflects exactly the expense's current splits.
    """
    expense = get_expense_or_404(session, expense_id=expense_id, client_ref=client_ref)
    _require_payer(expense, caller_id, "edit")

    if expense.is_deleted:
        raise AppError(
            ErrorCode.EXPENSE_DELETED,
            f"Expense {expense.id} has been deleted and cannot be edited.",
            422,
        )

    if "title" in data:
        expense.title = data["title"].strip()
    if "description" in data:
        expense.description = data["description"]

    resplit = any(k in data for k in ("amount", "split_type", "splits", "participant_ids"))
    if resplit:
        old_splits = _current_splits(expense)

        if "split_type" in data:
            split_type = data["split_type"]
        elif "participant_ids" in data:
            split_type = SplitType.EQUAL
        elif "splits" in data:
            split_type = SplitType.CUSTOM
        else:
            split_type = expense.split_type
        amount = data.get("amount", expense.amount)

        participant_ids = data.get("participant_ids")
        if split_type == SplitType.EQUAL and participant_ids is None:
            participant_ids = [s["user_id"] for s in old_splits]

        splits = data.get("splits")
        if split_type == SplitType.CUSTOM and splits is None:
            # Amount-only edit of a custom expense: the current splits must
            # still sum to the new amount, otherwise SPLIT_SUM_MISMATCH.
            splits = old_splits

        new_splits = _resolve_splits(split_type, amount, expense.paid_by_user_id, splits, participant_ids)

        _apply_ledger_effect(expense.group_id, expense.paid_by_user_id, old_splits, session, reverse=True)
        _replace_split_rows(expense, new_splits, session)
        _apply_ledger_effect(expense.group_id, expense.paid_by_user_id, new_splits, session)

        expense.amount = amount
        expense.split_type = split_type

    expense.updated_at = datetime.now(timezone.utc)
    session.flush()
    session.refresh(expense)
    return expense


def delete_expense(
        caller_id: int,
        session: Session,
        expense_id: int | None = None,
        client_ref: str | None = None,
) -> Expense:
    """
    Soft-deletes an expense and reverses its debts.

    Idempotent: deleting an already-deleted expense changes nothing, so a
    replayed delete cannot reverse the debts twice.
    """
    expense = get_expense_or_404(session, expense_id=expense_id, client_ref=client_ref)
    _require_payer(expense, caller_id, "delete")

    if not expense.is_deleted:
        _apply_ledger_effect(
            expense.group_id,
            expense.paid_by_user_id,
            _current_splits(expense),
            session,
            reverse=True,
        )
        expense.deleted_at = datetime.now(timezone.utc)
        session.flush()

    return expense


def list_expenses(group_id: int, session: Session) -> list[Expense]:
    """Active (non-deleted) expenses of a group, newest first."""
    stmt = (
        select(Expense)
        .where(
            Expense.group_id == group_id,
            Expense.deleted_at.is_(None),
        )
        .order_by(Expense.created_at.desc(), Expense.id.desc())
    )
    return list(session.execute(stmt).scalars().all())
