"""
services/ledger_service.py — The pairwise Balance Ledger.

This file is the ONLY place that writes pairwise_balances rows. Expense and
payment services express their effect on the ledger exclusively through
apply_debt() and settle().

Row invariants:
  - At most one row per ordered (group_id, from_user_id, to_user_id).
  - A pair never owes in both directions: apply_debt() nets a new debt
    against the mirror row before touching the forward row.
  - A row whose amount falls to EPSILON or below is deleted, not stored as dust.
  - settle() never flips a debt into the opposite direction. Paying more than
    is owed is OVER_SETTLEMENT, because it means the caller acted on stale
    balances.

Every successful write invalidates the group's cached derived views
(net balances, settlement plan) at flush, and again once the transaction
commits or rolls back, so a view computed from the pre-commit rows by
another session is discarded. Nothing here is incremental bookkeeping;
derived values are recomputed from these rows.

Concurrency: writers on different clients race at the row level. The
`revision` version counter on PairwiseBalance turns a lost update into a
StaleDataError (BALANCE_CONFLICT, 409) rather than a silent overwrite. There
is no distributed locking beyond that.

Layer rules:
  - No Flask imports. Receives a SQLAlchemy session as an argument.
  - Commits are the caller's responsibility — only flush here.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import delete, event, select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.extensions import views
from backend.app.models.expense import Expense
from backend.app.models.pairwise_balance import PairwiseBalance
from backend.app.models.payment_record import PaymentRecord, PaymentStatus

EPSILON = Decimal("0.01")
_CENT = Decimal("0.01")

# session.info key: groups whose rows this transaction has written.
_TOUCHED_GROUPS = "ledger_touched_groups"


def to_money(value) -> Decimal:
    """Rounds to cent precision, half-up. Accepts Decimal, int or str."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


# ── Private helpers ────────────────────────────────────────────────────────

def _get_row(
        group_id: int,
        from_user_id: int,
        to_user_id: int,
        session: Session,
) -> PairwiseBalance | None:
    return session.execute(
        select(PairwiseBalance).where(
            PairwiseBalance.group_id == group_id,
            PairwiseBalance.from_user_id == from_user_id,
            PairwiseBalance.to_user_id == to_user_id,
        )
    ).scalar_one_or_none()


def _validate_transfer(from_user_id: int, to_user_id: int, amount) -> Decimal:
    if from_user_id == to_user_id:
        raise AppError(
            ErrorCode.SELF_DEBT,
            "A user cannot owe money to themselves.",
            422,
        )
    amount = to_money(amount)
    if amount <= Decimal("0"):
        raise AppError(
            ErrorCode.INVALID_FIELD,
            f"Ledger amounts must be positive, got {amount}.",
            422,
            field="amount",
        )
    return amount


# ── Read contract ──────────────────────────────────────────────────────────

def get_group_balances(group_id: int, session: Session) -> list[PairwiseBalance]:
    """Returns every pairwise balance row of a group, oldest row first."""
    stmt = (
        select(PairwiseBalance)
        .where(PairwiseBalance.group_id == group_id)
        .order_by(PairwiseBalance.id)
    )
    return list(session.execute(stmt).scalars().all())


def get_balance(
        group_id: int,
        from_user_id: int,
        to_user_id: int,
        session: Session,
) -> Decimal:
    """
    Signed debt from_user → to_user: positive when from_user owes,
    negative when the debt runs the other way, zero when settled.
    """
    forward = _get_row(group_id, from_user_id, to_user_id, session)
    if forward is not None:
        return forward.amount
    reverse = _get_row(group_id, to_user_id, from_user_id, session)
    if reverse is not None:
        return -reverse.amount
    return Decimal("0.00")


def _touch(group_id: int, session: Session) -> None:
    session.info.setdefault(_TOUCHED_GROUPS, set()).add(group_id)
    views.invalidate_group(group_id)


@event.listens_for(Session, "after_commit")
@event.listens_for(Session, "after_rollback")
def _invalidate_touched_groups(session: Session) -> None:
    """
    Drops the views of every group the finished transaction wrote.

    After commit, another session may have cached a view computed from the
    pre-commit rows; after rollback, the writing session itself may have
    cached one computed from rows that no longer exist.
    """
    for group_id in session.info.pop(_TOUCHED_GROUPS, ()):
        views.invalidate_group(group_id)


# ── Write contract ─────────────────────────────────────────────────────────

def apply_debt(
        group_id: int,
        from_user_id: int,
        to_user_id: int,
        amount,
        session: Session,
) -> PairwiseBalance | None:
    """
    Records that from_user now owes to_user `amount` more.

    Mirror check: if to_user already owes from_user, the new debt is netted
    against that row first.
      - reverse > amount   → reverse row shrinks, no forward row is created
      - reverse ≈ amount   → reverse row deleted, pair is settled
      - reverse < amount   → reverse row deleted, forward row gets the rest

    Returns the row now holding the pair's debt, or None when the pair nets
    to zero.
    """
    amount = _validate_transfer(from_user_id, to_user_id, amount)

    reverse = _get_row(group_id, to_user_id, from_user_id, session)
    if reverse is not None:
        remaining = to_money(reverse.amount - amount)

        if remaining > EPSILON:
            reverse.amount = remaining
            session.flush()
            _touch(group_id, session)
            return reverse

        session.delete(reverse)
        session.flush()

        if remaining >= -EPSILON:
            _touch(group_id, session)
            return None

        amount = -remaining

    forward = _get_row(group_id, from_user_id, to_user_id, session)
    if forward is None:
        forward = PairwiseBalance(
            group_id=group_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
        )
        session.add(forward)
    else:
        forward.amount = to_money(forward.amount + amount)

    session.flush()
    _touch(group_id, session)
    return forward


def settle(
        group_id: int,
        from_user_id: int,
        to_user_id: int,
        amount,
        session: Session,
) -> Decimal:
    """
    Reduces the debt from_user owes to_user by `amount`.

    Raises:
        AppError(BALANCE_NOT_FOUND, 404) — no outstanding from_user → to_user
            debt (already settled elsewhere, or it runs the other way).
        AppError(OVER_SETTLEMENT, 422)   — amount exceeds the outstanding debt.

    Returns:
        The remaining debt; Decimal("0.00") when the row was deleted.
    """
    amount = _validate_transfer(from_user_id, to_user_id, amount)

    row = _get_row(group_id, from_user_id, to_user_id, session)
    if row is None:
        reverse = _get_row(group_id, to_user_id, from_user_id, session)
        if reverse is not None:
            message = (
                f"User {from_user_id} does not owe user {to_user_id} in group "
                f"{group_id}; user {to_user_id} owes {reverse.amount} instead."
            )
        else:
            message = "Balance not found. It may have already been settled."
        raise AppError(ErrorCode.BALANCE_NOT_FOUND, message, 404)

    remaining = to_money(row.amount - amount)
    if remaining < Decimal("0"):
        raise AppError(
            ErrorCode.OVER_SETTLEMENT,
            f"Settlement of {amount} exceeds the outstanding debt of {row.amount} "
            f"from user {from_user_id} to user {to_user_id}.",
            422,
            field="amount",
        )

    if remaining <= EPSILON:
        session.delete(row)
        remaining = Decimal("0.00")
    else:
        row.amount = remaining

    session.flush()
    _touch(group_id, session)
    return remaining


def recalculate_group_balances(group_id: int, session: Session) -> list[PairwiseBalance]:
    """
    Rebuilds a group's pairwise rows from its source records.

    Drops every row of the group, then re-applies one debt per non-payer split
    of every active expense and one reverse debt per completed payment. The
    mirror netting in apply_debt() makes the result independent of the order
    in which those records are replayed.
    """
    session.execute(
        delete(PairwiseBalance)
        .where(PairwiseBalance.group_id == group_id)
        .execution_options(synchronize_session="fetch")
    )
    session.flush()
    _touch(group_id, session)

    expenses = session.execute(
        select(Expense)
        .where(Expense.group_id == group_id, Expense.deleted_at.is_(None))
        .order_by(Expense.id)
    ).scalars().all()

    for expense in expenses:
        for split in expense.splits:
            if split.user_id != expense.paid_by_user_id:
                apply_debt(group_id, split.user_id, expense.paid_by_user_id, split.amount, session)

    payments = session.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.group_id == group_id,
            PaymentRecord.status == PaymentStatus.COMPLETED,
        )
        .order_by(PaymentRecord.id)
    ).scalars().all()

    # A payment from A to B reduces what A owes B, which is the same as B
    # taking on a debt to A.
    for payment in payments:
        apply_debt(group_id, payment.to_user_id, payment.from_user_id, payment.amount, session)

    return get_group_balances(group_id, session)
