"""
tests/unit/test_ledger_service_units.py — ledger_service against SQLite.

What this file proves:
  - apply_debt creates, grows and nets pairwise rows; a pair never owes in
    both directions
  - settle reduces a debt, deletes it at zero, refuses over-settlement and
    refuses to settle a debt that runs the other way
  - every write invalidates the group's derived views
  - recalculate_group_balances rebuilds rows from expenses and payments
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.extensions import views
from backend.app.models.expense import Expense, SplitType
from backend.app.models.pairwise_balance import PairwiseBalance
from backend.app.models.payment_record import PaymentRecord, PaymentStatus
from backend.app.models.split import ExpenseSplit
from backend.app.services import ledger_service

GROUP = 1


def _pairs(session, group_id: int = GROUP) -> dict[tuple[int, int], Decimal]:
    return {
        (r.from_user_id, r.to_user_id): r.amount
        for r in ledger_service.get_group_balances(group_id, session)
    }


# ── to_money ───────────────────────────────────────────────────────────────

def test_to_money_rounds_half_up():
    assert ledger_service.to_money("2.345") == Decimal("2.35")
    assert ledger_service.to_money(Decimal("2.344")) == Decimal("2.34")
    assert ledger_service.to_money(5) == Decimal("5.00")


# ── apply_debt ─────────────────────────────────────────────────────────────

def test_apply_debt_creates_row(session):
    row = ledger_service.apply_debt(GROUP, 1, 2, Decimal("30.00"), session)

    assert row.from_user_id == 1
    assert row.to_user_id == 2
    assert row.amount == Decimal("30.00")
    assert _pairs(session) == {(1, 2): Decimal("30.00")}


def test_apply_debt_accumulates_on_existing_row(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("30.00"), session)
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("12.50"), session)

    assert _pairs(session) == {(1, 2): Decimal("42.50")}


def test_cross_cancel_nets_to_single_row(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("50.00"), session)
    ledger_service.apply_debt(GROUP, 2, 1, Decimal("20.00"), session)

    assert _pairs(session) == {(1, 2): Decimal("30.00")}


def test_reverse_debt_larger_than_existing_flips_direction(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("20.00"), session)
    row = ledger_service.apply_debt(GROUP, 2, 1, Decimal("50.00"), session)

    assert (row.from_user_id, row.to_user_id, row.amount) == (2, 1, Decimal("30.00"))
    assert _pairs(session) == {(2, 1): Decimal("30.00")}


def test_equal_reverse_debt_settles_pair(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("20.00"), session)
    result = ledger_service.apply_debt(GROUP, 2, 1, Decimal("20.00"), session)

    assert result is None
    assert _pairs(session) == {}


def test_groups_are_isolated(session):
    ledger_service.apply_debt(1, 1, 2, Decimal("10.00"), session)
    ledger_service.apply_debt(2, 2, 1, Decimal("10.00"), session)

    assert _pairs(session, 1) == {(1, 2): Decimal("10.00")}
    assert _pairs(session, 2) == {(2, 1): Decimal("10.00")}


def test_apply_debt_rejects_self_debt(session):
    with pytest.raises(AppError) as exc_info:
        ledger_service.apply_debt(GROUP, 3, 3, Decimal("1.00"), session)
    assert exc_info.value.code == ErrorCode.SELF_DEBT


def test_apply_debt_rejects_non_positive_amount(session):
    with pytest.raises(AppError) as exc_info:
        ledger_service.apply_debt(GROUP, 1, 2, Decimal("0.00"), session)
    assert exc_info.value.code == ErrorCode.INVALID_FIELD


def test_write_bumps_revision(session):
    row = ledger_service.apply_debt(GROUP, 1, 2, Decimal("10.00"), session)
    first = row.revision
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("5.00"), session)

    assert row.revision == first + 1


# ── get_balance ────────────────────────────────────────────────────────────

def test_get_balance_is_signed(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("8.00"), session)

    assert ledger_service.get_balance(GROUP, 1, 2, session) == Decimal("8.00")
    assert ledger_service.get_balance(GROUP, 2, 1, session) == Decimal("-8.00")
    assert ledger_service.get_balance(GROUP, 1, 3, session) == Decimal("0.00")


# ── settle ─────────────────────────────────────────────────────────────────

def test_partial_settlement_reduces_row(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("30.00"), session)
    remaining = ledger_service.settle(GROUP, 1, 2, Decimal("10.00"), session)

    assert remaining == Decimal("20.00")
    assert _pairs(session) == {(1, 2): Decimal("20.00")}


def test_full_settlement_deletes_row(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("30.00"), session)
    remaining = ledger_service.settle(GROUP, 1, 2, Decimal("30.00"), session)

    assert remaining == Decimal("0.00")
    assert _pairs(session) == {}


def test_settlement_leaving_one_cent_removes_dust(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("10.00"), session)
    remaining = ledger_service.settle(GROUP, 1, 2, Decimal("9.99"), session)

    assert remaining == Decimal("0.00")
    assert session.query(PairwiseBalance).count() == 0


def test_over_settlement_is_rejected(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("30.00"), session)

    with pytest.raises(AppError) as exc_info:
        ledger_service.settle(GROUP, 1, 2, Decimal("30.01"), session)

    assert exc_info.value.code == ErrorCode.OVER_SETTLEMENT
    assert exc_info.value.http_status == 422
    assert _pairs(session) == {(1, 2): Decimal("30.00")}


def test_settle_without_debt_is_not_found(session):
    with pytest.raises(AppError) as exc_info:
        ledger_service.settle(GROUP, 1, 2, Decimal("5.00"), session)

    assert exc_info.value.code == ErrorCode.BALANCE_NOT_FOUND
    assert exc_info.value.http_status == 404


def test_settle_in_reverse_direction_names_the_real_debt(session):
    ledger_service.apply_debt(GROUP, 2, 1, Decimal("15.00"), session)

    with pytest.raises(AppError) as exc_info:
        ledger_service.settle(GROUP, 1, 2, Decimal("5.00"), session)

    assert exc_info.value.code == ErrorCode.BALANCE_NOT_FOUND
    assert "owes 15.00 instead" in exc_info.value.message


# ── cache invalidation ─────────────────────────────────────────────────────

def _is_cached(view: str, group_id: int) -> bool:
    compute = MagicMock(return_value=["recomputed"])
    views.get_or_compute(view, group_id, compute)
    return not compute.called


def test_writes_invalidate_group_views(session):
    views.get_or_compute("net_balances", GROUP, lambda: ["stale"])
    views.get_or_compute("net_balances", 99, lambda: ["other group"])

    ledger_service.apply_debt(GROUP, 1, 2, Decimal("1.00"), session)

    assert _is_cached("net_balances", 99)
    assert not _is_cached("net_balances", GROUP)

    ledger_service.settle(GROUP, 1, 2, Decimal("1.00"), session)

    assert not _is_cached("net_balances", GROUP)


def test_commit_invalidates_groups_written_in_the_transaction(session):
    ledger_service.apply_debt(GROUP, 1, 2, Decimal("3.00"), session)
    views.get_or_compute("net_balances", GROUP, lambda: ["computed before commit"])

    session.commit()

    assert not _is_cached("net_balances", GROUP)
    assert ledger_service._TOUCHED_GROUPS not in session.info


# ── recalculate_group_balances ─────────────────────────────────────────────

def _add_expense(session, payer: int, amount: str, splits: dict[int, str], deleted=False):
    expense = Expense(
        group_id=GROUP,
        paid_by_user_id=payer,
        title="Dinner",
        amount=Decimal(amount),
        split_type=SplitType.CUSTOM,
    )
    session.add(expense)
    session.flush()
    for uid, share in splits.items():
        session.add(ExpenseSplit(expense_id=expense.id, user_id=uid, amount=Decimal(share)))
    if deleted:
        from datetime import datetime, timezone
        expense.deleted_at = datetime.now(timezone.utc)
    session.flush()
    return expense


def test_recalculate_rebuilds_from_source_records(session):
    _add_expense(session, payer=1, amount="90.00", splits={1: "30.00", 2: "30.00", 3: "30.00"})
    _add_expense(session, payer=2, amount="20.00", splits={1: "20.00"})
    _add_expense(session, payer=3, amount="50.00", splits={1: "50.00"}, deleted=True)
    session.add(PaymentRecord(
        group_id=GROUP, from_user_id=3, to_user_id=1, amount=Decimal("10.00"),
        status=PaymentStatus.COMPLETED,
    ))
    session.add(PaymentRecord(
        group_id=GROUP, from_user_id=3, to_user_id=1, amount=Decimal("5.00"),
        status=PaymentStatus.PENDING,
    ))
    # Drifted row that the rebuild must discard.
    session.add(PairwiseBalance(group_id=GROUP, from_user_id=2, to_user_id=3, amount=Decimal("99.00")))
    session.flush()

    ledger_service.recalculate_group_balances(GROUP, session)

    assert _pairs(session) == {
        (2, 1): Decimal("10.00"),   # 30 owed to 1, minus 20 owed by 1
        (3, 1): Decimal("20.00"),   # 30 owed, 10 paid
    }
