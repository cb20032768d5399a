"""
services/balance_service.py — Net balance aggregation and debt simplification.

Two pure reductions over the pairwise ledger, plus the read models built on
top of them:

  aggregate(pairwise)  -> list[NetBalance]          (who is up, who is down)
  simplify(nets)       -> list[SuggestedTransfer]   (who should pay whom)
  savings(n, m)        -> Savings                   (how many payments saved)

aggregate() and simplify() never perform I/O. They are deterministic, safe to
call from several threads, and raise only ValueError on malformed input (a
caller contract violation). Everything is Decimal; every arithmetic step is
rounded to cents so repeated subtraction cannot accumulate drift.

Conservation (checked by get_balance_response and the tests):
  sum(net.amount for net in aggregate(rows)) == 0
  sum(t.amount for t in simplify(nets)) == sum of positive net amounts
  len(simplify(nets)) <= creditors + debtors - 1

One cent is a real balance, not dust: simplify() treats |net| >= 0.01 as a
creditor or debtor and only advances past a side once its remainder is below
0.01. A 0.01 net therefore produces a 0.01 transfer, which keeps the
conservation rule above exact for every cent-precision input.

Layer rules:
  - No Flask imports. Receives group_id and a SQLAlchemy session.
  - SuggestedTransfer is a plan, never persisted. Executing one means
    recording a payment (payment_service), which settles the real rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from backend.app.errors import invariant_violation
from backend.app.extensions import views
from backend.app.services import ledger_service
from backend.app.services.derived_cache import DerivedViewCache
from backend.app.services.ledger_service import EPSILON, to_money

NET_BALANCES_VIEW = "net_balances"
SETTLEMENT_PLAN_VIEW = "settlement_plan"


@dataclass(frozen=True)
class NetBalance:
    user_id: int
    amount: Decimal  # positive = net creditor, negative = net debtor


@dataclass(frozen=True)
class SuggestedTransfer:
    from_user_id: int
    to_user_id: int
    amount: Decimal


@dataclass(frozen=True)
class Savings:
    saved: int
    percentage: int


@dataclass(frozen=True)
class SettlementPlan:
    group_id: int
    transfers: list[SuggestedTransfer]
    original_count: int
    savings: Savings

    @property
    def optimized_count(self) -> int:
        return len(self.transfers)


def _checked_amount(value) -> Decimal:
    if isinstance(value, float):
        value = Decimal(str(value))
    elif not isinstance(value, Decimal):
        value = Decimal(value)
    if not value.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value!r}.")
    return value


# ── Pure reductions ────────────────────────────────────────────────────────

def aggregate(pairwise_balances: Iterable) -> list[NetBalance]:
    """
    Folds pairwise debts into one signed net figure per user.

    Each row means "from_user_id owes to_user_id amount": the debtor goes
    down by amount, the creditor goes up. Rows may be PairwiseBalance objects
    or anything with the same three attributes.

    Users whose net is below one cent in magnitude are considered settled and
    omitted. Output order is first appearance in the input.

    Raises:
        ValueError — a row has a non-positive or non-finite amount.
    """
    net: dict[int, Decimal] = {}

    for row in pairwise_balances:
        amount = _checked_amount(row.amount)
        if amount <= 0:
            raise ValueError(
                f"Pairwise balance {row.from_user_id}->{row.to_user_id} has "
                f"non-positive amount {amount}."
            )
        net[row.from_user_id] = to_money(net.get(row.from_user_id, Decimal("0")) - amount)
        net[row.to_user_id] = to_money(net.get(row.to_user_id, Decimal("0")) + amount)

    return [
        NetBalance(user_id=uid, amount=amount)
        for uid, amount in net.items()
        if abs(amount) >= EPSILON
    ]


def simplify(net_balances: Iterable[NetBalance]) -> list[SuggestedTransfer]:
    """
    Greedy largest-first debt simplification.

    Repeatedly pairs the largest remaining creditor with the largest remaining
    debtor and moves min(credit, debt) between them, until either side runs
    out. Not guaranteed globally minimal, but bounded: at most
    creditors + debtors - 1 transfers.

    Ties keep input order (stable sort), so the same input always yields the
    same plan.

    Raises:
        ValueError — a net balance amount is not a finite number.
    """
    creditors: list[list] = []
    debtors: list[list] = []

    for balance in net_balances:
        amount = to_money(_checked_amount(balance.amount))
        if amount >= EPSILON:
            creditors.append([balance.user_id, amount])
        elif amount <= -EPSILON:
            debtors.append([balance.user_id, -amount])

    creditors.sort(key=lambda c: c[1], reverse=True)
    debtors.sort(key=lambda d: d[1], reverse=True)

    transfers: list[SuggestedTransfer] = []
    i = j = 0

    while i < len(creditors) and j < len(debtors):
        creditor = creditors[i]
        debtor = debtors[j]

        transfer = to_money(min(creditor[1], debtor[1]))
        if transfer >= EPSILON:
            transfers.append(SuggestedTransfer(
                from_user_id=debtor[0],
                to_user_id=creditor[0],
                amount=transfer,
            ))

        creditor[1] = to_money(creditor[1] - transfer)
        debtor[1] = to_money(debtor[1] - transfer)

        if creditor[1] < EPSILON:
            i += 1
        if debtor[1] < EPSILON:
            j += 1

    return transfers


def savings(original_count: int, optimized_count: int) -> Savings:
    """How many payments the simplified plan saves over paying every row."""
    saved = max(0, original_count - optimized_count)
    if original_count <= 0:
        return Savings(saved=saved, percentage=0)
    percentage = (Decimal(saved) * 100 / Decimal(original_count)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP,
    )
    return Savings(saved=saved, percentage=int(percentage))


# ── Read models ────────────────────────────────────────────────────────────

def get_net_balances(
        group_id: int,
        session: Session,
        cache: DerivedViewCache = views,
) -> list[NetBalance]:
    """Net balances of a group, served from the derived-view cache when fresh."""
    return cache.get_or_compute(
        NET_BALANCES_VIEW,
        group_id,
        lambda: aggregate(ledger_service.get_group_balances(group_id, session)),
    )


def get_settlement_plan(
        group_id: int,
        session: Session,
        cache: DerivedViewCache = views,
) -> SettlementPlan:
    """
    Suggested transfers for a group, with the savings compared to settling
    every pairwise row individually.
    """
    def compute() -> SettlementPlan:
        rows = ledger_service.get_group_balances(group_id, session)
        transfers = simplify(aggregate(rows))
        return SettlementPlan(
            group_id=group_id,
            transfers=transfers,
            original_count=len(rows),
            savings=savings(len(rows), len(transfers)),
        )

    return cache.get_or_compute(SETTLEMENT_PLAN_VIEW, group_id, compute)


def get_balance_response(
        group_id: int,
        session: Session,
        cache: DerivedViewCache = views,
) -> dict:
    """
    Builds the payload for GET /groups/:id/balances.

    Raises:
        AppError(INVARIANT_VIOLATION, 500) — net balances do not sum to zero,
            meaning the ledger rows themselves are corrupt.
    """
    rows = ledger_service.get_group_balances(group_id, session)
    nets = get_net_balances(group_id, session, cache)

    balance_sum = sum((n.amount for n in nets), Decimal("0.00"))
    if balance_sum != Decimal("0.00"):
        raise invariant_violation(
            f"Balance integrity check failed: net balances of group {group_id} "
            f"sum to {balance_sum} (expected 0.00)."
        )

    return {
        "group_id": group_id,
        "balances": [
            {
                "from_user_id": r.from_user_id,
                "to_user_id": r.to_user_id,
                "amount": str(r.amount),
            }
            for r in rows
        ],
        "net_balances": [
            {"user_id": n.user_id, "amount": str(n.amount)}
            for n in nets
        ],
        "balance_sum": str(balance_sum),
    }


def serialize_plan(plan: SettlementPlan) -> dict:
    """Plain-dict shape of a SettlementPlan for JSON output."""
    return {
        "group_id": plan.group_id,
        "transfers": [
            {
                "from_user_id": t.from_user_id,
                "to_user_id": t.to_user_id,
                "amount": str(t.amount),
            }
            for t in plan.transfers
        ],
        "original_count": plan.original_count,
        "optimized_count": plan.optimized_count,
        "savings": {
            "saved": plan.savings.saved,
            "percentage": plan.savings.percentage,
        },
    }
