"""
models/pairwise_balance.py — PairwiseBalance table definition.

One row = "from_user owes to_user `amount` inside group_id".
No business logic. No imports from services or routes.

Key design points:
  - `amount` uses Numeric(12, 2) — never Float.
  - UNIQUE(group_id, from_user_id, to_user_id): at most one row per ordered
    pair. The mirror row (to_user_id, from_user_id) is netted away by
    ledger_service.apply_debt(), so a pair never owes in both directions.
  - CHECK(amount > 0): a row that reaches zero (within epsilon) is deleted,
    never stored as a zero or negative residue.
  - `revision` is the mapper's version_id_col. An UPDATE/DELETE issued from a
    stale read raises StaleDataError instead of silently overwriting a
    concurrent writer's amount.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Integer, Numeric, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.extensions import db


class PairwiseBalance(db.Model):
    __tablename__ = "pairwise_balances"

    __table_args__ = (
        UniqueConstraint(
            "group_id",
            "from_user_id",
            "to_user_id",
            name="uq_pairwise_balances_group_pair",
        ),
        CheckConstraint("amount > 0", name="ck_pairwise_balances_amount_positive"),
        CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_pairwise_balances_no_self_debt",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # Groups and users live in the external membership service; plain ints here.
    group_id: Mapped[int] = mapped_column(nullable=False, index=True)
    from_user_id: Mapped[int] = mapped_column(nullable=False)
    to_user_id: Mapped[int] = mapped_column(nullable=False)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": revision}

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<PairwiseBalance group_id={self.group_id} "
            f"from={self.from_user_id} "
            f"to={self.to_user_id} "
            f"amount={self.amount} "
            f"rev={self.revision}>"
        )
