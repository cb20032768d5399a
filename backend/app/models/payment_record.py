"""
models/payment_record.py — PaymentRecord table definition.

Immutable audit row for a payment between two group members. Independent of
the mutable PairwiseBalance it settles: the balance row may later be deleted
(fully settled) while the payment record stays.

  - `amount` uses Numeric(12, 2) — never Float.
  - CHECK(from_user_id <> to_user_id): nobody pays themselves.
  - `client_ref` is the idempotency key of an offline-recorded payment.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.extensions import db
from backend.app.models.expense import _enum_values


class PaymentMethod(str, enum.Enum):
    UPI   = "upi"
    CASH  = "cash"
    BANK  = "bank"
    OTHER = "other"


class PaymentStatus(str, enum.Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"


class PaymentRecord(db.Model):
    __tablename__ = "payment_records"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_records_amount_positive"),
        CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_payment_records_no_self_payment",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(nullable=False, index=True)
    from_user_id: Mapped[int] = mapped_column(nullable=False)
    to_user_id: Mapped[int] = mapped_column(nullable=False)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(
            PaymentMethod,
            name="payment_method_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PaymentMethod.CASH,
    )

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            name="payment_status_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PaymentStatus.COMPLETED,
    )

    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    client_ref: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
    )

    payment_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<PaymentRecord id={self.id} "
            f"group_id={self.group_id} "
            f"from={self.from_user_id} "
            f"to={self.to_user_id} "
            f"amount={self.amount} "
            f"status={self.status.value}>"
        )
