"""
services/payment_service.py — Payment recording and its ledger effect.

A payment is stored twice, deliberately differently:
  - as an immutable PaymentRecord audit row (never updated or deleted), and
  - as a settle() against the mutable pairwise balance it pays down.

Only a `completed` payment settles the ledger. Pending and failed payments
are recorded for the audit trail and leave balances untouched.

Rules enforced here:
  SELF_DEBT (422)          — from_user_id == to_user_id
  FORBIDDEN (403)          — the caller must be the payer or the recipient
  BALANCE_NOT_FOUND (404)  — raised by ledger_service.settle()
  OVER_SETTLEMENT (422)    — raised by ledger_service.settle()
  Both ledger errors abort the whole operation: no audit row is written for a
  payment the ledger refused.

Idempotency:
  A payment recorded through the offline queue carries the queued action id
  as `client_ref`. Replaying it returns the stored record and settles nothing.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the caller's responsibility — only flush here.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.payment_record import PaymentMethod, PaymentRecord, PaymentStatus
from backend.app.services import ledger_service


def _find_by_client_ref(client_ref: str, session: Session) -> PaymentRecord | None:
    return session.execute(
        select(PaymentRecord).where(PaymentRecord.client_ref == client_ref)
    ).scalar_one_or_none()


def record_payment(
        group_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        client_ref: str | None = None,
) -> PaymentRecord:
    """
    Records a payment from data["from_user_id"] (default: the caller) to
    data["to_user_id"].

    Args:
        group_id:   Group whose ledger the payment settles.
        caller_id:  Authenticated user recording the payment.
        data:       Validated dict from RecordPaymentSchema.
        client_ref: Idempotency key (queued action id), if any.

    Returns:
        The PaymentRecord. When client_ref matches an existing record, that
        record is returned unchanged.
    """
    if client_ref is not None:
        existing = _find_by_client_ref(client_ref, session)
        if existing is not None:
            return existing

    from_user_id: int = data.get("from_user_id") or caller_id
    to_user_id: int = data["to_user_id"]
    amount: Decimal = data["amount"]
    status: PaymentStatus = data.get("status", PaymentStatus.COMPLETED)

    if from_user_id == to_user_id:
        raise AppError(
            ErrorCode.SELF_DEBT,
            "A payment cannot be made to yourself.",
            422,
            field="to_user_id",
        )

    if caller_id not in (from_user_id, to_user_id):
        raise AppError(
            ErrorCode.FORBIDDEN,
            "Only the payer or the recipient can record a payment.",
            403,
        )

    if status == PaymentStatus.COMPLETED:
        ledger_service.settle(group_id, from_user_id, to_user_id, amount, session)

    record = PaymentRecord(
        group_id=group_id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        amount=amount,
        payment_method=data.get("payment_method", PaymentMethod.CASH),
        status=status,
        reference_id=data.get("reference_id"),
        notes=data.get("notes"),
        client_ref=client_ref,
    )
    session.add(record)
    session.flush()
    return record


def list_payments(group_id: int, session: Session) -> list[PaymentRecord]:
    """Returns the payment history of a group, newest first."""
    stmt = (
        select(PaymentRecord)
        .where(PaymentRecord.group_id == group_id)
        .order_by(PaymentRecord.payment_date.desc(), PaymentRecord.id.desc())
    )
    return list(session.execute(stmt).scalars().all())
