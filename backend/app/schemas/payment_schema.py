"""
schemas/payment_schema.py — Marshmallow schema for recording payments.

Validation responsibility:
  - This file: field types, decimal precision, positive amount, enum values.
  - services/payment_service.py:
      - SELF_DEBT (422)          — payer and recipient are the same user.
      - FORBIDDEN (403)          — caller is neither payer nor recipient.
      - BALANCE_NOT_FOUND (404)  — no outstanding debt from payer to recipient.
      - OVER_SETTLEMENT (422)    — amount exceeds the outstanding debt.

IMPORTANT: Inherits from marshmallow.Schema directly.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from backend.app.models.payment_record import PaymentMethod, PaymentStatus
from backend.app.schemas.expense_schema import validate_monetary_amount


class RecordPaymentSchema(Schema):
    """
    POST /groups/:id/payments

      from_user_id   : optional, defaults to the authenticated caller
      to_user_id     : required, positive integer
      amount         : required, positive Decimal, max 2 dp
      payment_method : upi | cash | bank | other (default cash)
      status         : pending | completed | failed (default completed).
                       Only a completed payment settles the ledger.
      reference_id   : optional gateway / UPI transaction reference
      notes          : optional free text
    """

    from_user_id = fields.Int(
        load_default=None,
        strict=True,
        validate=validate.Range(min=1, error="from_user_id must be a positive integer."),
    )

    to_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="to_user_id must be a positive integer."),
    )

    amount = fields.Decimal(
        required=True,
        as_string=True,
        validate=validate_monetary_amount,
    )

    payment_method = fields.Enum(
        PaymentMethod,
        load_default=PaymentMethod.CASH,
        by_value=True,
    )

    status = fields.Enum(
        PaymentStatus,
        load_default=PaymentStatus.COMPLETED,
        by_value=True,
    )

    reference_id = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=128),
    )

    notes = fields.Str(load_default=None, allow_none=True)
