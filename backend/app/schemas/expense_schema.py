"""
schemas/expense_schema.py — Marshmallow schemas for expense endpoints.

Validation responsibility:
  - This file: field types, decimal precision, positive amounts, request
    shape (which of splits / participant_ids goes with which split_type).
  - services/expense_service.py: split sum == amount (SPLIT_SUM_MISMATCH),
    payer-only edits (FORBIDDEN), deleted expenses (EXPENSE_DELETED).

The same schemas validate offline queue payloads (offline/actions.py), so a
mutation queued while offline is rejected at enqueue time if it could never
replay successfully.

Amount fields use as_string=True: dump() renders "10.50", keeping queued
payloads JSON-safe without losing precision.

IMPORTANT: Inherits from marshmallow.Schema directly.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, validate, validates_schema

from backend.app.errors import ErrorCode
from backend.app.models.expense import SplitType


# ── Field validators ───────────────────────────────────────────────────────

def validate_monetary_amount(value: Decimal) -> None:
    """
    Strictly positive, at most 2 decimal places.

    Input with more than 2 decimal places is REJECTED, never rounded. This
    matches the Numeric(12, 2) columns.
    """
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")

    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_non_empty_after_trim(value: str) -> None:
    if not value.strip():
        raise ValidationError("Title must not be blank.")


def _validate_unique_ids(values: list[int]) -> None:
    if len(values) != len(set(values)):
        raise ValidationError(ErrorCode.DUPLICATE_SPLIT_USER)


def _positive_user_id(required: bool = True) -> fields.Int:
    return fields.Int(
        required=required,
        strict=True,
        validate=validate.Range(min=1, error="User ids must be positive integers."),
    )


# ── Nested ─────────────────────────────────────────────────────────────────

class SplitInputSchema(Schema):
    """One {user_id, amount} entry of a custom split."""

    user_id = _positive_user_id()
    amount = fields.Decimal(
        required=True,
        as_string=True,
        validate=validate_monetary_amount,
    )


def _check_split_shape(
        split_type: SplitType | None,
        splits: list[dict] | None,
        participant_ids: list[int] | None,
) -> None:
    """
    Shared request-shape rules for create and update.

      equal  → participant_ids may be sent, splits must not.
      custom → splits may be sent, participant_ids must not.
      Either way, no user may appear twice.
    """
    if split_type == SplitType.EQUAL and splits is not None:
        raise ValidationError(
            {"splits": ["splits must not be sent when split_type is 'equal'."]}
        )
    if split_type == SplitType.CUSTOM and participant_ids is not None:
        raise ValidationError(
            {"participant_ids": ["participant_ids is only valid when split_type is 'equal'."]}
        )
    if splits is not None:
        user_ids = [s["user_id"] for s in splits]
        if len(user_ids) != len(set(user_ids)):
            raise ValidationError({"splits": [ErrorCode.DUPLICATE_SPLIT_USER]})


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """
    POST /groups/:id/expenses

      paid_by_user_id : required, positive integer
      title           : required, non-empty after trim, max 255 chars
      description     : optional free text
      amount          : required, positive Decimal, max 2 dp
      split_type      : 'equal' | 'custom', default 'custom'
      splits          : required for 'custom' — [{user_id, amount}]
      participant_ids : required for 'equal' — the users sharing the expense
                        (the payer is usually one of them)
    """

    paid_by_user_id = _positive_user_id()

    title = fields.Str(
        required=True,
        validate=[
            validate.Length(min=1, max=255, error="Title must be between 1 and 255 characters."),
            _validate_non_empty_after_trim,
        ],
    )

    description = fields.Str(load_default=None, allow_none=True)

    amount = fields.Decimal(
        required=True,
        as_string=True,
        validate=validate_monetary_amount,
    )

    split_type = fields.Enum(
        SplitType,
        load_default=SplitType.CUSTOM,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_TYPE},
    )

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        load_default=None,
        validate=validate.Length(min=1, error="splits must not be empty."),
    )

    participant_ids = fields.List(
        _positive_user_id(),
        load_default=None,
        validate=[
            validate.Length(min=1, error="participant_ids must not be empty."),
            _validate_unique_ids,
        ],
    )

    @validates_schema
    def validate_split_coherence(self, data: dict, **kwargs) -> None:
        split_type = data.get("split_type", SplitType.CUSTOM)
        splits = data.get("splits")
        participant_ids = data.get("participant_ids")

        _check_split_shape(split_type, splits, participant_ids)

        if split_type == SplitType.CUSTOM and splits is None:
            raise ValidationError(
                {"splits": ["splits is required when split_type is 'custom'."]}
            )
        if split_type == SplitType.EQUAL and participant_ids is None:
            raise ValidationError(
                {"participant_ids": ["participant_ids is required when split_type is 'equal'."]}
            )


# ── Update expense ─────────────────────────────────────────────────────────

class UpdateExpenseSchema(Schema):
    """
    PATCH /expenses/:id

    All fields optional. Title/description edits never touch the ledger.
    Any of amount / split_type / splits / participant_ids triggers a
    re-split: the old splits' debts are reversed and the new ones applied.

    Shape rules (400):
      - splits require amount; split_type='custom' requires splits.
      - amount alone is accepted. The service re-splits an equal expense
        over its current participants; a custom expense keeps its splits,
        which must still sum to the new amount (SPLIT_SUM_MISMATCH, 422).
    """

    title = fields.Str(
        validate=[
            validate.Length(min=1, max=255, error="Title must be between 1 and 255 characters."),
            _validate_non_empty_after_trim,
        ],
    )

    description = fields.Str(allow_none=True)

    amount = fields.Decimal(
        as_string=True,
        validate=validate_monetary_amount,
    )

    split_type = fields.Enum(
        SplitType,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_TYPE},
    )

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        validate=validate.Length(min=1, error="splits must not be empty."),
    )

    participant_ids = fields.List(
        _positive_user_id(),
        validate=[
            validate.Length(min=1, error="participant_ids must not be empty."),
            _validate_unique_ids,
        ],
    )

    @validates_schema
    def validate_patch_coherence(self, data: dict, **kwargs) -> None:
        split_type = data.get("split_type")
        amount = data.get("amount")
        splits = data.get("splits")
        participant_ids = data.get("participant_ids")

        _check_split_shape(split_type, splits, participant_ids)

        if split_type == SplitType.EQUAL or participant_ids is not None:
            return

        if split_type == SplitType.CUSTOM and splits is None:
            raise ValidationError(
                {"splits": ["splits must be provided when split_type is 'custom'."]}
            )

        if splits is not None and amount is None:
            raise ValidationError(
                {"amount": ["amount must be provided when splits are being updated."]}
            )
