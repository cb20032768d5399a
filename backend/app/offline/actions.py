"""
offline/actions.py — The closed set of queueable ledger mutations.

An OfflineAction is a tagged union: `type` selects exactly one payload schema
from PAYLOAD_SCHEMAS. Payloads are validated with those schemas both when
queued (so an action that could never replay is rejected up front) and again
when replayed.

Payloads are stored in their dumped, JSON-safe form: amounts as strings,
enums as their values.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from marshmallow import Schema, ValidationError, fields, validate, validates_schema

from backend.app.errors import AppError, ErrorCode
from backend.app.schemas.expense_schema import CreateExpenseSchema, UpdateExpenseSchema
from backend.app.schemas.payment_schema import RecordPaymentSchema


class ActionType(str, enum.Enum):
    CREATE_EXPENSE = "CREATE_EXPENSE"
    UPDATE_EXPENSE = "UPDATE_EXPENSE"
    DELETE_EXPENSE = "DELETE_EXPENSE"
    RECORD_PAYMENT = "RECORD_PAYMENT"


@dataclass(frozen=True)
class OfflineAction:
    id: str
    type: ActionType
    payload: dict
    created_at: datetime
    retry_count: int = 0


def new_action_id() -> str:
    return f"offline_{uuid.uuid4().hex}"


# ── Payload schemas ────────────────────────────────────────────────────────

_group_id = fields.Int(
    required=True,
    strict=True,
    validate=validate.Range(min=1, error="group_id must be a positive integer."),
)


class _ExpenseTargetMixin(Schema):
    """
    Addresses an existing expense either by server id or by the id of the
    queued CREATE_EXPENSE action that created it.
    """

    expense_id = fields.Int(
        load_default=None,
        strict=True,
        validate=validate.Range(min=1, error="expense_id must be a positive integer."),
    )
    expense_ref = fields.Str(load_default=None, validate=validate.Length(min=1, max=64))

    @validates_schema
    def validate_single_target(self, data: dict, **kwargs) -> None:
        has_id = data.get("expense_id") is not None
        has_ref = data.get("expense_ref") is not None
        if has_id == has_ref:
            raise ValidationError(
                {"expense_id": ["Exactly one of expense_id or expense_ref is required."]}
            )


class CreateExpensePayloadSchema(CreateExpenseSchema):
    group_id = _group_id


class UpdateExpensePayloadSchema(UpdateExpenseSchema, _ExpenseTargetMixin):
    pass


class DeleteExpensePayloadSchema(_ExpenseTargetMixin):
    pass


class RecordPaymentPayloadSchema(RecordPaymentSchema):
    group_id = _group_id


PAYLOAD_SCHEMAS: dict[ActionType, type[Schema]] = {
    ActionType.CREATE_EXPENSE: CreateExpensePayloadSchema,
    ActionType.UPDATE_EXPENSE: UpdateExpensePayloadSchema,
    ActionType.DELETE_EXPENSE: DeleteExpensePayloadSchema,
    ActionType.RECORD_PAYMENT: RecordPaymentPayloadSchema,
}


def _schema_for(action_type) -> Schema:
    try:
        return PAYLOAD_SCHEMAS[ActionType(action_type)]()
    except ValueError:
        raise AppError(
            ErrorCode.UNKNOWN_ACTION_TYPE,
            f"Unknown offline action type {action_type!r}.",
            400,
            field="type",
        )


def load_payload(action_type, payload: dict) -> dict:
    """Validates a payload and returns it with Decimals and enums restored."""
    return _schema_for(action_type).load(payload)


def serialize_payload(action_type, payload: dict) -> dict:
    """Validates a payload and returns its JSON-safe stored form."""
    schema = _schema_for(action_type)
    return schema.dump(schema.load(payload))
