"""
routes/payments.py — Payment route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (url_prefix=/api/v1/groups):
  POST /groups/:id/payments  → 201  record a payment (settles the ledger if completed)
  GET  /groups/:id/payments  → 200  payment history, newest first
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.models.payment_record import PaymentRecord
from backend.app.schemas.payment_schema import RecordPaymentSchema
from backend.app.services import payment_service

payments_bp = Blueprint("payments", __name__)


def _serialize_payment(p: PaymentRecord) -> dict:
    return {
        "id": p.id,
        "group_id": p.group_id,
        "from_user_id": p.from_user_id,
        "to_user_id": p.to_user_id,
        "amount": str(p.amount),
        "payment_method": p.payment_method.value,
        "status": p.status.value,
        "reference_id": p.reference_id,
        "notes": p.notes,
        "client_ref": p.client_ref,
        "payment_date": p.payment_date.isoformat() if p.payment_date else None,
    }


@payments_bp.route("/<int:group_id>/payments", methods=["POST"])
@require_auth
def record_payment(group_id: int):
    """
    POST /groups/:id/payments

    from_user_id defaults to the authenticated caller. A request carrying an
    Idempotency-Key header is recorded at most once per key.
    """
    data = RecordPaymentSchema().load(request.get_json(force=True) or {})
    payment = payment_service.record_payment(
        group_id=group_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
        client_ref=request.headers.get("Idempotency-Key"),
    )
    db.session.commit()
    return jsonify({"data": _serialize_payment(payment), "warnings": []}), 201


@payments_bp.route("/<int:group_id>/payments", methods=["GET"])
@require_auth
def list_payments(group_id: int):
    payments = payment_service.list_payments(group_id=group_id, session=db.session)
    return jsonify({
        "data": [_serialize_payment(p) for p in payments],
        "warnings": [],
    }), 200
