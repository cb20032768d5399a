"""
routes/balances.py — Balance and settlement-plan route handlers.

Layer rules:
  - Parse, call ONE service, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (url_prefix=/api/v1/groups):
  GET  /groups/:id/balances              → 200  pairwise + net balances
  GET  /groups/:id/settlement-plan       → 200  suggested transfers + savings
  POST /groups/:id/balances/recalculate  → 200  rebuild rows from expenses/payments
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.services import balance_service, ledger_service

balances_bp = Blueprint("balances", __name__)


@balances_bp.route("/<int:group_id>/balances", methods=["GET"])
@require_auth
def get_balances(group_id: int):
    """
    GET /groups/:id/balances

    The service asserts the net balances sum to zero and raises
    INVARIANT_VIOLATION (500) if they do not.
    """
    result = balance_service.get_balance_response(group_id=group_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@balances_bp.route("/<int:group_id>/settlement-plan", methods=["GET"])
@require_auth
def get_settlement_plan(group_id: int):
    """GET /groups/:id/settlement-plan — who should pay whom to settle up."""
    plan = balance_service.get_settlement_plan(group_id=group_id, session=db.session)
    return jsonify({"data": balance_service.serialize_plan(plan), "warnings": []}), 200


@balances_bp.route("/<int:group_id>/balances/recalculate", methods=["POST"])
@require_auth
def recalculate_balances(group_id: int):
    """
    POST /groups/:id/balances/recalculate

    Repair tool: replaces the group's pairwise rows with the ones implied by
    its active expenses and completed payments.
    """
    ledger_service.recalculate_group_balances(group_id, db.session)
    db.session.commit()
    current_app.logger.info("Recalculated balances for group %s", group_id)

    result = balance_service.get_balance_response(group_id=group_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200
