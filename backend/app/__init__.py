"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - Alembic to import the metadata without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Initialise SQLAlchemy via init_app()
  3. Register all route blueprints under /api/v1
  4. Register global error handlers (AppError → JSON, Exception → 500)
  5. Register a custom JSON provider to serialise Decimal as string
  6. Register CLI commands (recalculate-balances, sync-offline)

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic inspects it.
"""

from __future__ import annotations

import traceback
from decimal import Decimal

import click
from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException

from backend.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Monetary amounts are serialised as strings to preserve precision.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    # ── Extensions ─────────────────────────────────────────────────────────
    from backend.app.extensions import db, views
    db.init_app(app)
    views.enabled = app.config["DERIVED_VIEW_CACHE_ENABLED"]

    # ── Model registration ─────────────────────────────────────────────────
    with app.app_context():
        from backend.app.models import (  # noqa: F401
            expense,
            pairwise_balance,
            payment_record,
            split,
        )

    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cors(app)
    _register_commands(app)

    return app


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    The url_prefix is set here so individual route files only specify
    the path relative to their resource.
    """
    from backend.app.routes.balances import balances_bp
    from backend.app.routes.expenses import expenses_bp
    from backend.app.routes.payments import payments_bp

    # expenses_bp owns both /groups/<id>/expenses and /expenses/<id>.
    app.register_blueprint(expenses_bp, url_prefix="/api/v1")
    app.register_blueprint(balances_bp, url_prefix="/api/v1/groups")
    app.register_blueprint(payments_bp, url_prefix="/api/v1/groups")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
      ValidationError → marshmallow schema errors as MISSING_FIELD /
                        INVALID_FIELD (or the registered code) responses (400)
      StaleDataError  → BALANCE_CONFLICT (409): a pairwise row changed under
                        a concurrent writer; the client should re-read and retry
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces never leave the server.
    """
    from backend.app.errors import AppError, ErrorCode
    from backend.app.extensions import db

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        db.session.rollback()
        if error.code == ErrorCode.INVARIANT_VIOLATION:
            app.logger.error("Invariant violation: %s", error.message)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Returns the FIRST field error only, one error per response.

        The error code is the message itself when the message is a
        registered ErrorCode; otherwise MISSING_FIELD / INVALID_FIELD.
        """
        field, raw_message = _first_validation_message(error.messages)

        if raw_message in vars(ErrorCode).values():
            code = raw_message
            message = _code_to_message(code)
        elif str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(StaleDataError)
    def handle_stale_data(error: StaleDataError):
        db.session.rollback()
        app.logger.warning("Concurrent balance update rejected: %s", error)
        return jsonify({
            "error": {
                "code": ErrorCode.BALANCE_CONFLICT,
                "message": "Balances changed while this request was being applied. "
                           "Reload and try again.",
            }
        }), 409

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _first_validation_message(messages) -> tuple[str | None, str]:
    """
    Walks marshmallow's nested messages to the first leaf.

    Nested errors (e.g. {"splits": {0: {"amount": [...]}}}) report the
    top-level field name.
    """
    field = None
    node = messages
    while True:
        if isinstance(node, dict):
            if not node:
                return field, "Invalid input."
            key, node = next(iter(node.items()))
            if field is None and isinstance(key, str) and key != "_schema":
                field = key
        elif isinstance(node, list):
            if not node:
                return field, "Invalid value."
            node = node[0]
        else:
            return field, str(node)


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development (DEBUG or TESTING).
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = (
                "Authorization, Content-Type, Idempotency-Key"
            )

        return response


def _register_commands(app: Flask) -> None:
    """
    flask recalculate-balances GROUP_ID
        Rebuilds a group's pairwise rows from its expenses and payments.

    flask sync-offline --user-id N
        Drains the local offline queue (OFFLINE_QUEUE_URL) into the ledger
        as user N and prints the outcome.
    """
    from backend.app.extensions import db, views

    @app.cli.command("recalculate-balances")
    @click.argument("group_id", type=int)
    def recalculate_balances_command(group_id: int) -> None:
        from backend.app.services import ledger_service

        rows = ledger_service.recalculate_group_balances(group_id, db.session)
        db.session.commit()
        click.echo(f"Group {group_id}: {len(rows)} pairwise balance(s) after recalculation.")

    @app.cli.command("sync-offline")
    @click.option("--user-id", type=int, required=True, help="User to replay the queue as.")
    def sync_offline_command(user_id: int) -> None:
        from backend.app.offline.queue import MutationQueue
        from backend.app.offline.replay import ActionReplayer
        from backend.app.offline.sync import SyncOrchestrator

        queue = MutationQueue(app.config["OFFLINE_QUEUE_URL"])
        try:
            orchestrator = SyncOrchestrator(
                queue=queue,
                replayer=ActionReplayer(lambda: db.session),
                cache=views,
                current_user=lambda: user_id,
                max_retries=app.config["SYNC_MAX_RETRIES"],
            )
            report = orchestrator.sync()
            pending = queue.pending_count()
        finally:
            queue.close()

        click.echo(
            f"Synced: {len(report.succeeded)} succeeded, {len(report.failed)} failed, "
            f"{len(report.dropped)} dropped, {pending} pending."
        )
        for failure in report.errors:
            status = "dropped" if failure.dropped else f"attempt {failure.retry_count}"
            click.echo(f"  {failure.action_id} ({failure.action_type}, {status}): {failure.message}")


def _code_to_message(code: str) -> str:
    """
    Returns a human-readable default message for a known error code.
    Used when a ValidationError message IS the error code constant itself.
    """
    _messages = {
        "INVALID_AMOUNT_PRECISION": "Amount must have at most 2 decimal places.",
        "INVALID_SPLIT_TYPE": "split_type must be 'equal' or 'custom'.",
        "DUPLICATE_SPLIT_USER": "The same user_id appears more than once in the splits.",
    }
    return _messages.get(code, "Invalid input.")
