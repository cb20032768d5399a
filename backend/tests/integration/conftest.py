"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session with create_app("testing").
    TestingConfig points at TEST_DATABASE_URL, or in-memory SQLite when unset.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted child-first and the derived-view
    cache is emptied, so group ids can be reused across tests.
  - Tokens are minted here with PyJWT using the app's JWT_SECRET_KEY; the
    ledger only verifies tokens, it never issues them.

Helper functions (not fixtures):
  - token_for(app, user_id)   → signed access token
  - auth_headers(token)       → {"Authorization": "Bearer <token>"}
  - make_expense(...)         → HTTP response
  - record_payment(...)       → HTTP response
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import text

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.extensions import views


@pytest.fixture(scope="session")
def app():
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def clean_tables(app):
    """Deletes all rows after every test, children before parents."""
    yield

    with app.app_context():
        _db.session.rollback()
        _db.session.execute(text("DELETE FROM expense_splits"))
        _db.session.execute(text("DELETE FROM expenses"))
        _db.session.execute(text("DELETE FROM pairwise_balances"))
        _db.session.execute(text("DELETE FROM payment_records"))
        _db.session.commit()
    views.invalidate_all()


@pytest.fixture
def client(app):
    return app.test_client()


# ── Shared helper functions (not fixtures) ─────────────────────────────────

def token_for(app, user_id: int, expires_in: timedelta = timedelta(minutes=15)) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": str(user_id), "iat": now, "exp": now + expires_in},
        app.config["JWT_SECRET_KEY"],
        algorithm=app.config["JWT_ALGORITHM"],
    )


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def as_user(app, user_id: int) -> dict:
    return auth_headers(token_for(app, user_id))


def make_expense(
    client,
    headers: dict,
    group_id: int,
    paid_by_user_id: int,
    amount: str,
    splits: list[dict] | None = None,
    participant_ids: list[int] | None = None,
    title: str = "Test Expense",
):
    """
    Creates an expense and returns the HTTP response.
    Pass participant_ids for an equal split, splits for a custom one.
    """
    payload: dict = {
        "paid_by_user_id": paid_by_user_id,
        "title": title,
        "amount": amount,
    }
    if participant_ids is not None:
        payload["split_type"] = "equal"
        payload["participant_ids"] = participant_ids
    else:
        payload["split_type"] = "custom"
        payload["splits"] = splits or []

    return client.post(f"/api/v1/groups/{group_id}/expenses", json=payload, headers=headers)


def record_payment(client, headers: dict, group_id: int, to_user_id: int, amount: str, **extra):
    payload = {"to_user_id": to_user_id, "amount": amount}
    payload.update(extra)
    return client.post(f"/api/v1/groups/{group_id}/payments", json=payload, headers=headers)
