"""
tests/unit/conftest.py — Fixtures shared by the unit tests.

Unit tests never start Flask. Service tests that need real row behaviour
(mirror netting, deletes, unique keys) run against an in-memory SQLite
database built from the models' metadata; everything else uses MagicMock
sessions or no session at all.
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.extensions import db, views
from backend.app.models import expense, pairwise_balance, payment_record, split  # noqa: F401


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Session:
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture(autouse=True)
def fresh_views():
    """The derived-view cache is process-wide; start every test empty."""
    views.invalidate_all()
    yield
    views.invalidate_all()
