"""
offline/replay.py — Applies one OfflineAction to the ledger database.

Each action runs in its own transaction: the handler's writes are committed
together or rolled back together, so a replay that fails halfway leaves no
partial ledger effect behind for the retry to double-apply.

The queued action id is passed to the services as `client_ref`. A create or
payment that already reached the ledger is found by that key and not applied
again, which closes the window between a successful write and the queue
removal that follows it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from backend.app.offline.actions import ActionType, OfflineAction, load_payload
from backend.app.services import expense_service, payment_service

logger = logging.getLogger(__name__)


def _create_expense(action: OfflineAction, data: dict, user_id: int, session: Session):
    group_id = data.pop("group_id")
    return expense_service.create_expense(
        group_id, user_id, data, session, client_ref=action.id,
    )


def _update_expense(action: OfflineAction, data: dict, user_id: int, session: Session):
    expense_id = data.pop("expense_id", None)
    expense_ref = data.pop("expense_ref", None)
    return expense_service.update_expense(
        user_id, data, session, expense_id=expense_id, client_ref=expense_ref,
    )


def _delete_expense(action: OfflineAction, data: dict, user_id: int, session: Session):
    return expense_service.delete_expense(
        user_id,
        session,
        expense_id=data.get("expense_id"),
        client_ref=data.get("expense_ref"),
    )


def _record_payment(action: OfflineAction, data: dict, user_id: int, session: Session):
    group_id = data.pop("group_id")
    return payment_service.record_payment(
        group_id, user_id, data, session, client_ref=action.id,
    )


_HANDLERS: dict[ActionType, Callable[[OfflineAction, dict, int, Session], Any]] = {
    ActionType.CREATE_EXPENSE: _create_expense,
    ActionType.UPDATE_EXPENSE: _update_expense,
    ActionType.DELETE_EXPENSE: _delete_expense,
    ActionType.RECORD_PAYMENT: _record_payment,
}

_missing = set(ActionType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No replay handler for action types: {sorted(t.value for t in _missing)}")


class ActionReplayer:
    """
    Replays actions through the expense and payment services.

    `session_factory` returns the Session to run in. Inside a Flask app this
    is `lambda: db.session`; tests pass a sessionmaker.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def replay(self, action: OfflineAction, user_id: int) -> Any:
        """
        Validates the payload, runs the handler and commits.

        Raises whatever the payload schema or the service raised
        (marshmallow.ValidationError, AppError, SQLAlchemyError), after
        rolling the transaction back.
        """
        data = load_payload(action.type, action.payload)
        handler = _HANDLERS[ActionType(action.type)]

        session = self._session_factory()
        try:
            result = handler(action, data, user_id, session)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.debug("Replayed offline action %s (%s)", action.id, ActionType(action.type).value)
        return result
