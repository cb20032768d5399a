"""
offline/client.py — Single entry point for ledger mutations on a client.

submit() decides between the two paths a mutation can take:
  online  → replayed immediately through the ActionReplayer
  offline → appended to the MutationQueue for the next sync

Both paths mint the action id up front, so a mutation submitted online
carries the same idempotency key it would have carried from the queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from backend.app.errors import AppError, ErrorCode
from backend.app.offline.actions import ActionType, OfflineAction, new_action_id, serialize_payload
from backend.app.offline.queue import MutationQueue
from backend.app.offline.replay import ActionReplayer
from backend.app.offline.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    action_id: str
    queued: bool
    result: Any = None


class OfflineClient:
    def __init__(
            self,
            queue: MutationQueue,
            replayer: ActionReplayer,
            orchestrator: SyncOrchestrator,
            current_user: Callable[[], int | None],
    ) -> None:
        self.queue = queue
        self.replayer = replayer
        self.orchestrator = orchestrator
        self.current_user = current_user

    def submit(self, action_type: ActionType | str, payload: dict) -> SubmitResult:
        """
        Applies a mutation now, or queues it when offline.

        Online failures propagate to the caller unchanged; nothing is queued
        for a mutation the ledger rejected.

        Raises:
            AppError(NOT_AUTHENTICATED, 401) — no signed-in user.
            AppError(UNKNOWN_ACTION_TYPE, 400), marshmallow.ValidationError —
                the action could never be replayed.
        """
        user_id = self.current_user()
        if user_id is None:
            raise AppError(
                ErrorCode.NOT_AUTHENTICATED,
                "Sign in to record expenses and payments.",
                401,
            )

        action_id = new_action_id()

        if not self.orchestrator.is_online:
            self.queue.enqueue(action_type, payload, action_id=action_id)
            return SubmitResult(action_id=action_id, queued=True)

        stored_payload = serialize_payload(action_type, payload)
        action = OfflineAction(
            id=action_id,
            type=ActionType(action_type),
            payload=stored_payload,
            created_at=datetime.now(timezone.utc),
        )
        result = self.replayer.replay(action, user_id)
        return SubmitResult(action_id=action_id, queued=False, result=result)
