"""
offline/queue.py — Durable FIFO store of mutations made while offline.

The queue lives in its own database (OFFLINE_QUEUE_URL, a local SQLite file
by default), separate from the ledger database, so queued mutations survive
a restart and can be read, scanned and deleted with no connectivity to the
ledger at all.

Ordering contract:
  enqueue() stamps each action with a created_at strictly later than every
  action already in the queue, and dequeue_ordered() returns actions by
  (created_at, seq). Replay is therefore FIFO even when two actions are
  enqueued within the same clock tick.

A MutationQueue is an explicit handle: construct one at startup and pass it
to the SyncOrchestrator and OfflineClient. There is no module-level instance.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

from sqlalchemy import JSON, DateTime, Integer, String, create_engine, delete, func, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.errors import AppError, ErrorCode
from backend.app.offline.actions import ActionType, OfflineAction, new_action_id, serialize_payload

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


class QueueBase(DeclarativeBase):
    pass


class QueuedAction(QueueBase):
    __tablename__ = "offline_queue"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_action(self) -> OfflineAction:
        created_at = self.created_at
        if created_at.tzinfo is None:
            # SQLite drops the offset on the way back.
            created_at = created_at.replace(tzinfo=timezone.utc)
        return OfflineAction(
            id=self.id,
            type=ActionType(self.type),
            payload=dict(self.payload),
            created_at=created_at,
            retry_count=self.retry_count,
        )


def _make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


class MutationQueue:
    """Persistent, ordered store of OfflineActions."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine = _make_engine(url)
        QueueBase.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._lock = threading.Lock()

    # ── writes ──────────────────────────────────────────────────────────────

    def enqueue(
            self,
            action_type: ActionType | str,
            payload: dict,
            action_id: str | None = None,
    ) -> str:
        """
        Validates and appends an action with retry_count 0.

        Raises:
            AppError(UNKNOWN_ACTION_TYPE, 400) — action_type is not queueable.
            marshmallow.ValidationError        — payload does not match the
                schema of its action type.
        """
        stored_payload = serialize_payload(action_type, payload)
        action_type = ActionType(action_type)
        action_id = action_id or new_action_id()

        with self._lock, self._sessions.begin() as session:
            now = datetime.now(timezone.utc)
            latest = session.execute(select(func.max(QueuedAction.created_at))).scalar()
            if latest is not None:
                if latest.tzinfo is None:
                    latest = latest.replace(tzinfo=timezone.utc)
                if now <= latest:
                    now = latest + _TICK

            session.add(QueuedAction(
                id=action_id,
                type=action_type.value,
                payload=stored_payload,
                created_at=now,
                retry_count=0,
            ))

        logger.info("Queued offline action %s (%s)", action_id, action_type.value)
        return action_id

    def remove(self, action_id: str) -> bool:
        with self._lock, self._sessions.begin() as session:
            result = session.execute(delete(QueuedAction).where(QueuedAction.id == action_id))
        return result.rowcount > 0

    def increment_retry(self, action_id: str) -> int:
        """
        Bumps retry_count and returns the new value.

        Raises:
            AppError(REPLAY_FAILED, 404) — the action is no longer queued.
        """
        with self._lock, self._sessions.begin() as session:
            session.execute(
                update(QueuedAction)
                .where(QueuedAction.id == action_id)
                .values(retry_count=QueuedAction.retry_count + 1)
            )
            count = session.execute(
                select(QueuedAction.retry_count).where(QueuedAction.id == action_id)
            ).scalar_one_or_none()

        if count is None:
            raise AppError(
                ErrorCode.REPLAY_FAILED,
                f"Offline action {action_id} is not in the queue.",
                404,
            )
        return count

    def clear(self) -> int:
        with self._lock, self._sessions.begin() as session:
            result = session.execute(delete(QueuedAction))
        return result.rowcount

    # ── reads ───────────────────────────────────────────────────────────────

    def dequeue_ordered(self) -> list[OfflineAction]:
        """All pending actions, oldest first. Does not remove anything."""
        with self._sessions() as session:
            rows = session.execute(
                select(QueuedAction).order_by(QueuedAction.created_at, QueuedAction.seq)
            ).scalars().all()
            return [row.to_action() for row in rows]

    def get(self, action_id: str) -> OfflineAction | None:
        with self._sessions() as session:
            row = session.execute(
                select(QueuedAction).where(QueuedAction.id == action_id)
            ).scalar_one_or_none()
            return row.to_action() if row is not None else None

    def pending_count(self) -> int:
        with self._sessions() as session:
            return session.execute(select(func.count()).select_from(QueuedAction)).scalar_one()

    def close(self) -> None:
        self._engine.dispose()
