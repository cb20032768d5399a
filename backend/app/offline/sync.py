"""
offline/sync.py — Drains the mutation queue into the ledger.

A drain takes a snapshot of the queue in FIFO order and replays each action
once:
  success                    → action removed
  failure, retries left      → retry_count incremented, action kept
  retry_count >= max_retries → action dropped and reported as a permanent
                               failure; it is never attempted a fourth time

The orchestrator is the only component allowed to swallow an error: a failed
replay becomes a retry-count increment plus a SyncReport entry, and the drain
moves on to the next action. Actions enqueued while a drain is running wait
for the next drain.

Only one drain runs at a time per orchestrator. A sync() call made while
another is in progress returns None immediately instead of replaying the
same snapshot twice.

Derived views are invalidated once when the drain finishes, whatever the
outcome.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from backend.app.errors import AppError, ErrorCode
from backend.app.offline.queue import MutationQueue
from backend.app.offline.replay import ActionReplayer
from backend.app.services.derived_cache import DerivedViewCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class SyncState(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncFailure:
    action_id: str
    action_type: str
    message: str
    retry_count: int
    dropped: bool


@dataclass
class SyncReport:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    errors: list[SyncFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.dropped)


def _describe(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return f"{exc.code}: {exc.message}"
    return str(exc) or exc.__class__.__name__


class SyncOrchestrator:
    """
    Replays queued actions as `current_user()` once connectivity returns.

    Args:
        queue:        The durable MutationQueue to drain.
        replayer:     Applies a single action to the ledger.
        cache:        Derived-view cache, invalidated after every drain.
        current_user: Returns the authenticated user id, or None.
        max_retries:  Attempts allowed per action before it is dropped.
    """

    def __init__(
            self,
            queue: MutationQueue,
            replayer: ActionReplayer,
            cache: DerivedViewCache,
            current_user: Callable[[], int | None],
            max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1.")
        self.queue = queue
        self.replayer = replayer
        self.cache = cache
        self.current_user = current_user
        self.max_retries = max_retries

        self._drain_lock = threading.Lock()
        self._online = True
        self._state = SyncState.IDLE
        # Set on an offline -> online transition, cleared only by a drain that
        # runs to completion.
        self._reconnect_pending = False

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_pending

    def set_online(self, online: bool) -> SyncReport | None:
        """
        Records a connectivity change. Coming back online starts a drain when
        a user is signed in; the drain's report is returned.

        Without a user the drain is deferred, not forgotten: it runs on the
        next set_online(True) or user_signed_in() once somebody is signed in.
        """
        was_online = self._online
        self._online = online

        if online and not was_online:
            self._reconnect_pending = True
            logger.info("Connectivity restored, %d offline action(s) pending", self.queue.pending_count())
        return self._run_pending_reconnect()

    def user_signed_in(self) -> SyncReport | None:
        """Runs a drain deferred by a reconnect that happened while signed out."""
        return self._run_pending_reconnect()

    def _run_pending_reconnect(self) -> SyncReport | None:
        if not (self._online and self._reconnect_pending):
            return None
        if self.current_user() is None:
            logger.info("No authenticated user, deferring offline sync")
            return None
        return self.sync()

    def sync(self) -> SyncReport | None:
        """
        Drains the queue once.

        Returns:
            A SyncReport, or None when a drain is already running.

        Raises:
            AppError(NOT_AUTHENTICATED, 401) — nobody to replay as.
        """
        user_id = self.current_user()
        if user_id is None:
            raise AppError(
                ErrorCode.NOT_AUTHENTICATED,
                "Offline actions can only be synced for an authenticated user.",
                401,
            )

        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Sync already in progress, skipping")
            return None

        self._state = SyncState.SYNCING
        report = SyncReport()
        try:
            for action in self.queue.dequeue_ordered():
                self._process(action, user_id, report)
            self._reconnect_pending = False
        finally:
            self.cache.invalidate_all()
            self._state = SyncState.IDLE
            self._drain_lock.release()

        if report.attempted:
            logger.info(
                "Offline sync finished: %d succeeded, %d failed, %d dropped",
                len(report.succeeded),
                len(report.failed),
                len(report.dropped),
            )
        return report

    def _process(self, action, user_id: int, report: SyncReport) -> None:
        if action.retry_count >= self.max_retries:
            self._drop(action, "retry limit reached", report)
            return

        try:
            self.replayer.replay(action, user_id)
        except Exception as exc:
            message = _describe(exc)
            retry_count = self.queue.increment_retry(action.id)
            if retry_count >= self.max_retries:
                self._drop(action, message, report, retry_count)
                return
            logger.warning(
                "Replay of offline action %s (%s) failed, attempt %d of %d: %s",
                action.id,
                action.type.value,
                retry_count,
                self.max_retries,
                message,
            )
            report.failed.append(action.id)
            report.errors.append(SyncFailure(
                action_id=action.id,
                action_type=action.type.value,
                message=message,
                retry_count=retry_count,
                dropped=False,
            ))
            return

        self.queue.remove(action.id)
        report.succeeded.append(action.id)

    def _drop(self, action, message: str, report: SyncReport, retry_count: int | None = None) -> None:
        retry_count = action.retry_count if retry_count is None else retry_count
        self.queue.remove(action.id)
        logger.error(
            "Dropping offline action %s (%s) after %d failed attempt(s): %s",
            action.id,
            action.type.value,
            retry_count,
            message,
        )
        report.dropped.append(action.id)
        report.errors.append(SyncFailure(
            action_id=action.id,
            action_type=action.type.value,
            message=message,
            retry_count=retry_count,
            dropped=True,
        ))
