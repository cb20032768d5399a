"""
tests/unit/test_sync_orchestrator.py — SyncOrchestrator drain behaviour.

The replayer is a MagicMock in most tests so failures can be scripted; the
last tests wire a real ActionReplayer to the SQLite ledger session to prove
replay is idempotent end to end.
"""

from __future__ import annotations

import logging
import threading
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.offline.actions import ActionType
from backend.app.offline.queue import MutationQueue
from backend.app.offline.replay import ActionReplayer
from backend.app.offline.sync import SyncOrchestrator, SyncState
from backend.app.services import ledger_service
from backend.app.services.derived_cache import DerivedViewCache


def _expense_payload(title: str = "Fuel", amount: str = "20.00", debtor: int = 2) -> dict:
    return {
        "group_id": 1,
        "paid_by_user_id": 1,
        "title": title,
        "amount": amount,
        "split_type": "custom",
        "splits": [{"user_id": debtor, "amount": amount}],
    }


@pytest.fixture
def queue():
    q = MutationQueue("sqlite://")
    yield q
    q.close()


@pytest.fixture
def replayer():
    return MagicMock(spec=ActionReplayer)


@pytest.fixture
def cache():
    return MagicMock(spec=DerivedViewCache)


@pytest.fixture
def orchestrator(queue, replayer, cache):
    return SyncOrchestrator(queue, replayer, cache, current_user=lambda: 1)


# ── Drain outcomes ─────────────────────────────────────────────────────────

def test_successful_actions_are_removed_in_fifo_order(queue, replayer, orchestrator):
    ids = [queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload(f"#{i}")) for i in range(3)]

    report = orchestrator.sync()

    assert report.succeeded == ids
    assert [call.args[0].id for call in replayer.replay.call_args_list] == ids
    assert all(call.args[1] == 1 for call in replayer.replay.call_args_list)
    assert queue.pending_count() == 0


def test_failed_action_is_kept_with_incremented_retry(queue, replayer, orchestrator):
    action_id = queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload())
    replayer.replay.side_effect = ConnectionError("backend unreachable")

    report = orchestrator.sync()

    assert report.failed == [action_id]
    assert report.errors[0].message == "backend unreachable"
    assert report.errors[0].dropped is False
    assert queue.get(action_id).retry_count == 1


def test_failure_does_not_block_later_actions(queue, replayer, orchestrator):
    bad = queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    good = queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 2})

    def replay(action, user_id):
        if action.id == bad:
            raise AppError(ErrorCode.EXPENSE_NOT_FOUND, "Expense 1 does not exist.", 404)

    replayer.replay.side_effect = replay

    report = orchestrator.sync()

    assert report.failed == [bad]
    assert report.succeeded == [good]
    assert report.errors[0].message == "EXPENSE_NOT_FOUND: Expense 1 does not exist."


def test_retry_exhaustion_drops_after_three_attempts(queue, replayer, orchestrator, caplog):
    action_id = queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload())
    replayer.replay.side_effect = TimeoutError("timed out")

    with caplog.at_level(logging.WARNING, logger="backend.app.offline.sync"):
        first = orchestrator.sync()
        second = orchestrator.sync()
        third = orchestrator.sync()
        fourth = orchestrator.sync()

    assert first.failed == [action_id]
    assert second.failed == [action_id]
    assert third.dropped == [action_id]
    assert third.errors[0].dropped is True
    assert third.errors[0].retry_count == 3
    assert fourth.attempted == 0

    assert replayer.replay.call_count == 3
    assert queue.get(action_id) is None
    assert any(r.levelno == logging.ERROR and action_id in r.getMessage() for r in caplog.records)


def test_action_already_at_limit_is_dropped_without_replay(queue, replayer, cache):
    action_id = queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload())
    queue.increment_retry(action_id)

    orchestrator = SyncOrchestrator(queue, replayer, cache, current_user=lambda: 1, max_retries=1)
    report = orchestrator.sync()

    assert report.dropped == [action_id]
    replayer.replay.assert_not_called()


def test_cache_invalidated_once_per_drain(queue, orchestrator, cache):
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 2})

    orchestrator.sync()

    cache.invalidate_all.assert_called_once()


def test_cache_invalidated_even_when_drain_blows_up(queue, replayer, cache, orchestrator):
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    queue.increment_retry = MagicMock(side_effect=RuntimeError("queue store gone"))
    replayer.replay.side_effect = ValueError("boom")

    with pytest.raises(RuntimeError):
        orchestrator.sync()

    cache.invalidate_all.assert_called_once()
    assert orchestrator.state == SyncState.IDLE


# ── Guards ─────────────────────────────────────────────────────────────────

def test_sync_requires_authenticated_user(queue, replayer, cache):
    orchestrator = SyncOrchestrator(queue, replayer, cache, current_user=lambda: None)

    with pytest.raises(AppError) as exc_info:
        orchestrator.sync()

    assert exc_info.value.code == ErrorCode.NOT_AUTHENTICATED
    assert exc_info.value.http_status == 401


def test_concurrent_sync_is_skipped(queue, replayer, orchestrator):
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    started = threading.Event()
    release = threading.Event()
    results = {}

    def slow_replay(action, user_id):
        started.set()
        release.wait(timeout=5)

    replayer.replay.side_effect = slow_replay

    worker = threading.Thread(target=lambda: results.setdefault("first", orchestrator.sync()))
    worker.start()
    assert started.wait(timeout=5)

    assert orchestrator.state == SyncState.SYNCING
    assert orchestrator.sync() is None

    release.set()
    worker.join(timeout=5)

    assert len(results["first"].succeeded) == 1
    assert replayer.replay.call_count == 1
    assert orchestrator.state == SyncState.IDLE


def test_max_retries_must_be_positive(queue, replayer, cache):
    with pytest.raises(ValueError):
        SyncOrchestrator(queue, replayer, cache, current_user=lambda: 1, max_retries=0)


# ── Connectivity ───────────────────────────────────────────────────────────

def test_coming_back_online_triggers_sync(queue, replayer, orchestrator):
    action_id = queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})

    assert orchestrator.set_online(False) is None
    assert orchestrator.is_online is False

    report = orchestrator.set_online(True)

    assert report.succeeded == [action_id]


def test_staying_online_does_not_sync(orchestrator, replayer):
    assert orchestrator.set_online(True) is None
    replayer.replay.assert_not_called()


def test_reconnect_without_user_defers_sync(queue, replayer, cache):
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    orchestrator = SyncOrchestrator(queue, replayer, cache, current_user=lambda: None)

    orchestrator.set_online(False)
    assert orchestrator.set_online(True) is None

    replayer.replay.assert_not_called()
    assert queue.pending_count() == 1
    assert orchestrator.reconnect_pending is True


def test_deferred_sync_runs_once_user_signs_in(queue, replayer, cache):
    action_id = queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    user = {"id": None}
    orchestrator = SyncOrchestrator(queue, replayer, cache, current_user=lambda: user["id"])

    orchestrator.set_online(False)
    assert orchestrator.set_online(True) is None

    user["id"] = 1
    report = orchestrator.user_signed_in()

    assert report.succeeded == [action_id]
    assert queue.pending_count() == 0
    assert orchestrator.reconnect_pending is False
    assert orchestrator.user_signed_in() is None


def test_deferred_sync_runs_on_next_online_signal(queue, replayer, cache):
    action_id = queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    user = {"id": None}
    orchestrator = SyncOrchestrator(queue, replayer, cache, current_user=lambda: user["id"])

    orchestrator.set_online(False)
    orchestrator.set_online(True)
    user["id"] = 1

    report = orchestrator.set_online(True)

    assert report.succeeded == [action_id]
    assert replayer.replay.call_count == 1


def test_failed_drain_keeps_reconnect_pending(queue, replayer, cache, orchestrator):
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_id": 1})
    queue.dequeue_ordered = MagicMock(side_effect=RuntimeError("queue store gone"))
    orchestrator.set_online(False)

    with pytest.raises(RuntimeError):
        orchestrator.set_online(True)

    assert orchestrator.reconnect_pending is True


# ── End to end with the real replayer ──────────────────────────────────────

def _pairs(session) -> dict[tuple[int, int], Decimal]:
    return {
        (r.from_user_id, r.to_user_id): r.amount
        for r in ledger_service.get_group_balances(1, session)
    }


def test_replaying_an_applied_action_does_not_double_apply(queue, session):
    replayer = ActionReplayer(lambda: session)
    action_id = queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload(amount="25.00"))
    action = queue.get(action_id)

    # Applied once, but the queue removal is lost (crash before remove()).
    replayer.replay(action, 1)

    orchestrator = SyncOrchestrator(queue, replayer, DerivedViewCache(), current_user=lambda: 1)
    report = orchestrator.sync()

    assert report.succeeded == [action_id]
    assert _pairs(session) == {(2, 1): Decimal("25.00")}


def test_create_then_delete_queued_offline(queue, session):
    replayer = ActionReplayer(lambda: session)
    create_id = queue.enqueue(ActionType.CREATE_EXPENSE, _expense_payload(amount="40.00"))
    queue.enqueue(ActionType.DELETE_EXPENSE, {"expense_ref": create_id})

    report = SyncOrchestrator(queue, replayer, DerivedViewCache(), current_user=lambda: 1).sync()

    assert len(report.succeeded) == 2
    assert _pairs(session) == {}


def test_rejected_replay_leaves_no_partial_write(queue, session):
    replayer = ActionReplayer(lambda: session)
    payload = _expense_payload(amount="30.00")
    payload["splits"] = [{"user_id": 2, "amount": "10.00"}]  # does not sum to amount
    action_id = queue.enqueue(ActionType.CREATE_EXPENSE, payload)

    report = SyncOrchestrator(queue, replayer, DerivedViewCache(), current_user=lambda: 1).sync()

    assert report.failed == [action_id]
    assert report.errors[0].message.startswith(ErrorCode.SPLIT_SUM_MISMATCH)
    assert _pairs(session) == {}
