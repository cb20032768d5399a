"""
services/derived_cache.py — In-process cache for ledger-derived views.

Net balances and settlement plans are pure functions of the pairwise ledger,
recomputed on demand. This cache only spares repeated recomputation between
writes; it never holds state that is not reproducible from the ledger.

Rules:
  - Every ledger write invalidates the written group twice: at flush, so the
    writing session never reads its own stale views, and again when the
    transaction commits or rolls back (ledger_service registers the session
    events). A view computed by another session between flush and commit
    therefore cannot outlive the commit.
  - A finished sync drain invalidates everything once (SyncOrchestrator).
  - No Flask imports; safe to use from the offline layer and from tests.

Scope:
  The cache only sees writes made by its own process. Deployments with more
  than one process writing the same database (several web workers, or
  `flask sync-offline` run beside a server) must disable it with
  DERIVED_VIEW_CACHE_ENABLED=false; ProductionConfig does so by default.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Hashable


class DerivedViewCache:
    """Thread-safe map of (view_name, group_id) -> computed value."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._entries: dict[tuple[str, Hashable], Any] = {}
        self._generations: dict[Hashable, int] = {}
        self._lock = threading.RLock()

    def get_or_compute(
            self,
            view: str,
            group_id: Hashable,
            compute: Callable[[], Any],
    ) -> Any:
        """
        Returns the cached value or computes, stores and returns it.

        `compute` runs outside the lock so a slow ledger read does not block
        invalidation from a concurrent writer. If the group is invalidated
        while computing, the fresh value is still returned but not stored.
        A disabled cache always computes.
        """
        if not self.enabled:
            return compute()

        key = (view, group_id)
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            generation = self._generation_of(group_id)

        value = compute()

        with self._lock:
            if self._generation_of(group_id) == generation:
                self._entries[key] = value
        return value

    def invalidate_group(self, group_id: Hashable) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[1] == group_id]:
                del self._entries[key]
            self._bump(group_id)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bump(None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── generation counters ────────────────────────────────────────────────
    # One counter per group plus a global one; a value computed under an old
    # generation is never stored.

    def _generation_of(self, group_id: Hashable) -> tuple[int, int]:
        return self._generations.get(None, 0), self._generations.get(group_id, 0)

    def _bump(self, group_id: Hashable) -> None:
        self._generations[group_id] = self._generations.get(group_id, 0) + 1
