"""In-process per-anchor locks for reconciliation."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .types import Anchor, Relation


class AnchorLocks:
    """Registry of re-entrant locks keyed by (relation, anchor).

    Two reconciliations of the same anchor within this process run one after
    the other, so neither computes its delta against a stale baseline. Locks
    are never evicted; the key space is bounded by the number of roles and
    principals an operator edits.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[Relation, Anchor], threading.RLock] = {}

    def _lock_for(self, relation: Relation, anchor: Anchor) -> threading.RLock:
        key = (relation, anchor)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, relation: Relation, anchor: Anchor) -> Iterator[None]:
        lock = self._lock_for(relation, anchor)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["AnchorLocks"]
