"""
Per-flow undo/redo history of graph snapshots.

Two coalescing policies, because mutations arrive at very different rates:

- Debounced pushes (typing, dragging): the first snapshot of a burst wins and
  is committed once no further debounced push arrives for ``debounce_seconds``.
- Immediate pushes (discrete actions): a push arriving within
  ``batch_seconds`` of the previous immediate push is dropped, so a compound
  action (node removal plus its edge removals) is a single undo step. Undo and
  redo end the current compound action.

The debounce deadline is checked against an injectable monotonic clock on
every interaction rather than by a background timer, which keeps the history
deterministic under a single event loop.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from genflow import config
from genflow.models.graph import Snapshot

logger = logging.getLogger(__name__)


class UndoManager:
    def __init__(
        self,
        initial: Snapshot | None = None,
        *,
        max_history: int = config.UNDO_MAX_HISTORY,
        debounce_seconds: float = config.UNDO_DEBOUNCE_SECONDS,
        batch_seconds: float = config.UNDO_BATCH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_history = max_history
        self.debounce_seconds = debounce_seconds
        self.batch_seconds = batch_seconds
        self._clock = clock

        self.past: list[Snapshot] = []
        self.future: list[Snapshot] = []

        self._pending: Snapshot | None = None
        self._pending_deadline: float | None = None
        self._last_batch_at: float | None = None

        if initial is not None:
            self.seed_initial(initial)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def push_snapshot(self, before: Snapshot, debounce: bool = False) -> None:
        now = self._clock()
        self._commit_if_due(now)

        if debounce:
            if self._pending is None:
                self._pending = before
            self._pending_deadline = now + self.debounce_seconds
            return

        if self._last_batch_at is not None and now - self._last_batch_at < self.batch_seconds:
            # Same compound action; the first push already holds the "before" state
            return

        self.flush_pending()
        self._commit(before)
        self._last_batch_at = now

    def flush_pending(self) -> None:
        """Commit a pending debounced snapshot immediately."""
        if self._pending is not None:
            pending = self._pending
            self._pending = None
            self._pending_deadline = None
            self._commit(pending)

    def seed_initial(self, snapshot: Snapshot) -> None:
        """Make the first undo on a fresh flow a well-defined no-op."""
        if not self.past:
            self.past.append(snapshot)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def undo(self, current: Snapshot) -> Snapshot | None:
        self.flush_pending()
        self._last_batch_at = None
        if not self.past:
            return None
        restored = self.past.pop()
        self.future.append(current)
        return restored

    def redo(self, current: Snapshot) -> Snapshot | None:
        # A pending edit is a new change and invalidates the redo stack
        self.flush_pending()
        self._last_batch_at = None
        if not self.future:
            return None
        restored = self.future.pop()
        self.past.append(current)
        return restored

    def can_undo(self) -> bool:
        self._commit_if_due(self._clock())
        return bool(self.past) or self._pending is not None

    def can_redo(self) -> bool:
        self._commit_if_due(self._clock())
        return bool(self.future) and self._pending is None

    def dispose(self) -> None:
        self.past.clear()
        self.future.clear()
        self._pending = None
        self._pending_deadline = None
        self._last_batch_at = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit_if_due(self, now: float) -> None:
        if self._pending_deadline is not None and now >= self._pending_deadline:
            self.flush_pending()

    def _commit(self, snapshot: Snapshot) -> None:
        self.past.append(snapshot)
        if len(self.past) > self.max_history:
            self.past.pop(0)
        self.future.clear()
        logger.debug("History committed (%d past entries)", len(self.past))
