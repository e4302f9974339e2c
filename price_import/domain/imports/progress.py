"""
Per-operation progress counters with throttled persistence.

Workers advance the counters; status pollers read copies. Persisting to the
status store happens only when the integer percentage changes or the
persist interval has elapsed, which bounds writes on very large files.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from price_import.core.config import settings

logger = logging.getLogger(__name__)


def calculate_percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, (processed * 100) // total)


@dataclass(frozen=True)
class ProgressSnapshot:
    operation_id: str
    total_records: int
    processed_records: int
    percent: int
    last_reported_percent: int
    last_persist_timestamp: float


class _ProgressEntry:
    def __init__(self, total: int, now: float):
        self.lock = threading.Lock()
        self.total = max(0, total)
        self.processed = 0
        self.last_reported_percent = -1
        self.last_persist_timestamp = now


class ProgressTracker:
    """
    Tracks processed-record counters for running operations.

    Args:
        status_store: Object with ``update_progress(operation_id, processed, total, percent)``
        persist_interval: Seconds after which progress is persisted even without a percent change
        clock: Monotonic clock, replaceable in tests
    """

    def __init__(
        self,
        status_store=None,
        persist_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.status_store = status_store
        self.persist_interval = (
            settings.progress_persist_interval_seconds if persist_interval is None else persist_interval
        )
        self._clock = clock
        self._entries: Dict[str, _ProgressEntry] = {}
        self._entries_lock = threading.Lock()

    def init_progress(self, operation_id: str, total: int) -> ProgressSnapshot:
        entry = _ProgressEntry(total, self._clock())
        with self._entries_lock:
            self._entries[operation_id] = entry
        return self._advance(operation_id, entry, 0, force=True)

    def _entry(self, operation_id: str) -> Optional[_ProgressEntry]:
        with self._entries_lock:
            return self._entries.get(operation_id)

    def increment_progress(self, operation_id: str, count: int = 1) -> Optional[ProgressSnapshot]:
        """Advance the processed counter by ``count`` (negative values are ignored)."""
        entry = self._entry(operation_id)
        if entry is None:
            return None
        return self._advance(operation_id, entry, max(0, count))

    def update_progress(self, operation_id: str, processed: int) -> Optional[ProgressSnapshot]:
        """Set the processed counter; it never moves backwards."""
        entry = self._entry(operation_id)
        if entry is None:
            return None
        with entry.lock:
            delta = max(0, processed - entry.processed)
        return self._advance(operation_id, entry, delta)

    def _advance(self, operation_id: str, entry: _ProgressEntry, delta: int, force: bool = False) -> ProgressSnapshot:
        now = self._clock()
        with entry.lock:
            entry.processed += delta
            percent = calculate_percent(entry.processed, entry.total)
            should_persist = (
                force
                or percent != entry.last_reported_percent
                or now - entry.last_persist_timestamp >= self.persist_interval
            )
            if should_persist:
                entry.last_reported_percent = percent
                entry.last_persist_timestamp = now
            snapshot = ProgressSnapshot(
                operation_id=operation_id,
                total_records=entry.total,
                processed_records=entry.processed,
                percent=percent,
                last_reported_percent=entry.last_reported_percent,
                last_persist_timestamp=entry.last_persist_timestamp,
            )

        if should_persist:
            self._persist(snapshot)
        return snapshot

    def _persist(self, snapshot: ProgressSnapshot) -> None:
        if self.status_store is None:
            return
        try:
            self.status_store.update_progress(
                snapshot.operation_id,
                snapshot.processed_records,
                snapshot.total_records,
                snapshot.percent,
            )
        except Exception as e:
            # Progress is advisory; a failed write must not stop the import.
            logger.warning("Failed to persist progress for %s: %s", snapshot.operation_id, e)

    def get_progress(self, operation_id: str) -> Optional[ProgressSnapshot]:
        entry = self._entry(operation_id)
        if entry is None:
            return None
        with entry.lock:
            return ProgressSnapshot(
                operation_id=operation_id,
                total_records=entry.total,
                processed_records=entry.processed,
                percent=calculate_percent(entry.processed, entry.total),
                last_reported_percent=entry.last_reported_percent,
                last_persist_timestamp=entry.last_persist_timestamp,
            )

    def complete_progress(self, operation_id: str, exact: bool = True) -> Optional[ProgressSnapshot]:
        """
        Close the counters of a finished operation.

        With ``exact`` the whole input was read, so the processed count becomes
        the total (estimates are replaced by the true row count). Otherwise the
        total is only raised when the estimate was too low. The final state is
        persisted and the entry is dropped.
        """
        entry = self._entry(operation_id)
        if entry is None:
            return None
        with entry.lock:
            if exact or entry.processed > entry.total:
                entry.total = entry.processed
        snapshot = self._advance(operation_id, entry, 0, force=True)
        with self._entries_lock:
            self._entries.pop(operation_id, None)
        return snapshot

    def discard(self, operation_id: str) -> None:
        with self._entries_lock:
            self._entries.pop(operation_id, None)
