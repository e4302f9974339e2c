import threading

from price_import.domain.imports.progress import ProgressTracker, calculate_percent


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class RecordingStore:
    def __init__(self):
        self.calls = []

    def update_progress(self, operation_id, processed, total, percent):
        self.calls.append((operation_id, processed, total, percent))


class BrokenStore:
    def update_progress(self, operation_id, processed, total, percent):
        raise RuntimeError("database is gone")


def test_calculate_percent():
    assert calculate_percent(0, 0) == 0
    assert calculate_percent(1, 3) == 33
    assert calculate_percent(2, 3) == 66
    assert calculate_percent(10, 5) == 100


def test_persists_on_percent_change_only():
    store = RecordingStore()
    clock = FakeClock()
    tracker = ProgressTracker(store, persist_interval=1.0, clock=clock)

    tracker.init_progress("op", 1000)
    tracker.increment_progress("op", 5)   # 0% -> unchanged
    tracker.increment_progress("op", 5)   # 1%
    tracker.increment_progress("op", 2)   # still 1%

    assert store.calls == [("op", 0, 1000, 0), ("op", 10, 1000, 1)]


def test_persists_after_interval_without_percent_change():
    store = RecordingStore()
    clock = FakeClock()
    tracker = ProgressTracker(store, persist_interval=1.0, clock=clock)
    tracker.init_progress("op", 1000)

    clock.now += 1.5
    tracker.increment_progress("op", 1)

    assert store.calls[-1] == ("op", 1, 1000, 0)


def test_progress_is_monotonic():
    tracker = ProgressTracker(RecordingStore(), persist_interval=1.0, clock=FakeClock())
    tracker.init_progress("op", 10)

    tracker.update_progress("op", 6)
    tracker.update_progress("op", 3)
    tracker.increment_progress("op", -4)

    assert tracker.get_progress("op").processed_records == 6


def test_complete_progress_uses_true_row_count():
    store = RecordingStore()
    tracker = ProgressTracker(store, persist_interval=1.0, clock=FakeClock())
    tracker.init_progress("op", 50)
    tracker.increment_progress("op", 42)

    snapshot = tracker.complete_progress("op")

    assert snapshot.total_records == 42
    assert snapshot.percent == 100
    assert store.calls[-1] == ("op", 42, 42, 100)
    assert tracker.get_progress("op") is None


def test_complete_progress_raises_low_estimates_when_inexact():
    tracker = ProgressTracker(None, persist_interval=1.0, clock=FakeClock())
    tracker.init_progress("op", 10)
    tracker.increment_progress("op", 12)

    snapshot = tracker.complete_progress("op", exact=False)

    assert snapshot.total_records == 12


def test_store_failures_do_not_propagate():
    tracker = ProgressTracker(BrokenStore(), persist_interval=0)
    tracker.init_progress("op", 10)
    assert tracker.increment_progress("op", 5).processed_records == 5


def test_unknown_operation_is_ignored():
    tracker = ProgressTracker()
    assert tracker.increment_progress("missing", 1) is None
    assert tracker.get_progress("missing") is None


def test_concurrent_increments_are_not_lost():
    tracker = ProgressTracker(None, persist_interval=0)
    tracker.init_progress("op", 8000)

    def worker():
        for _ in range(1000):
            tracker.increment_progress("op", 1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tracker.get_progress("op").processed_records == 8000
