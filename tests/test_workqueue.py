"""Tests for the delaying, de-duplicating work queue."""

from __future__ import annotations

import threading

from cluster_collector.controller.workqueue import WorkQueue


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


def _queue(clock: MockClock) -> WorkQueue[str]:
    return WorkQueue(base_backoff=5.0, max_backoff=60.0, _clock=clock)


class TestWorkQueue:
    def test_add_and_get(self):
        q = _queue(MockClock())
        q.add("a")
        assert len(q) == 1
        assert q.get(timeout=0) == "a"
        assert len(q) == 0

    def test_empty_get_times_out(self):
        q = _queue(MockClock())
        assert q.get(timeout=0) is None

    def test_duplicates_collapse(self):
        q = _queue(MockClock())
        q.add("a")
        q.add("a")
        assert len(q) == 1

    def test_delay(self):
        clock = MockClock()
        q = _queue(clock)
        q.add("a", delay=10)
        assert q.get(timeout=0) is None
        clock.advance(10)
        assert q.get(timeout=0) == "a"

    def test_earlier_due_wins(self):
        clock = MockClock()
        q = _queue(clock)
        q.add("a", delay=60)
        q.add("a", delay=5)
        clock.advance(5)
        assert q.get(timeout=0) == "a"
        assert len(q) == 0

    def test_later_add_does_not_postpone(self):
        clock = MockClock()
        q = _queue(clock)
        q.add("a", delay=5)
        q.add("a", delay=60)
        clock.advance(5)
        assert q.get(timeout=0) == "a"

    def test_ordered_by_due_time(self):
        clock = MockClock()
        q = _queue(clock)
        q.add("late", delay=2)
        q.add("early", delay=1)
        clock.advance(2)
        assert q.get(timeout=0) == "early"
        assert q.get(timeout=0) == "late"

    def test_processing_key_not_handed_out_twice(self):
        q = _queue(MockClock())
        q.add("a")
        assert q.get(timeout=0) == "a"
        q.add("a")
        assert q.get(timeout=0) is None
        q.done("a")
        assert q.get(timeout=0) == "a"

    def test_done_without_readd(self):
        q = _queue(MockClock())
        q.add("a")
        q.get(timeout=0)
        q.done("a")
        assert len(q) == 0

    def test_rate_limited_backoff(self):
        clock = MockClock()
        q = _queue(clock)
        assert q.add_rate_limited("a") == 5.0
        assert q.add_rate_limited("a") == 10.0
        assert q.add_rate_limited("a") == 20.0
        assert q.failures("a") == 3
        assert q.add_rate_limited("a") == 40.0
        assert q.add_rate_limited("a") == 60.0

    def test_forget_resets_backoff(self):
        q = _queue(MockClock())
        q.add_rate_limited("a")
        q.add_rate_limited("a")
        q.forget("a")
        assert q.failures("a") == 0
        assert q.add_rate_limited("a") == 5.0

    def test_shutdown(self):
        q = _queue(MockClock())
        q.add("a")
        q.shut_down()
        assert q.shutting_down
        assert q.get(timeout=0) is None
        q.add("b")
        assert len(q) == 1

    def test_shutdown_wakes_blocked_getter(self):
        q: WorkQueue[str] = WorkQueue()
        results: list[str | None] = []
        t = threading.Thread(target=lambda: results.append(q.get()))
        t.start()
        q.shut_down()
        t.join(timeout=5.0)
        assert not t.is_alive()
        assert results == [None]

    def test_blocked_getter_receives_key(self):
        q: WorkQueue[str] = WorkQueue()
        results: list[str | None] = []
        t = threading.Thread(target=lambda: results.append(q.get(timeout=5.0)))
        t.start()
        q.add("a")
        t.join(timeout=5.0)
        assert results == ["a"]
