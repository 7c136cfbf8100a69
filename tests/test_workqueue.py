"""Tests for the reconcile work queue."""

import threading
import time

from ratelimit import ItemExponentialBackoff
from workqueue import ReconcileQueue


class TestReconcileQueue:
    """Tests for ReconcileQueue class."""

    def test_add_and_get(self):
        queue = ReconcileQueue()
        queue.add("ns1/web")

        key, shutdown = queue.get(timeout=1)

        assert key == "ns1/web"
        assert shutdown is False
        assert queue.processing() == {"ns1/web"}

    def test_duplicate_adds_coalesce(self):
        queue = ReconcileQueue()
        for _ in range(5):
            queue.add("ns1/web")
        queue.add("ns1/api")

        assert len(queue) == 2

    def test_get_timeout(self):
        queue = ReconcileQueue()

        assert queue.get(timeout=0.05) == (None, False)

    def test_add_while_processing_requeues_after_done(self):
        queue = ReconcileQueue()
        queue.add("ns1/web")
        key, _ = queue.get(timeout=1)

        queue.add("ns1/web")
        queue.add("ns1/web")
        # Not handed out a second time while still processing
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert queue.get(timeout=1) == ("ns1/web", False)

    def test_done_without_readd_drops_key(self):
        queue = ReconcileQueue()
        queue.add("ns1/web")
        key, _ = queue.get(timeout=1)

        queue.done(key)

        assert len(queue) == 0
        assert queue.processing() == set()

    def test_shut_down_wakes_blocked_get(self):
        queue = ReconcileQueue()
        results = []

        def consumer():
            results.append(queue.get())

        thread = threading.Thread(target=consumer)
        thread.start()
        time.sleep(0.05)
        queue.shut_down()
        thread.join(timeout=1)

        assert results == [(None, True)]

    def test_shut_down_ignores_new_adds(self):
        queue = ReconcileQueue()
        queue.add("ns1/web")
        queue.shut_down()
        queue.add("ns1/api")

        assert queue.shutting_down is True
        assert queue.get(timeout=0.05) == (None, True)

    def test_add_after(self):
        queue = ReconcileQueue()
        queue.add_after("ns1/web", 0.1)

        assert len(queue) == 0
        key, _ = queue.get(timeout=2)
        assert key == "ns1/web"

    def test_add_after_keeps_earliest(self):
        queue = ReconcileQueue()
        queue.add_after("ns1/web", 10)
        queue.add_after("ns1/web", 0.05)

        key, _ = queue.get(timeout=2)
        assert key == "ns1/web"

    def test_add_after_non_positive_adds_now(self):
        queue = ReconcileQueue()
        queue.add_after("ns1/web", 0)

        assert len(queue) == 1

    def test_add_rate_limited_backs_off(self):
        queue = ReconcileQueue(ItemExponentialBackoff(base_delay=0.05, max_delay=1))

        start = time.monotonic()
        queue.add_rate_limited("ns1/web")
        key, _ = queue.get(timeout=2)

        assert key == "ns1/web"
        assert time.monotonic() - start >= 0.04
        assert queue.num_requeues("ns1/web") == 1

    def test_forget(self):
        queue = ReconcileQueue(ItemExponentialBackoff(base_delay=0.01, max_delay=1))
        queue.add_rate_limited("ns1/web")
        queue.add_rate_limited("ns1/web")

        queue.forget("ns1/web")

        assert queue.num_requeues("ns1/web") == 0
