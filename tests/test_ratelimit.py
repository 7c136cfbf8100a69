"""Tests for rate limiting."""

import threading
import time

import pytest

import ratelimit
from ratelimit import ItemExponentialBackoff, TokenPool, get_token_pool


class TestItemExponentialBackoff:
    """Tests for ItemExponentialBackoff class."""

    def test_doubles_until_cap(self):
        backoff = ItemExponentialBackoff(base_delay=1, max_delay=60)

        delays = [backoff.when("ns1/web") for _ in range(8)]

        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_keys_are_independent(self):
        backoff = ItemExponentialBackoff(base_delay=1, max_delay=60)
        backoff.when("ns1/web")
        backoff.when("ns1/web")

        assert backoff.when("ns1/api") == 1
        assert backoff.num_requeues("ns1/web") == 2

    def test_forget_resets(self):
        backoff = ItemExponentialBackoff(base_delay=1, max_delay=60)
        backoff.when("ns1/web")
        backoff.when("ns1/web")
        backoff.forget("ns1/web")

        assert backoff.num_requeues("ns1/web") == 0
        assert backoff.when("ns1/web") == 1

    def test_many_failures_stay_capped(self):
        backoff = ItemExponentialBackoff(base_delay=1, max_delay=60)
        for _ in range(100):
            delay = backoff.when("ns1/web")

        assert delay == 60

    @pytest.mark.parametrize("base,maximum", [(0, 60), (-1, 60), (10, 5)])
    def test_invalid_bounds(self, base, maximum):
        with pytest.raises(ValueError):
            ItemExponentialBackoff(base_delay=base, max_delay=maximum)

    def test_repr(self):
        repr_str = repr(ItemExponentialBackoff(base_delay=1, max_delay=60))

        assert "base_delay=1" in repr_str
        assert "max_delay=60" in repr_str


class TestTokenPool:
    """Tests for TokenPool class."""

    def test_allows_single_slot(self):
        pool = TokenPool(capacity=10)

        with pool.slot():
            assert pool.in_use == 1
        assert pool.in_use == 0

    def test_enforces_capacity(self):
        capacity = 3
        pool = TokenPool(capacity=capacity)
        active_count = 0
        max_active = 0
        lock = threading.Lock()

        def worker():
            nonlocal active_count, max_active
            with pool.slot():
                with lock:
                    active_count += 1
                    max_active = max(max_active, active_count)
                time.sleep(0.02)
                with lock:
                    active_count -= 1

        threads = [threading.Thread(target=worker) for _ in range(5 * capacity)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max_active <= capacity
        assert pool.in_use == 0

    def test_acquire_timeout_when_exhausted(self):
        pool = TokenPool(capacity=1)
        assert pool.acquire() is True

        assert pool.acquire(timeout=0.05) is False
        pool.release()
        assert pool.acquire(timeout=0.05) is True

    def test_release_without_acquire(self):
        pool = TokenPool(capacity=2)

        with pytest.raises(ValueError):
            pool.release()

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            TokenPool(capacity=0)

    def test_repr(self):
        repr_str = repr(TokenPool(capacity=5))

        assert "capacity=5" in repr_str
        assert "in_use=0" in repr_str


class TestGetTokenPool:
    """Tests for the global token pool."""

    def test_reads_capacity_from_env(self, monkeypatch):
        monkeypatch.setattr(ratelimit, "_token_pool", None)
        monkeypatch.setenv("IMAGE_MAX_CONCURRENT_SYNCS", "4")

        pool = get_token_pool()

        assert pool.capacity == 4
        assert get_token_pool() is pool
