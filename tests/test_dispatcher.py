"""Tests for the image dispatcher."""

import threading
import time

import pytest

from dispatcher import Dispatcher
from models import ResourceNotFoundError
from ratelimit import ItemExponentialBackoff, TokenPool
from workqueue import ReconcileQueue


def wait_until(predicate, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FakeEventSource:
    def __init__(self):
        self.listeners = []

    def add_event_handler(self, listener):
        self.listeners.append(listener)


class FakeSyncer(FakeEventSource):
    """Records syncs and optionally fails, sleeps or blocks."""

    def __init__(self, sync_fn=None, missing=()):
        super().__init__()
        self.sync_fn = sync_fn
        self.missing = set(missing)
        self.synced = []
        self.fetched = []
        self.lock = threading.Lock()

    def get(self, deadline, namespace, name):
        self.fetched.append(f"{namespace}/{name}")
        if (namespace, name) in self.missing:
            raise ResourceNotFoundError(f"image {namespace}/{name} not found")
        return {"metadata": {"namespace": namespace, "name": name}}

    def sync(self, deadline, image):
        key = f"{image['metadata']['namespace']}/{image['metadata']['name']}"
        with self.lock:
            self.synced.append(key)
        if self.sync_fn is not None:
            self.sync_fn(deadline, key)


@pytest.fixture
def running():
    """Start dispatchers in background threads and stop them afterwards."""
    started = []

    def start(dispatcher):
        stop = threading.Event()
        thread = threading.Thread(target=dispatcher.run, args=(stop,), daemon=True)
        thread.start()
        started.append((stop, thread))
        return stop, thread

    yield start

    for stop, thread in started:
        stop.set()
        thread.join(timeout=5)


class TestDispatcher:
    """Tests for Dispatcher class."""

    def test_registers_router_on_both_sources(self):
        syncer = FakeSyncer()
        imports = FakeEventSource()

        Dispatcher(syncer, imports, sync_timeout=1)

        assert len(syncer.listeners) == 1
        assert syncer.listeners == imports.listeners

    def test_syncs_queued_key(self, running):
        syncer = FakeSyncer()
        dispatcher = Dispatcher(syncer, FakeEventSource(), sync_timeout=1)
        running(dispatcher)

        dispatcher.queue.add("ns1/web")

        assert wait_until(lambda: syncer.synced == ["ns1/web"])
        assert wait_until(lambda: dispatcher.in_flight == 0)
        assert dispatcher.queue.num_requeues("ns1/web") == 0

    def test_event_from_import_triggers_sync(self, running):
        syncer = FakeSyncer()
        imports = FakeEventSource()
        dispatcher = Dispatcher(syncer, imports, sync_timeout=1)
        running(dispatcher)

        imports.listeners[0].on_add(
            {
                "kind": "ImageImport",
                "metadata": {"namespace": "ns1", "name": "web-x1"},
                "spec": {"targetImage": "web"},
            }
        )

        assert wait_until(lambda: syncer.synced == ["ns1/web"])

    def test_missing_image_is_not_an_error(self, running):
        syncer = FakeSyncer(missing={("ns1", "gone")})
        queue = ReconcileQueue(ItemExponentialBackoff(base_delay=0.01, max_delay=0.1))
        dispatcher = Dispatcher(syncer, FakeEventSource(), queue=queue, sync_timeout=1)
        running(dispatcher)

        queue.add("ns1/gone")

        assert wait_until(lambda: syncer.fetched == ["ns1/gone"])
        assert wait_until(lambda: dispatcher.in_flight == 0)
        assert syncer.synced == []
        assert queue.num_requeues("ns1/gone") == 0

    def test_invalid_key_is_dropped(self, running):
        syncer = FakeSyncer()
        dispatcher = Dispatcher(syncer, FakeEventSource(), sync_timeout=1)
        running(dispatcher)

        dispatcher.queue.add("not-a-key")
        dispatcher.queue.add("ns1/web")

        assert wait_until(lambda: syncer.synced == ["ns1/web"])
        assert dispatcher.queue.num_requeues("not-a-key") == 0

    def test_failure_is_retried_with_backoff(self, running):
        attempts = []

        def flaky(deadline, key):
            attempts.append(time.monotonic())
            if len(attempts) == 1:
                raise RuntimeError("registry unavailable")

        syncer = FakeSyncer(sync_fn=flaky)
        queue = ReconcileQueue(ItemExponentialBackoff(base_delay=0.1, max_delay=1))
        dispatcher = Dispatcher(syncer, FakeEventSource(), queue=queue, sync_timeout=1)
        running(dispatcher)

        queue.add("ns1/web")

        assert wait_until(lambda: len(attempts) == 2)
        assert attempts[1] - attempts[0] >= 0.09
        # Success forgets the failure history
        assert wait_until(lambda: queue.num_requeues("ns1/web") == 0)

    def test_concurrency_bounded_by_token_pool(self, running):
        capacity = 3
        active = 0
        max_active = 0
        lock = threading.Lock()

        def slow(deadline, key):
            nonlocal active, max_active
            with lock:
                active += 1
                max_active = max(max_active, active)
            time.sleep(0.05)
            with lock:
                active -= 1

        syncer = FakeSyncer(sync_fn=slow)
        pool = TokenPool(capacity=capacity)
        dispatcher = Dispatcher(syncer, FakeEventSource(), token_pool=pool, sync_timeout=5)
        running(dispatcher)

        for i in range(5 * capacity):
            dispatcher.queue.add(f"ns1/image-{i}")

        assert wait_until(lambda: len(syncer.synced) == 5 * capacity)
        assert wait_until(lambda: pool.in_use == 0)
        assert max_active <= capacity
        assert max_active > 1

    def test_same_key_never_processed_concurrently(self, running):
        active = 0
        max_active = 0
        lock = threading.Lock()

        def slow(deadline, key):
            nonlocal active, max_active
            with lock:
                active += 1
                max_active = max(max_active, active)
            time.sleep(0.05)
            with lock:
                active -= 1

        syncer = FakeSyncer(sync_fn=slow)
        dispatcher = Dispatcher(syncer, FakeEventSource(), sync_timeout=5)
        running(dispatcher)

        dispatcher.queue.add("ns1/web")
        assert wait_until(lambda: len(syncer.synced) == 1)
        for _ in range(10):
            dispatcher.queue.add("ns1/web")

        # Re-adds during processing coalesce into exactly one more sync
        assert wait_until(lambda: len(syncer.synced) == 2)
        assert wait_until(lambda: dispatcher.in_flight == 0)
        time.sleep(0.05)
        assert len(syncer.synced) == 2
        assert max_active == 1

    def test_sync_deadline(self, running):
        seen = []

        def record(deadline, key):
            seen.append(deadline.remaining())

        syncer = FakeSyncer(sync_fn=record)
        dispatcher = Dispatcher(syncer, FakeEventSource(), sync_timeout=60)
        running(dispatcher)

        dispatcher.queue.add("ns1/web")

        assert wait_until(lambda: len(seen) == 1)
        assert 0 < seen[0] <= 60

    def test_stop_waits_for_running_syncs(self, running):
        started = threading.Event()
        finished = threading.Event()

        def blocking(deadline, key):
            started.set()
            while not deadline.done():
                time.sleep(0.01)
            finished.set()

        syncer = FakeSyncer(sync_fn=blocking)
        dispatcher = Dispatcher(syncer, FakeEventSource(), sync_timeout=30)
        stop, thread = running(dispatcher)

        dispatcher.queue.add("ns1/web")
        assert started.wait(timeout=5)

        stop.set()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert finished.is_set()
        assert dispatcher.queue.shutting_down is True
