import threading
import time

import pytest

from cikit.engine.pool import CapacityPool
from cikit.errors import InvalidResourceRequest, ProvisioningTimeout, StageCancelled
from cikit.model import ResourceRequest


def test_pool_tracks_usage_and_restores_capacity():
    pool = CapacityPool(cpu=4, memory=4096)
    lease = pool.acquire(ResourceRequest(cpu=3, memory=1024))

    assert pool.in_use == (3, 1024)
    assert pool.available == (1, 3072)

    pool.release(lease)
    pool.release(lease)
    assert pool.in_use == (0, 0)
    assert pool.available == (4, 4096)


def test_pool_rejects_requests_larger_than_capacity():
    pool = CapacityPool(cpu=2, memory=1024)
    with pytest.raises(InvalidResourceRequest, match=r"exceeds pool capacity cpu=2"):
        pool.acquire(ResourceRequest(cpu=3, memory=512))
    with pytest.raises(InvalidResourceRequest, match=r"memory"):
        pool.ticket(ResourceRequest(cpu=1, memory=2048))


def test_pool_rejects_invalid_budgets():
    with pytest.raises(InvalidResourceRequest):
        CapacityPool(cpu=0)
    with pytest.raises(InvalidResourceRequest):
        CapacityPool(memory=-1)


def test_unbounded_dimension_never_blocks():
    pool = CapacityPool(cpu=2)
    first = pool.acquire(ResourceRequest(cpu=1, memory=10**12))
    second = pool.acquire(ResourceRequest(cpu=1, memory=10**12))
    assert pool.available == (0, None)
    pool.release(first)
    pool.release(second)


def test_acquire_times_out_when_capacity_is_held():
    pool = CapacityPool(cpu=1, memory=100)
    held = pool.acquire(ResourceRequest(cpu=1, memory=100))

    with pytest.raises(ProvisioningTimeout) as excinfo:
        pool.acquire(ResourceRequest(cpu=1, memory=100), timeout=0.1)

    assert excinfo.value.waited_seconds is not None
    assert excinfo.value.waited_seconds >= 0.1
    pool.release(held)
    # The timed-out waiter left the queue, so a new request is granted immediately.
    pool.release(pool.acquire(ResourceRequest(cpu=1, memory=100), timeout=0.1))


def test_waiters_are_granted_in_ticket_order():
    pool = CapacityPool(cpu=2, memory=100)
    held = pool.acquire(ResourceRequest(cpu=2, memory=100))

    big = ResourceRequest(cpu=2, memory=10)
    small = ResourceRequest(cpu=1, memory=10)
    big_ticket = pool.ticket(big)
    small_ticket = pool.ticket(small)

    granted: list[str] = []
    lock = threading.Lock()

    def waiter(label, request, ticket):
        lease = pool.acquire(request, ticket=ticket, timeout=5)
        with lock:
            granted.append(label)
        time.sleep(0.1)
        pool.release(lease)

    threads = [
        threading.Thread(target=waiter, args=("small", small, small_ticket)),
        threading.Thread(target=waiter, args=("big", big, big_ticket)),
    ]
    for thread in threads:
        thread.start()
    time.sleep(0.1)
    # Nothing can be granted while the pool is full.
    assert granted == []

    pool.release(held)
    for thread in threads:
        thread.join(timeout=5)

    assert granted == ["big", "small"]
    assert pool.in_use == (0, 0)


def test_cancel_event_interrupts_waiter():
    pool = CapacityPool(cpu=1, memory=1)
    held = pool.acquire(ResourceRequest(cpu=1, memory=1))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(StageCancelled):
        pool.acquire(ResourceRequest(cpu=1, memory=1), cancel_event=cancel, timeout=5)

    pool.release(held)
    assert pool.in_use == (0, 0)


def test_cancelled_ticket_unblocks_followers():
    pool = CapacityPool(cpu=1, memory=1)
    first = pool.ticket(ResourceRequest(cpu=1, memory=1))
    second = pool.ticket(ResourceRequest(cpu=1, memory=1))

    pool.cancel_ticket(first)
    pool.cancel_ticket(first)

    lease = pool.acquire(ResourceRequest(cpu=1, memory=1), ticket=second, timeout=1)
    pool.release(lease)


def test_lease_context_manager_releases_on_error():
    pool = CapacityPool(cpu=1, memory=1)
    with pytest.raises(RuntimeError):
        with pool.lease(ResourceRequest(cpu=1, memory=1)):
            assert pool.in_use == (1, 1)
            raise RuntimeError("boom")
    assert pool.in_use == (0, 0)


def test_none_request_does_not_consume_capacity():
    pool = CapacityPool(cpu=1, memory=1)
    with pool.lease(None) as lease:
        assert lease.request is None
        assert pool.in_use == (0, 0)
