import asyncio
from unittest.mock import patch

import pytest
import redis

from visit_tracker.errors import SessionBusy, StoreUnavailable
from visit_tracker.session.serializer import KeyedSerializer
from visit_tracker.store import MemoryKVStore

from conftest import FakeClock


async def test_same_key_sections_do_not_overlap():
    serializer = KeyedSerializer(MemoryKVStore(), wait_seconds=2.0)
    inside = 0
    peak = 0

    async def worker():
        nonlocal inside, peak
        async with serializer.hold("lock:session:u1:g1"):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(worker() for _ in range(10)))
    assert peak == 1
    # registry is emptied once nobody holds or waits
    assert serializer.active_keys() == 0


async def test_different_keys_run_in_parallel():
    serializer = KeyedSerializer(MemoryKVStore())
    both_inside = asyncio.Event()
    entered = []

    async def worker(key):
        async with serializer.hold(key):
            entered.append(key)
            if len(entered) == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1.0)

    await asyncio.gather(worker("lock:a"), worker("lock:b"))
    assert sorted(entered) == ["lock:a", "lock:b"]


async def test_lease_held_elsewhere_times_out_as_busy():
    store = MemoryKVStore()
    # another instance holds the lease
    assert store.acquire_lease("lock:session:u1:g1", "other-instance", 60_000)
    serializer = KeyedSerializer(store, wait_seconds=0.05, poll_base=0.01)

    with pytest.raises(SessionBusy):
        async with serializer.hold("lock:session:u1:g1"):
            pass
    assert serializer.active_keys() == 0


async def test_lease_released_after_exception():
    store = MemoryKVStore()
    serializer = KeyedSerializer(store)

    with pytest.raises(RuntimeError):
        async with serializer.hold("lock:k"):
            raise RuntimeError("boom")

    assert store.acquire_lease("lock:k", "next", 1000)


async def test_lease_confirm_extends_an_owned_lease():
    clock = FakeClock()
    store = MemoryKVStore(clock=clock)
    serializer = KeyedSerializer(store, lease_ttl_ms=1000)

    async with serializer.hold("lock:k") as lease:
        clock.now += 0.9
        lease.confirm()
        clock.now += 0.9
        lease.confirm()
        assert not store.acquire_lease("lock:k", "other", 1000)


async def test_lease_confirm_raises_once_taken_over():
    clock = FakeClock()
    store = MemoryKVStore(clock=clock)
    serializer = KeyedSerializer(store, lease_ttl_ms=1000)

    with pytest.raises(SessionBusy):
        async with serializer.hold("lock:k") as lease:
            clock.now += 1.5
            assert store.acquire_lease("lock:k", "other", 60_000)
            lease.confirm()
    # the new owner's lease survives our release
    assert not store.acquire_lease("lock:k", "third", 1000)


async def test_lease_confirm_store_error_is_unavailable():
    store = MemoryKVStore()
    serializer = KeyedSerializer(store)

    with pytest.raises(StoreUnavailable):
        async with serializer.hold("lock:k") as lease:
            with patch.object(store, "renew_lease", side_effect=redis.ConnectionError("down")):
                lease.confirm()
