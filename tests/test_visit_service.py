import asyncio
from unittest.mock import patch

import pytest
import redis

from visit_tracker.errors import AlreadyFinalized, NoOpenSession, SessionBusy, StoreUnavailable, ValidationError
from visit_tracker.locations import LocationCatalog
from visit_tracker.obs.metrics import get_counter
from visit_tracker.service import VisitService
from visit_tracker.session.engine import SessionAction
from visit_tracker.store import MemoryKVStore
from visit_tracker.types import AnchorType, SessionStatus

from conftest import T0, MINUTE, HOUR, FakeClock

GYM = "golds-venice"


async def test_scenario_checkin_upgrade_checkout(service):
    t = await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    assert t.action == SessionAction.CREATED
    assert t.record.confidence_score == pytest.approx(0.15)

    t = await service.checkin("u1", GYM, AnchorType.NFC, T0 + MINUTE)
    assert t.action == SessionAction.UPGRADED
    assert t.record.confidence_score == pytest.approx(0.40)
    assert [a.type for a in t.record.anchors] == [AnchorType.GEOFENCE, AnchorType.NFC]

    t = await service.checkout("u1", GYM, T0 + HOUR)
    assert t.record.duration_minutes == 60
    assert t.record.status == SessionStatus.FINALIZED

    history = await service.recent_sessions("u1")
    assert [s.id for s in history] == [t.record.id]


async def test_scenario_tap_in_tap_out(service):
    t = await service.tap("u1", GYM, T0)
    assert t.action == SessionAction.NFC_CHECKIN

    t = await service.tap("u1", GYM, T0 + 10 * 1000)
    assert t.action == SessionAction.NFC_CHECKOUT
    assert t.record.duration_minutes == 0
    assert len(await service.recent_sessions("u1")) == 1


async def test_scenario_checkin_after_window_creates_new_session(service):
    first = await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    # the stale record is still physically in the store
    assert await service.current("u1", GYM) is not None

    t = await service.checkin("u1", GYM, AnchorType.NFC, T0 + 5 * HOUR)
    assert t.action == SessionAction.CREATED
    assert t.record.id != first.record.id


async def test_checkout_twice_is_rejected_and_history_unchanged(service):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    done = await service.checkout("u1", GYM, T0 + HOUR)

    for i in range(3):
        with pytest.raises(AlreadyFinalized) as exc:
            await service.checkout("u1", GYM, T0 + HOUR + (i + 1) * MINUTE)
        assert exc.value.session_id == done.record.id

    assert len(await service.recent_sessions("u1")) == 1


async def test_checkout_without_session(service):
    with pytest.raises(NoOpenSession):
        await service.checkout("u1", GYM, T0)
    assert await service.recent_sessions("u1") == []


async def test_duplicate_does_not_write(service):
    await service.checkin("u1", GYM, AnchorType.NFC, T0)
    with patch.object(service.sessions, "put", wraps=service.sessions.put) as put:
        t = await service.checkin("u1", GYM, AnchorType.NFC, T0 + MINUTE)
    assert t.action == SessionAction.DUPLICATE
    put.assert_not_called()


async def test_concurrent_distinct_anchors_are_all_kept(service):
    anchors = [AnchorType.GEOFENCE, AnchorType.NFC, AnchorType.WIFI_BSSID]
    results = await asyncio.gather(*(
        service.checkin("u1", GYM, a, T0 + i) for i, a in enumerate(anchors)
    ))

    actions = sorted(r.action.value for r in results)
    assert actions == ["created", "upgraded", "upgraded"]
    assert len({r.record.id for r in results}) == 1

    stored = await service.current("u1", GYM)
    assert sorted(a.type.value for a in stored.anchors) == ["geofence", "nfc", "wifi_bssid"]
    assert stored.confidence_score == pytest.approx(0.50)


async def test_concurrent_checkins_open_one_session(service):
    results = await asyncio.gather(*(
        service.checkin("u1", GYM, AnchorType.GEOFENCE, T0) for _ in range(8)
    ))
    assert sum(r.action == SessionAction.CREATED for r in results) == 1
    assert len({r.record.id for r in results}) == 1


async def test_concurrent_checkouts_finalize_once(service):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    results = await asyncio.gather(
        *(service.checkout("u1", GYM, T0 + HOUR) for _ in range(4)),
        return_exceptions=True,
    )
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert all(isinstance(r, AlreadyFinalized) for r in results if isinstance(r, Exception))
    assert len(await service.recent_sessions("u1")) == 1


async def test_locations_are_independent(service):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    t = await service.checkin("u1", "jfm-boxing", AnchorType.GEOFENCE, T0 + MINUTE)
    assert t.action == SessionAction.CREATED

    await service.checkout("u1", GYM, T0 + HOUR)
    await service.checkout("u1", "jfm-boxing", T0 + 2 * HOUR)

    history = await service.recent_sessions("u1")
    # most recent first
    assert [s.location_id for s in history] == ["jfm-boxing", GYM]
    assert len(await service.recent_sessions("u1", limit=1)) == 1


async def test_cleanup_keeps_listed_sessions(service):
    ids = []
    for i in range(3):
        await service.tap("u1", GYM, T0 + i * HOUR)
        done = await service.tap("u1", GYM, T0 + i * HOUR + 30 * MINUTE)
        ids.append(done.record.id)

    result = await service.cleanup_history("u1", [ids[1], "SC-UNKNOWN"])
    assert result.before == 3
    assert [s.id for s in result.kept] == [ids[1]]
    assert result.removed == 2
    assert [s.id for s in await service.recent_sessions("u1")] == [ids[1]]


async def test_actions_are_counted(service):
    before = get_counter("session_actions_total", {"action": "nfc_checkin"})
    await service.tap("counted-user", GYM, T0)
    assert get_counter("session_actions_total", {"action": "nfc_checkin"}) == before + 1


def failing_set(store, prefix):
    real_set = store.set

    def set_(key, value, ttl_seconds):
        if key.startswith(prefix):
            raise redis.ConnectionError("write refused")
        return real_set(key, value, ttl_seconds)

    return set_


async def test_failed_history_write_leaves_session_open_for_retry(service, store):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)

    with patch.object(store, "set", side_effect=failing_set(store, "history:")):
        with pytest.raises(StoreUnavailable):
            await service.checkout("u1", GYM, T0 + HOUR)

    pending = await service.current("u1", GYM)
    assert pending.status == SessionStatus.PENDING

    done = await service.checkout("u1", GYM, T0 + HOUR + MINUTE)
    assert done.record.id == pending.id
    assert [s.id for s in await service.recent_sessions("u1")] == [pending.id]


async def test_failed_session_write_after_history_is_not_duplicated(service, store):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)

    with patch.object(store, "set", side_effect=failing_set(store, "session:")):
        with pytest.raises(StoreUnavailable):
            await service.checkout("u1", GYM, T0 + HOUR)

    done = await service.checkout("u1", GYM, T0 + 2 * HOUR)
    history = await service.recent_sessions("u1")
    assert [s.id for s in history] == [done.record.id]
    # the retried checkout's end time wins
    assert history[0].duration_minutes == 120


async def test_busy_history_lease_does_not_finalize(service, store):
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)
    assert store.acquire_lease("lock:history:u1", "other-instance", 60_000)

    with pytest.raises(SessionBusy):
        await service.checkout("u1", GYM, T0 + HOUR)
    assert (await service.current("u1", GYM)).status == SessionStatus.PENDING

    store.release_lease("lock:history:u1", "other-instance")
    await service.checkout("u1", GYM, T0 + HOUR)
    assert len(await service.recent_sessions("u1")) == 1


async def test_lost_lease_aborts_the_write(engine, config):
    clock = FakeClock(T0 / 1000)
    store = MemoryKVStore(clock=clock)
    service = VisitService(store, LocationCatalog(), engine=engine, config=config)
    await service.checkin("u1", GYM, AnchorType.GEOFENCE, T0)

    real_get = store.get

    def slow_get(key):
        value = real_get(key)
        if key.startswith("session:"):
            # the read outlives the lease and another worker takes over
            clock.now += config.LEASE_TTL_MS / 1000 + 1
            assert store.acquire_lease("lock:session:u1:golds-venice", "other-instance", 60_000)
        return value

    with patch.object(store, "get", side_effect=slow_get):
        with pytest.raises(SessionBusy):
            await service.checkin("u1", GYM, AnchorType.NFC, T0 + MINUTE)

    stored = await service.current("u1", GYM)
    assert [a.type for a in stored.anchors] == [AnchorType.GEOFENCE]


async def test_unknown_location_is_a_validation_error(service, store):
    with pytest.raises(ValidationError) as exc:
        await service.tap("u1", "moon-base", T0)
    assert exc.value.extra["validLocations"] == ["golds-venice", "jfm-boxing", "gracie-originals"]
    assert store.get("session:u1:moon-base") is None
