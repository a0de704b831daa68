"""
Tests for sap_b1.pool module.
"""

import threading
import time

import pytest
from unittest.mock import patch

from sap_b1.core.errors import AuthenticationError, PoolExhaustedError
from sap_b1.core.events import PoolSessionExpired, PoolWarmedUp, SessionAcquired, SessionReleased
from sap_b1.pool.algorithms import RoundRobinAlgorithm
from sap_b1.pool.pool import SessionPool
from sap_b1.pool.pooled import PooledSession, PoolStatus
from sap_b1.pool.store import PoolStore
from sap_b1.session.data import SessionData


def _expired_session(session_id="old"):
    now = time.time()
    return SessionData(session_id, "", "SBODEMOUS", now - 100, now - 1)


@pytest.fixture
def pool_store(backend):
    return PoolStore(backend)


@pytest.fixture
def pool(pool_store, manager):
    return SessionPool(pool_store, manager)


class TestPooledSession:
    """Tests for PooledSession transitions."""

    def test_acquire_release_cycle(self):
        p = PooledSession(session=SessionData("a", "", "DB", 0.0, 10.0), created_at=1.0)
        active = p.with_acquired(now=5.0)
        assert active.is_active()
        assert active.use_count == 1
        assert active.acquired_at == 5.0
        idle = active.with_released(now=6.0)
        assert idle.is_idle()
        assert idle.released_at == 6.0
        assert idle.use_count == 1

    def test_expired_by_ttl_or_status(self):
        p = PooledSession(session=SessionData("a", "", "DB", 0.0, 10.0))
        assert p.is_expired(now=10.0)
        assert not p.is_expired(now=9.0)
        assert p.with_expired().is_expired(now=0.0)

    def test_dict_round_trip(self):
        p = PooledSession(session=SessionData("a", ".n1", "DB", 0.0, 10.0), use_count=3, created_at=2.0)
        assert PooledSession.from_dict(p.to_dict()) == p


class TestPoolStore:
    """Tests for PoolStore transitions and capacity."""

    def _add(self, store, session_id, status=PoolStatus.IDLE):
        now = time.time()
        pooled = PooledSession(session=SessionData(session_id, "", "DB", now, now + 600), status=status)
        store.add("default", pooled)
        return pooled

    def test_acquire_next_moves_to_active(self, pool_store):
        self._add(pool_store, "a")
        pooled = pool_store.acquire_next("default", RoundRobinAlgorithm())
        assert pooled.session_id == "a"
        assert pooled.use_count == 1
        assert pool_store.status_of("default", "a") == PoolStatus.ACTIVE
        assert pool_store.acquire_next("default", RoundRobinAlgorithm()) is None

    def test_release_returns_to_idle(self, pool_store):
        self._add(pool_store, "a", PoolStatus.ACTIVE)
        assert pool_store.release("default", "a")
        record = pool_store.get("default", "a")
        assert record.status == PoolStatus.IDLE
        assert record.released_at is not None
        assert not pool_store.release("default", "a")

    def test_mark_expired_never_returns(self, pool_store):
        self._add(pool_store, "a")
        assert pool_store.mark_expired("default", "a")
        assert not pool_store.mark_expired("default", "a")
        assert pool_store.acquire_next("default", RoundRobinAlgorithm()) is None
        assert pool_store.get("default", "a").status == PoolStatus.EXPIRED

    def test_remove_expired(self, pool_store):
        self._add(pool_store, "a")
        self._add(pool_store, "b")
        pool_store.mark_expired("default", "a")
        assert pool_store.remove_expired("default") == 1
        assert pool_store.count("default") == 1

    def test_reserve_slot_respects_max(self, pool_store):
        assert pool_store.reserve_slot("default", 2)
        assert pool_store.reserve_slot("default", 2)
        assert not pool_store.reserve_slot("default", 2)
        assert pool_store.slots_in_use("default") == 2
        pool_store.release_slot("default")
        assert pool_store.slots_in_use("default") == 1

    def test_release_slot_never_goes_negative(self, pool_store):
        pool_store.release_slot("default")
        assert pool_store.slots_in_use("default") == 0

    def test_connections_are_isolated(self, pool_store):
        self._add(pool_store, "a")
        assert pool_store.count("other") == 0
        assert pool_store.acquire_next("other", RoundRobinAlgorithm()) is None

    def test_acquire_next_counts_uses_made_after_selection(self, pool_store):
        self._add(pool_store, "a")

        class ReleasedMeanwhile(RoundRobinAlgorithm):
            """Another worker takes and returns the session right after selection."""

            def __init__(self):
                super().__init__()
                self.interleaved = False

            def select(self, sessions):
                chosen = super().select(sessions)
                if chosen is not None and not self.interleaved:
                    self.interleaved = True
                    other = pool_store.acquire_next("default", RoundRobinAlgorithm())
                    pool_store.release("default", other.session_id)
                return chosen

        pooled = pool_store.acquire_next("default", ReleasedMeanwhile())
        assert pooled.use_count == 2
        assert pooled.released_at is not None
        assert pool_store.get("default", "a").use_count == 2

    def test_remove_all_keeps_reservations_in_flight(self, pool_store):
        pool_store.reserve_slot("default", 3)
        self._add(pool_store, "a")
        pool_store.reserve_slot("default", 3)
        assert pool_store.remove_all("default") == 1
        assert pool_store.count("default") == 0
        assert pool_store.slots_in_use("default") == 1


class TestSessionPool:
    """Tests for the SessionPool facade."""

    def test_acquire_creates_session_when_empty(self, pool, transport, recorded_events):
        pooled = pool.acquire()
        assert pooled.session_id == "sess-0001"
        assert pooled.status == PoolStatus.ACTIVE
        assert pool.active() == 1
        assert transport.logins == 1
        assert SessionAcquired("default", "sess-0001") in recorded_events

    def test_release_then_reuse(self, pool, transport, recorded_events):
        first = pool.acquire()
        pool.release("default", first)
        second = pool.acquire()
        assert second.session_id == first.session_id
        assert second.use_count == 2
        assert transport.logins == 1
        assert SessionReleased("default", first.session_id, False) in recorded_events

    def test_release_accepts_session_id(self, pool):
        pooled = pool.acquire()
        pool.release("default", pooled.session_id)
        assert pool.available() == 1

    def test_invalidated_release_expires(self, pool, recorded_events):
        pooled = pool.acquire()
        pool.release("default", pooled, invalidate=True)
        assert pool.available() == 0
        assert pool.stats().expired == 1
        assert PoolSessionExpired("default", pooled.session_id) in recorded_events
        assert SessionReleased("default", pooled.session_id, True) in recorded_events

    def test_acquire_skips_expired_idle_session(self, pool, pool_store, recorded_events):
        pool_store.add("default", PooledSession(session=_expired_session("old")))
        pooled = pool.acquire()
        assert pooled.session_id == "sess-0001"
        assert PoolSessionExpired("default", "old") in recorded_events
        assert pool_store.status_of("default", "old") == PoolStatus.EXPIRED

    def test_exhausted_pool_returns_none(self, pool):
        held = [pool.acquire(timeout=0) for _ in range(3)]
        assert all(held)
        assert pool.acquire(timeout=0) is None

    def test_exhausted_pool_waits_until_deadline(self, pool_store, manager):
        ticks = iter(range(100))
        sleeps = []
        pool = SessionPool(pool_store, manager, sleep=sleeps.append, clock=lambda: float(next(ticks)))
        for _ in range(3):
            pool.acquire(timeout=0)
        assert pool.acquire(timeout=2) is None
        assert sleeps == [0.01]

    def test_checkout_raises_when_exhausted(self, pool):
        for _ in range(3):
            pool.acquire(timeout=0)
        with pytest.raises(PoolExhaustedError) as exc:
            with pool.checkout(timeout=0):
                pass
        assert exc.value.connection == "default"

    def test_checkout_releases(self, pool):
        with pool.checkout() as pooled:
            assert pool.active() == 1
        assert pool.active() == 0
        assert pool.available() == 1
        assert pool.store.get("default", pooled.session_id).status == PoolStatus.IDLE

    def test_creation_failure_releases_slot(self, pool, manager, pool_store):
        with patch.object(manager, "create_new_session", side_effect=AuthenticationError("bad")):
            with pytest.raises(AuthenticationError):
                pool.acquire()
        assert pool_store.slots_in_use("default") == 0
        assert pool.size() == 0

    def test_warm_up_to_min_size(self, pool, transport, recorded_events):
        assert pool.warm_up() == 2
        assert pool.available() == 2
        assert transport.logins == 2
        assert PoolWarmedUp("default", 2) in recorded_events

    def test_warm_up_is_capped_by_max_size(self, pool):
        assert pool.warm_up(count=10) == 3
        assert pool.warm_up(count=10) == 0
        assert pool.size() == 3

    def test_warm_up_skips_when_locked(self, pool, pool_store):
        pool_store.acquire_lock("default", 30)
        assert pool.warm_up() == 0
        assert pool.size() == 0

    def test_warm_up_stops_on_login_failure(self, pool, manager, pool_store):
        with patch.object(manager, "create_new_session", side_effect=AuthenticationError("bad")):
            assert pool.warm_up() == 0
        assert pool_store.slots_in_use("default") == 0

    def test_drain_logs_out_every_session(self, pool, transport, pool_store):
        pool.warm_up()
        assert pool.drain() == 2
        logouts = [c for c in transport.calls if c[1].endswith("/Logout")]
        assert len(logouts) == 2
        assert pool.size() == 0
        assert pool_store.slots_in_use("default") == 0

    def test_drain_during_creation_keeps_max_size(self, pool, manager, pool_store, transport):
        login = manager.create_new_session
        drained = []

        def login_while_draining(connection):
            if not drained:
                drained.append(pool.drain())
            return login(connection)

        with patch.object(manager, "create_new_session", side_effect=login_while_draining):
            first = pool.acquire(timeout=0)
            others = [pool.acquire(timeout=0) for _ in range(5)]

        assert first is not None
        assert len([p for p in others if p is not None]) == 2
        assert pool.size() == 3
        assert pool_store.slots_in_use("default") == 3
        assert transport.logins == 3

    def test_drain_skips_when_locked(self, pool, pool_store):
        pool.warm_up()
        pool_store.acquire_lock("default", 30)
        assert pool.drain() == 0
        assert pool.size() == 2

    def test_release_of_unknown_session_sends_no_event(self, pool, recorded_events):
        pooled = pool.acquire()
        pool.release("default", pooled)
        pool.release("default", pooled)
        pool.drain()
        pool.release("default", pooled, invalidate=True)
        released = [e for e in recorded_events if isinstance(e, SessionReleased)]
        assert released == [SessionReleased("default", pooled.session_id, False)]

    def test_cleanup_removes_expired_and_replenishes(self, pool, pool_store, transport):
        pool.warm_up()
        victim = pool_store.get_idle("default")[0]
        pool_store.mark_expired("default", victim.session_id)
        assert pool.cleanup() == 1
        assert pool.size() == 2
        assert transport.logins == 3

    def test_cleanup_expires_lapsed_idle_sessions(self, pool, pool_store, recorded_events):
        pool_store.add("default", PooledSession(session=_expired_session("old")))
        assert pool.cleanup() == 1
        assert PoolSessionExpired("default", "old") in recorded_events

    def test_stats(self, pool):
        pool.warm_up()
        pool.acquire()
        stats = pool.stats()
        assert stats.total == 2
        assert stats.active == 1
        assert stats.idle == 1
        assert stats.max_size == 3
        assert stats.algorithm == "round_robin"

    def test_concurrent_acquire_never_shares_a_session(self, pool):
        pool.warm_up(count=3)
        held = set()
        guard = threading.Lock()
        violations = []

        def worker():
            for _ in range(10):
                pooled = pool.acquire(timeout=5)
                if pooled is None:
                    violations.append("timeout")
                    return
                with guard:
                    if pooled.session_id in held:
                        violations.append(pooled.session_id)
                    held.add(pooled.session_id)
                time.sleep(0.001)
                with guard:
                    held.discard(pooled.session_id)
                pool.release("default", pooled)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert violations == []
        assert pool.size() == 3
        assert pool.available() == 3

    def test_use_counts_survive_concurrent_acquire_and_release(self, pool, pool_store):
        pool.warm_up(count=3)
        acquired = []
        guard = threading.Lock()

        def worker():
            for _ in range(20):
                pooled = pool.acquire(timeout=5)
                if pooled is None:
                    continue
                with guard:
                    acquired.append(pooled.session_id)
                pool.release("default", pooled)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert sum(p.use_count for p in pool_store.get_all("default")) == len(acquired)
        for pooled in pool_store.get_all("default"):
            assert pooled.use_count == acquired.count(pooled.session_id)
