"""
sap_b1.pool.pool - Session pool facade
======================================

Hands out pre-authenticated sessions to concurrent workers. Each
Service Layer login consumes a license slot, so the pool bounds how many
sessions exist per connection and reuses them across calls.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Union
import logging
import time

from sap_b1.core.config import PoolConfig
from sap_b1.core.errors import PoolExhaustedError
from sap_b1.core.events import (
    EventDispatcher,
    PoolSessionExpired,
    PoolWarmedUp,
    SessionAcquired,
    SessionReleased,
)
from sap_b1.pool.algorithms import DistributionAlgorithm, get_algorithm
from sap_b1.pool.pooled import PooledSession, PoolStatus
from sap_b1.pool.store import PoolStore
from sap_b1.session.data import SessionData
from sap_b1.session.manager import SessionManager

logger = logging.getLogger("sap_b1.pool")


@dataclass(frozen=True)
class PoolStats:
    total: int
    active: int
    idle: int
    expired: int
    min_size: int
    max_size: int
    algorithm: str


class SessionPool:
    """
    Concurrency-safe pool of sessions per connection.

    Parameters
    ----------
    store : PoolStore
        Shared pool storage
    manager : SessionManager
        Used to log in new sessions and to log out drained ones; also
        supplies each connection's ``PoolConfig``
    events : EventDispatcher, optional
        Receives acquire/release/expire/warm-up notifications

    Examples
    --------
    >>> pool = SessionPool(PoolStore(backend), manager)
    >>> pool.warm_up("default")
    2
    >>> with pool.checkout("default", timeout=5) as pooled:
    ...     headers = pooled.session.headers()
    """

    def __init__(
        self,
        store: PoolStore,
        manager: SessionManager,
        events: Optional[EventDispatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.manager = manager
        self.events = events or manager.events
        self._sleep = sleep
        self._clock = clock
        self._algorithms: Dict[str, DistributionAlgorithm] = {}

    # ---------------- config ----------------

    def config(self, connection: str) -> PoolConfig:
        return self.manager.config(connection).pool

    def _algorithm(self, connection: str) -> DistributionAlgorithm:
        if connection not in self._algorithms:
            self._algorithms[connection] = get_algorithm(self.config(connection).algorithm)
        return self._algorithms[connection]

    # ---------------- acquire / release ----------------

    def acquire(self, connection: str = "default", timeout: Optional[float] = None) -> Optional[PooledSession]:
        """
        Take a session, creating one while below ``max_size``.

        Parameters
        ----------
        timeout : float, optional
            Seconds to wait for a session when the pool is full. Defaults to
            the pool's ``wait_timeout``; 0 means do not wait.

        Returns
        -------
        PooledSession or None
            None when no session became available within ``timeout``

        Raises
        ------
        AuthenticationError
            If logging in a new session fails
        """
        config = self.config(connection)
        algorithm = self._algorithm(connection)
        timeout = config.wait_timeout if timeout is None else timeout
        deadline = self._clock() + timeout

        while True:
            pooled = self.store.acquire_next(connection, algorithm)
            if pooled is not None:
                if config.validation_on_acquire and pooled.session.is_expired():
                    self.store.mark_expired(connection, pooled.session_id)
                    self.events.dispatch(PoolSessionExpired(connection, pooled.session_id))
                    continue
                self.events.dispatch(SessionAcquired(connection, pooled.session_id))
                return pooled

            if self.store.reserve_slot(connection, config.max_size):
                pooled = self._create_active(connection)
                self.events.dispatch(SessionAcquired(connection, pooled.session_id))
                return pooled

            if timeout <= 0 or self._clock() >= deadline:
                logger.warning("pool exhausted for connection=%s after %ss", connection, timeout)
                return None
            self._sleep(config.poll_interval)

    def release(
        self,
        connection: str,
        session: Union[PooledSession, SessionData, str],
        invalidate: bool = False,
    ) -> None:
        """
        Return a session to the pool.

        The session is expired instead of returned to idle if ``invalidate``
        is set (the backend rejected it) or its own TTL has lapsed.
        """
        session_id = _session_id(session)
        pooled = self.store.get(connection, session_id)
        lapsed = pooled is not None and pooled.session.is_expired()
        invalidated = invalidate or lapsed
        if invalidated:
            moved = self.store.mark_expired(connection, session_id)
            if moved:
                self.events.dispatch(PoolSessionExpired(connection, session_id))
        else:
            moved = self.store.release(connection, session_id)
        if not moved:
            logger.debug("session %s was not active in pool for connection=%s", session_id[:8], connection)
            return
        self.events.dispatch(SessionReleased(connection, session_id, invalidated))

    @contextmanager
    def checkout(self, connection: str = "default", timeout: Optional[float] = None) -> Iterator[PooledSession]:
        """
        Context manager around ``acquire``/``release``.

        Raises
        ------
        PoolExhaustedError
            If no session became available within the timeout
        """
        pooled = self.acquire(connection, timeout)
        if pooled is None:
            raise PoolExhaustedError(connection, self.config(connection).wait_timeout if timeout is None else timeout)
        try:
            yield pooled
        finally:
            self.release(connection, pooled)

    # ---------------- lifecycle ----------------

    def warm_up(self, connection: str = "default", count: Optional[int] = None) -> int:
        """
        Pre-create idle sessions up to ``count`` (default ``min_size``).

        Returns
        -------
        int
            Number of sessions created
        """
        config = self.config(connection)
        target = min(config.max_size, config.min_size if count is None else count)
        token = self.store.acquire_lock(connection, config.lock_timeout)
        if token is None:
            logger.info("warm-up for connection=%s already running elsewhere", connection)
            return 0
        created = 0
        try:
            while self.store.count(connection) < target:
                if not self.store.reserve_slot(connection, config.max_size):
                    break
                try:
                    session = self.manager.create_new_session(connection)
                except Exception:
                    self.store.release_slot(connection)
                    logger.exception("warm-up login failed for connection=%s", connection)
                    break
                self.store.add(connection, PooledSession(session=session))
                created += 1
        finally:
            self.store.release_lock(connection, token)

        if created:
            logger.info("warmed up %s session(s) for connection=%s", created, connection)
            self.events.dispatch(PoolWarmedUp(connection, created))
        return created

    def drain(self, connection: str = "default") -> int:
        """
        Remove every session of the connection, logging each out remotely
        on a best-effort basis.

        Returns
        -------
        int
            Number of sessions removed; 0 when a warm-up or drain holds
            the pool lock
        """
        config = self.config(connection)
        token = self.store.acquire_lock(connection, config.lock_timeout)
        if token is None:
            logger.info("drain for connection=%s skipped, pool lock is held elsewhere", connection)
            return 0
        try:
            for pooled in self.store.get_all(connection):
                if not pooled.session.is_expired():
                    self.manager.logout_session(connection, pooled.session)
            removed = self.store.remove_all(connection)
        finally:
            self.store.release_lock(connection, token)
        logger.info("drained %s session(s) for connection=%s", removed, connection)
        return removed

    def cleanup(self, connection: str = "default") -> int:
        """
        Expire idle sessions whose TTL lapsed, then remove every expired
        entry. Refills the pool to ``min_size`` when configured to.

        Returns
        -------
        int
            Number of sessions removed
        """
        for pooled in self.store.get_idle(connection):
            if pooled.session.is_expired() and self.store.mark_expired(connection, pooled.session_id):
                self.events.dispatch(PoolSessionExpired(connection, pooled.session_id))
        removed = self.store.remove_expired(connection)

        config = self.config(connection)
        if config.replenish_on_cleanup and self.store.count(connection) < config.min_size:
            self.warm_up(connection, config.min_size)
        return removed

    # ---------------- stats ----------------

    def size(self, connection: str = "default") -> int:
        return self.store.count(connection)

    def available(self, connection: str = "default") -> int:
        return self.store.count_by_status(connection, PoolStatus.IDLE)

    def active(self, connection: str = "default") -> int:
        return self.store.count_by_status(connection, PoolStatus.ACTIVE)

    def stats(self, connection: str = "default") -> PoolStats:
        config = self.config(connection)
        return PoolStats(
            total=self.store.count(connection),
            active=self.store.count_by_status(connection, PoolStatus.ACTIVE),
            idle=self.store.count_by_status(connection, PoolStatus.IDLE),
            expired=self.store.count_by_status(connection, PoolStatus.EXPIRED),
            min_size=config.min_size,
            max_size=config.max_size,
            algorithm=config.algorithm,
        )

    # ---------------- helpers ----------------

    def _create_active(self, connection: str) -> PooledSession:
        try:
            session = self.manager.create_new_session(connection)
        except Exception:
            self.store.release_slot(connection)
            raise
        pooled = PooledSession(session=session, status=PoolStatus.ACTIVE).with_acquired()
        self.store.add(connection, pooled)
        logger.debug("created pooled session %s for connection=%s", session.short_id, connection)
        return pooled


def _session_id(session: Union[PooledSession, SessionData, str]) -> str:
    if isinstance(session, PooledSession):
        return session.session_id
    if isinstance(session, SessionData):
        return session.session_id
    return session
