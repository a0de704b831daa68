"""
sap_b1.pool.store - Shared pool storage
=======================================

Layout per connection (``<prefix><connection>``):

- ``:sessions``        hash, session id -> JSON record
- ``:uses``            hash, session id -> acquisition counter
- ``:status:<status>`` one set per status; set membership is authoritative
- ``:slots``           capacity counter (sessions stored or being created)
- ``:lock``            pool-wide lock for warm-up / drain

Taking an idle session is a single set move (idle -> active), so two
workers can never be handed the same session.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional
import json
import logging

from sap_b1.pool.algorithms import DistributionAlgorithm
from sap_b1.pool.pooled import PooledSession, PoolStatus
from sap_b1.storage.backend import StorageBackend

logger = logging.getLogger("sap_b1.pool")


class PoolStore:
    """
    Parameters
    ----------
    backend : StorageBackend
        Shared key-value backend
    prefix : str
        Key prefix
    """

    def __init__(self, backend: StorageBackend, prefix: str = "sap_b1_pool:") -> None:
        self.backend = backend
        self.prefix = prefix

    # ---------------- keys ----------------

    def _pool_key(self, connection: str) -> str:
        return f"{self.prefix}{connection}:sessions"

    def _uses_key(self, connection: str) -> str:
        return f"{self.prefix}{connection}:uses"

    def _status_key(self, connection: str, status: PoolStatus) -> str:
        return f"{self.prefix}{connection}:status:{status.value}"

    def _slots_key(self, connection: str) -> str:
        return f"{self.prefix}{connection}:slots"

    def _lock_key(self, connection: str) -> str:
        return f"{self.prefix}{connection}:lock"

    def _write(self, connection: str, pooled: PooledSession) -> None:
        self.backend.hset(self._pool_key(connection), pooled.session_id, json.dumps(pooled.to_dict()))

    def _decode(self, connection: str, raw: str, status: Optional[PoolStatus] = None) -> PooledSession:
        record = PooledSession.from_dict(json.loads(raw))
        uses = self.backend.hget(self._uses_key(connection), record.session_id)
        if uses is not None:
            record = replace(record, use_count=int(uses))
        return replace(record, status=status) if status is not None else record

    # ---------------- records ----------------

    def add(self, connection: str, pooled: PooledSession) -> None:
        """Store a new session under its current status."""
        self._write(connection, pooled)
        self.backend.hset(self._uses_key(connection), pooled.session_id, str(pooled.use_count))
        self.backend.sadd(self._status_key(connection, pooled.status), pooled.session_id)

    def get(self, connection: str, session_id: str) -> Optional[PooledSession]:
        raw = self.backend.hget(self._pool_key(connection), session_id)
        if raw is None:
            return None
        return self._decode(connection, raw, self.status_of(connection, session_id))

    def status_of(self, connection: str, session_id: str) -> Optional[PoolStatus]:
        for status in PoolStatus:
            if self.backend.sismember(self._status_key(connection, status), session_id):
                return status
        return None

    def get_all(self, connection: str) -> List[PooledSession]:
        sessions = []
        for session_id in self.backend.hgetall(self._pool_key(connection)):
            pooled = self.get(connection, session_id)
            if pooled is not None:
                sessions.append(pooled)
        return sessions

    def get_by_status(self, connection: str, status: PoolStatus) -> List[PooledSession]:
        sessions = []
        for session_id in self.backend.smembers(self._status_key(connection, status)):
            raw = self.backend.hget(self._pool_key(connection), session_id)
            if raw is None:
                continue
            sessions.append(self._decode(connection, raw, status))
        return sessions

    def get_idle(self, connection: str) -> List[PooledSession]:
        return self.get_by_status(connection, PoolStatus.IDLE)

    def get_active(self, connection: str) -> List[PooledSession]:
        return self.get_by_status(connection, PoolStatus.ACTIVE)

    def count(self, connection: str) -> int:
        return self.backend.hlen(self._pool_key(connection))

    def count_by_status(self, connection: str, status: PoolStatus) -> int:
        return self.backend.scard(self._status_key(connection, status))

    # ---------------- transitions ----------------

    def acquire_next(self, connection: str, algorithm: DistributionAlgorithm) -> Optional[PooledSession]:
        """
        Select an idle session and activate it in one atomic move.

        If another worker wins the move for the selected session, the idle
        set is re-read and selection starts over. The record is re-read
        after the move, since the snapshot used for selection may be stale.
        """
        idle_key = self._status_key(connection, PoolStatus.IDLE)
        active_key = self._status_key(connection, PoolStatus.ACTIVE)
        while True:
            selected = algorithm.select(self.get_idle(connection))
            if selected is None:
                return None
            if not self.backend.smove(idle_key, active_key, selected.session_id):
                logger.debug("session %s taken concurrently, reselecting", selected.session.short_id)
                continue
            raw = self.backend.hget(self._pool_key(connection), selected.session_id)
            if raw is None:
                # Removed by a drain between selection and move.
                self.backend.srem(active_key, selected.session_id)
                continue
            uses = self.backend.hincrby(self._uses_key(connection), selected.session_id, 1)
            current = PooledSession.from_dict(json.loads(raw))
            acquired = replace(current.with_acquired(), use_count=uses)
            self._write(connection, acquired)
            return acquired

    def release(self, connection: str, session_id: str) -> bool:
        """Move an active session back to idle. False if it was not active."""
        pooled = self.get(connection, session_id)
        if pooled is None or pooled.status != PoolStatus.ACTIVE:
            return False
        # Record first: once in the idle set it may be taken immediately.
        self._write(connection, pooled.with_released())
        return self.backend.smove(
            self._status_key(connection, PoolStatus.ACTIVE),
            self._status_key(connection, PoolStatus.IDLE),
            session_id,
        )

    def mark_expired(self, connection: str, session_id: str) -> bool:
        expired_key = self._status_key(connection, PoolStatus.EXPIRED)
        moved = False
        for status in (PoolStatus.IDLE, PoolStatus.ACTIVE):
            if self.backend.smove(self._status_key(connection, status), expired_key, session_id):
                moved = True
                break
        if moved:
            pooled = self.get(connection, session_id)
            if pooled is not None:
                self._write(connection, pooled.with_expired())
        return moved

    def remove(self, connection: str, session_id: str) -> bool:
        """Delete one session and give its capacity slot back."""
        removed = self.backend.hdel(self._pool_key(connection), session_id) > 0
        for status in PoolStatus:
            self.backend.srem(self._status_key(connection, status), session_id)
        self.backend.hdel(self._uses_key(connection), session_id)
        if removed:
            self.release_slot(connection)
        return removed

    def remove_expired(self, connection: str) -> int:
        removed = 0
        for session_id in self.backend.smembers(self._status_key(connection, PoolStatus.EXPIRED)):
            if self.remove(connection, session_id):
                removed += 1
        return removed

    def remove_all(self, connection: str) -> int:
        """
        Delete every stored session one by one.

        Slots reserved by sessions still being created stay counted, so
        ``max_size`` holds once those sessions are added.
        """
        removed = 0
        for session_id in list(self.backend.hgetall(self._pool_key(connection))):
            if self.remove(connection, session_id):
                removed += 1
        return removed

    # ---------------- capacity ----------------

    def reserve_slot(self, connection: str, max_size: int) -> bool:
        """Claim capacity for one new session; False when the pool is full."""
        key = self._slots_key(connection)
        if self.backend.incr(key) > max_size:
            self.backend.incr(key, -1)
            return False
        return True

    def release_slot(self, connection: str) -> None:
        key = self._slots_key(connection)
        if self.backend.incr(key, -1) < 0:
            self.backend.incr(key, 1)

    def slots_in_use(self, connection: str) -> int:
        return max(0, int(self.backend.get(self._slots_key(connection)) or 0))

    # ---------------- lock ----------------

    def acquire_lock(self, connection: str, timeout: float = 30) -> Optional[str]:
        return self.backend.acquire_lock(self._lock_key(connection), timeout)

    def release_lock(self, connection: str, token: Optional[str]) -> None:
        self.backend.release_lock(self._lock_key(connection), token)
