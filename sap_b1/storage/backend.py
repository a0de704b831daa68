"""
sap_b1.storage.backend - Shared key-value backend
=================================================

The session store, pool store and circuit breaker keep all shared state
behind this interface. Every mutation is one atomic backend primitive;
callers never do read-modify-write on a plain value.

``MemoryBackend`` serves single-process deployments and tests;
``RedisBackend`` (see ``sap_b1.storage.redis_backend``) serves several
processes sharing one pool.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Set
import threading
import time
import uuid


class StorageBackend(ABC):
    """Atomic primitives required by the engine."""

    # ---------------- plain keys ----------------

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    @abstractmethod
    def delete(self, *keys: str) -> int: ...

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Set ``key`` only if it does not exist, with expiry. True if set."""

    @abstractmethod
    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value``."""

    @abstractmethod
    def incr(self, key: str, amount: int = 1) -> int: ...

    @abstractmethod
    def expire(self, key: str, ttl: float) -> None: ...

    @abstractmethod
    def keys(self, prefix: str) -> List[str]: ...

    # ---------------- hashes ----------------

    @abstractmethod
    def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    def hset(self, key: str, field: str, value: str) -> None: ...

    @abstractmethod
    def hset_many(self, key: str, mapping: Mapping[str, str]) -> None: ...

    @abstractmethod
    def hdel(self, key: str, *fields: str) -> int: ...

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]: ...

    @abstractmethod
    def hlen(self, key: str) -> int: ...

    @abstractmethod
    def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    # ---------------- sets ----------------

    @abstractmethod
    def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def smove(self, source: str, destination: str, member: str) -> bool:
        """Atomically move ``member``; False if it was not in ``source``."""

    @abstractmethod
    def smembers(self, key: str) -> Set[str]: ...

    @abstractmethod
    def sismember(self, key: str, member: str) -> bool: ...

    @abstractmethod
    def scard(self, key: str) -> int: ...

    # ---------------- locks ----------------

    def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        """
        Take a named lock with a maximum hold time.

        Returns
        -------
        str or None
            Owner token to pass to ``release_lock``, or None if the lock is held
        """
        token = uuid.uuid4().hex
        if self.set_if_absent(key, token, ttl):
            return token
        return None

    def release_lock(self, key: str, token: Optional[str]) -> bool:
        """Release a lock previously returned by ``acquire_lock``."""
        if not token:
            return False
        return self.delete_if_equals(key, token)


class MemoryBackend(StorageBackend):
    """
    In-process backend. One re-entrant lock makes every primitive atomic.

    Expired keys are dropped lazily on access.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    # ---------------- helpers ----------------

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return False
        return key in self._data

    def _container(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            self._data[key] = kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"key {key!r} holds a {type(value).__name__}, not a {kind.__name__}")
        return value

    def _peek(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            return kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"key {key!r} holds a {type(value).__name__}, not a {kind.__name__}")
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self._data and not self._data[key]:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    # ---------------- plain keys ----------------

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if not self._alive(key):
                return None
            value = self._data[key]
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = value
            if ttl is not None:
                self._expiry[key] = self._clock() + ttl
            else:
                self._expiry.pop(key, None)

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    removed += 1
                self._data.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._alive(key):
                return False
            self.set(key, value, ttl)
            return True

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._alive(key) and self._data[key] == value:
                self.delete(key)
                return True
            return False

    def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            current = int(self._data[key]) if self._alive(key) else 0
            current += amount
            self._data[key] = str(current)
            return current

    def expire(self, key: str, ttl: float) -> None:
        with self._lock:
            if self._alive(key):
                self._expiry[key] = self._clock() + ttl

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k)]

    # ---------------- hashes ----------------

    def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            return self._peek(key, dict).get(field)

    def hset(self, key: str, field: str, value: str) -> None:
        with self._lock:
            self._container(key, dict)[field] = value

    def hset_many(self, key: str, mapping: Mapping[str, str]) -> None:
        with self._lock:
            self._container(key, dict).update(mapping)

    def hdel(self, key: str, *fields: str) -> int:
        with self._lock:
            h = self._peek(key, dict)
            removed = 0
            for f in fields:
                if h.pop(f, None) is not None:
                    removed += 1
            self._drop_if_empty(key)
            return removed

    def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._peek(key, dict))

    def hlen(self, key: str) -> int:
        with self._lock:
            return len(self._peek(key, dict))

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            h = self._container(key, dict)
            value = int(h.get(field, "0")) + amount
            h[field] = str(value)
            return value

    # ---------------- sets ----------------

    def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            s = self._container(key, set)
            before = len(s)
            s.update(members)
            return len(s) - before

    def srem(self, key: str, *members: str) -> int:
        with self._lock:
            s = self._peek(key, set)
            removed = 0
            for m in members:
                if m in s:
                    s.discard(m)
                    removed += 1
            self._drop_if_empty(key)
            return removed

    def smove(self, source: str, destination: str, member: str) -> bool:
        with self._lock:
            src = self._peek(source, set)
            if member not in src:
                return False
            src.discard(member)
            self._drop_if_empty(source)
            self._container(destination, set).add(member)
            return True

    def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._peek(key, set))

    def sismember(self, key: str, member: str) -> bool:
        with self._lock:
            return member in self._peek(key, set)

    def scard(self, key: str) -> int:
        with self._lock:
            return len(self._peek(key, set))
