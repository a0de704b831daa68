"""
sap_b1.storage.redis_backend - Redis-backed shared state
========================================================

Lets many worker processes share one session pool, one refresh lock and
one circuit breaker. Locks use ``SET NX PX``; releases run a small Lua
script so a worker never deletes a lock that expired and was taken by
someone else.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Set
import math

import redis

from sap_b1.storage.backend import StorageBackend

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _ttl_ms(ttl: float) -> int:
    return max(1, int(math.ceil(ttl * 1000)))


class RedisBackend(StorageBackend):
    """
    Parameters
    ----------
    client : redis.Redis
        Client created with ``decode_responses=True``

    Examples
    --------
    >>> backend = RedisBackend.from_url("redis://localhost:6379/0")
    """

    def __init__(self, client: "redis.Redis") -> None:
        self.client = client
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisBackend":
        kwargs.setdefault("decode_responses", True)
        return cls(redis.Redis.from_url(url, **kwargs))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        if ttl is None:
            self.client.set(key, value)
        else:
            self.client.set(key, value, px=_ttl_ms(ttl))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        return bool(self.client.set(key, value, px=_ttl_ms(ttl), nx=True))

    def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(self._compare_and_delete(keys=[key], args=[value]))

    def incr(self, key: str, amount: int = 1) -> int:
        return int(self.client.incrby(key, amount))

    def expire(self, key: str, ttl: float) -> None:
        self.client.pexpire(key, _ttl_ms(ttl))

    def keys(self, prefix: str) -> List[str]:
        return list(self.client.scan_iter(match=f"{prefix}*"))

    def hget(self, key: str, field: str) -> Optional[str]:
        return self.client.hget(key, field)

    def hset(self, key: str, field: str, value: str) -> None:
        self.client.hset(key, field, value)

    def hset_many(self, key: str, mapping: Mapping[str, str]) -> None:
        if mapping:
            self.client.hset(key, mapping=dict(mapping))

    def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return int(self.client.hdel(key, *fields))

    def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.client.hgetall(key))

    def hlen(self, key: str) -> int:
        return int(self.client.hlen(key))

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(self.client.hincrby(key, field, amount))

    def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self.client.sadd(key, *members))

    def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self.client.srem(key, *members))

    def smove(self, source: str, destination: str, member: str) -> bool:
        return bool(self.client.smove(source, destination, member))

    def smembers(self, key: str) -> Set[str]:
        return set(self.client.smembers(key))

    def sismember(self, key: str, member: str) -> bool:
        return bool(self.client.sismember(key, member))

    def scard(self, key: str) -> int:
        return int(self.client.scard(key))
