"""
sap_b1.pool.pooled - Session plus pool bookkeeping
==================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import time

from sap_b1.session.data import SessionData


class PoolStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PooledSession:
    """
    A ``SessionData`` with pool status and usage counters.

    Lifecycle: created IDLE -> ACTIVE once per acquisition -> IDLE on
    release, or EXPIRED when its TTL lapses or the backend rejects it.
    Expired entries are never handed out again.
    """
    session: SessionData
    status: PoolStatus = PoolStatus.IDLE
    acquired_at: Optional[float] = None
    released_at: Optional[float] = None
    use_count: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def is_idle(self) -> bool:
        return self.status == PoolStatus.IDLE

    def is_active(self) -> bool:
        return self.status == PoolStatus.ACTIVE

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.status == PoolStatus.EXPIRED or self.session.is_expired(now)

    def with_acquired(self, now: Optional[float] = None) -> "PooledSession":
        return replace(
            self,
            status=PoolStatus.ACTIVE,
            acquired_at=time.time() if now is None else now,
            use_count=self.use_count + 1,
        )

    def with_released(self, now: Optional[float] = None) -> "PooledSession":
        return replace(self, status=PoolStatus.IDLE, released_at=time.time() if now is None else now)

    def with_expired(self) -> "PooledSession":
        return replace(self, status=PoolStatus.EXPIRED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "status": self.status.value,
            "acquired_at": self.acquired_at,
            "released_at": self.released_at,
            "use_count": self.use_count,
            "pool_created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PooledSession":
        return cls(
            session=SessionData.from_dict(data["session"]),
            status=PoolStatus(data.get("status", PoolStatus.IDLE.value)),
            acquired_at=data.get("acquired_at"),
            released_at=data.get("released_at"),
            use_count=int(data.get("use_count", 0)),
            created_at=float(data.get("pool_created_at") or time.time()),
        )
