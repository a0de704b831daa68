"""
sap_b1.session.data - Authenticated session value
=================================================
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional
import json
import time


@dataclass(frozen=True)
class SessionData:
    """
    One authenticated Service Layer session.

    Timestamps are epoch seconds. The TTL is applied client-side at login;
    the server never tells us when the session will expire.

    Attributes
    ----------
    session_id : str
        ``B1SESSION`` cookie value
    route_id : str
        ``ROUTEID`` cookie value (load balancer affinity)
    company_db : str
        Company database the session is logged into
    created_at, expires_at : float
        Epoch seconds

    Examples
    --------
    >>> s = SessionData.from_login_response({"SessionId": "abc"}, "SBODEMOUS", ttl=600)
    >>> 599 <= s.remaining_ttl() <= 600
    True
    """
    session_id: str
    route_id: str
    company_db: str
    created_at: float
    expires_at: float

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")

    @classmethod
    def from_login_response(
        cls,
        payload: Mapping[str, Any],
        company_db: str,
        ttl: int = 1680,
        route_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> "SessionData":
        now = time.time() if now is None else now
        return cls(
            session_id=str(payload.get("SessionId") or ""),
            route_id=route_id or str(payload.get("RouteId") or ""),
            company_db=company_db,
            created_at=now,
            expires_at=now + ttl,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionData":
        return cls(
            session_id=data["session_id"],
            route_id=data.get("route_id", ""),
            company_db=data.get("company_db", ""),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionData":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Session data must be a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def remaining_ttl(self, now: Optional[float] = None) -> float:
        """Seconds until expiry, never negative."""
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.remaining_ttl(now) <= 0

    def is_near_expiry(self, threshold: float = 300, now: Optional[float] = None) -> bool:
        return self.remaining_ttl(now) <= threshold

    def headers(self) -> Dict[str, str]:
        """Cookie header to attach to Service Layer calls."""
        cookie = f"B1SESSION={self.session_id}"
        if self.route_id:
            cookie += f"; ROUTEID={self.route_id}"
        return {"Cookie": cookie}

    @property
    def short_id(self) -> str:
        """Truncated id, safe for logs."""
        return self.session_id[:8] + "..." if len(self.session_id) > 8 else self.session_id
