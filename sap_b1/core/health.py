"""
sap_b1.core.health - Connection health probe
============================================

A connection is healthy when a session can be obtained and a cheap
Service Layer call succeeds with it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
import logging
import time

from sap_b1.core.errors import AuthenticationError, ConnectionFailure, SapB1Error

logger = logging.getLogger("sap_b1.health")

PROBE_PATH = "CompanyService_GetCompanyInfo"


@dataclass(frozen=True)
class HealthCheckResult:
    healthy: bool
    message: str
    connection: Optional[str] = None
    response_time_ms: Optional[float] = None
    company_db: Optional[str] = None
    session_id: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "unhealthy"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "healthy": self.healthy,
            "message": self.message,
            "response_time_ms": round(self.response_time_ms, 2) if self.response_time_ms is not None else None,
            "connection": self.connection,
            "company_db": self.company_db,
            "session_id": self.session_id,
            "checked_at": self.checked_at.isoformat(),
        }
        return {k: v for k, v in data.items() if v is not None}


class HealthCheck:
    """
    Parameters
    ----------
    client : ServiceLayerClient
        Client whose manager and dispatch path are probed

    Examples
    --------
    >>> result = HealthCheck(client).check("default")
    >>> result.status
    'healthy'
    """

    def __init__(self, client) -> None:
        self.client = client

    def check(self, connection: Optional[str] = None) -> HealthCheckResult:
        """Never raises; failures are reported in the result."""
        connection = connection or self.client.connection
        try:
            return self._probe(connection)
        except AuthenticationError as e:
            message = f"Authentication failed: {e}"
        except ConnectionFailure as e:
            message = f"Connection failed: {e}"
        except SapB1Error as e:
            message = f"Health check failed: {e}"
        logger.warning("health check for connection=%s failed: %s", connection, message)
        return HealthCheckResult(False, message, connection)

    def check_all(self, connections: Optional[Iterable[str]] = None) -> Dict[str, HealthCheckResult]:
        names = list(connections) if connections is not None else self.client.manager.connections
        return {name: self.check(name) for name in names}

    def is_healthy(self, connections: Optional[Iterable[str]] = None) -> bool:
        return all(r.healthy for r in self.check_all(connections).values())

    def _probe(self, connection: str) -> HealthCheckResult:
        t0 = time.perf_counter()
        session = self.client.manager.get_session(connection)
        self.client.post(PROBE_PATH, connection=connection)
        dt = (time.perf_counter() - t0) * 1000.0
        return HealthCheckResult(
            healthy=True,
            message="SAP B1 connection is healthy",
            connection=connection,
            response_time_ms=dt,
            company_db=session.company_db,
            session_id=session.short_id,
        )
