"""
sap_b1.core.connection - High-level connection management
=========================================================

Wires configuration, storage, sessions, pool, breaker, retries and the
client together for one connection.
"""

from __future__ import annotations

from typing import Optional, Union
import logging
import os

from sap_b1.core.client import ServiceLayerClient
from sap_b1.core.config import ConnectionConfig
from sap_b1.core.events import EventDispatcher
from sap_b1.core.health import HealthCheck, HealthCheckResult
from sap_b1.core.transport import HttpTransport
from sap_b1.pool.pool import SessionPool
from sap_b1.pool.store import PoolStore
from sap_b1.resilience.circuit_breaker import CircuitBreaker
from sap_b1.resilience.retry import RetryExecutor
from sap_b1.session.manager import SessionManager
from sap_b1.session.store import SessionStore
from sap_b1.storage.backend import MemoryBackend, StorageBackend

logger = logging.getLogger("sap_b1.connection")


class ConnectionContext:
    """
    One configured Service Layer connection with its resilience stack.

    Parameters
    ----------
    config : ConnectionConfig, optional
        Full configuration. Built from ``SAP_B1_*`` environment variables
        (overridden by the explicit arguments below) when omitted.
    base_url, company_db, username, password : str, optional
        Falls back to SAP_B1_URL / SAP_B1_COMPANY_DB / SAP_B1_USERNAME /
        SAP_B1_PASSWORD env vars.
    verify : bool or str, optional
        SSL verification. Falls back to SAP_B1_VERIFY_SSL.
    redis_url : str, optional
        Share state through Redis instead of process memory. Falls back to
        SAP_B1_REDIS_URL.
    backend : StorageBackend, optional
        Explicit backend; wins over ``redis_url``
    events : EventDispatcher, optional
        Observer list for engine notifications
    transport : HttpTransport, optional
        Explicit HTTP transport

    Examples
    --------
    >>> # Using explicit credentials
    >>> conn = ConnectionContext(
    ...     base_url="https://sap.example.com:50000",
    ...     company_db="SBODEMOUS",
    ...     username="manager",
    ...     password="secret",
    ... )

    >>> # Using environment variables
    >>> conn = ConnectionContext()  # reads from SAP_B1_* env vars

    >>> # As context manager
    >>> with ConnectionContext() as conn:
    ...     items = conn.client.get("Items", params={"$top": 10})
    """

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        *,
        base_url: Optional[str] = None,
        company_db: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify: Optional[Union[bool, str]] = None,
        name: str = "default",
        redis_url: Optional[str] = None,
        backend: Optional[StorageBackend] = None,
        events: Optional[EventDispatcher] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self.config = config or ConnectionConfig.from_env(
            name,
            base_url=base_url,
            company_db=company_db,
            username=username,
            password=password,
            verify=verify,
        )
        self.backend = backend or self._build_backend(redis_url or os.environ.get("SAP_B1_REDIS_URL"))
        self.events = events or EventDispatcher()

        cfg = self.config
        self.transport = transport or HttpTransport(verify=cfg.verify, user_agent=cfg.user_agent)
        self.session_store = SessionStore(self.backend, cfg.session.prefix)
        self.manager = SessionManager(cfg, self.session_store, self.transport, self.events)
        self.breaker = CircuitBreaker(self.backend, cfg.circuit_breaker, cfg.name, self.events)
        self.executor = RetryExecutor(cfg.retry, self.breaker if cfg.circuit_breaker.enabled else None)
        self.pool: Optional[SessionPool] = None
        if cfg.pool.enabled:
            self.pool = SessionPool(PoolStore(self.backend, cfg.pool.prefix), self.manager, self.events)
        self.client = ServiceLayerClient(
            self.manager,
            {cfg.name: self.executor},
            pool=self.pool,
            transport=self.transport,
            connection=cfg.name,
        )
        self._health = HealthCheck(self.client)

    @staticmethod
    def _build_backend(redis_url: Optional[str]) -> StorageBackend:
        if not redis_url:
            return MemoryBackend()
        # Import here so redis stays an optional extra
        from sap_b1.storage.redis_backend import RedisBackend
        logger.info("using redis backend at %s", redis_url.split("@")[-1])
        return RedisBackend.from_url(redis_url)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def base_url(self) -> str:
        """The configured base URL."""
        return self.config.base_url

    @property
    def company_db(self) -> str:
        return self.config.company_db

    def health(self) -> HealthCheckResult:
        return self._health.check(self.name)

    def close(self) -> None:
        """Close the HTTP transport. Sessions stay valid in the store."""
        self.transport.close()

    def __enter__(self) -> "ConnectionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
