"""
sap_b1.core.config - Connection configuration
=============================================

Immutable configuration built once per connection and handed to every
component's constructor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union
import os

from sap_b1.core.errors import PoolConfigurationError

POOL_ALGORITHMS = ("round_robin", "least_connections", "lifo")


@dataclass(frozen=True)
class SessionConfig:
    """
    Session lifecycle settings.

    Parameters
    ----------
    ttl : int
        Client-side session lifetime in seconds. The Service Layer drops idle
        sessions after 30 minutes; 1680s leaves a safety margin.
    refresh_threshold : int
        Refresh proactively once the remaining TTL drops to this many seconds.
    lock_timeout : int
        Maximum hold time of the refresh lock in seconds.
    lock_wait : float
        Fixed wait while another worker is refreshing.
    keyword_fallback : bool
        Also detect session errors by message keywords when no session
        error code is present.
    prefix : str
        Key prefix in the storage backend.
    """
    ttl: int = 1680
    refresh_threshold: int = 300
    lock_timeout: int = 10
    lock_wait: float = 0.5
    keyword_fallback: bool = True
    prefix: str = "sap_b1_session:"


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy for dispatched calls.

    Delays are ``min(max_delay_ms, sleep_ms * 2**(attempt-1))`` plus up to
    ``jitter`` (fraction) of random extra delay.
    """
    times: int = 3
    sleep_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: float = 0.1
    when: Tuple[int, ...] = (500, 502, 503, 504)
    honor_retry_after: bool = True


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = True
    failure_threshold: int = 5
    open_duration: int = 30
    half_open_max_attempts: int = 3
    state_ttl: int = 3600
    prefix: str = "sap_b1_circuit_breaker:"


@dataclass(frozen=True)
class PoolConfig:
    """
    Session pool settings.

    Raises
    ------
    PoolConfigurationError
        If sizes, timeouts or the algorithm name are invalid.
    """
    enabled: bool = False
    min_size: int = 2
    max_size: int = 10
    wait_timeout: float = 30
    algorithm: str = "round_robin"
    validation_on_acquire: bool = True
    poll_interval: float = 0.1
    lock_timeout: int = 30
    replenish_on_cleanup: bool = True
    prefix: str = "sap_b1_pool:"

    def __post_init__(self) -> None:
        if self.min_size < 0:
            raise PoolConfigurationError("min_size must be >= 0")
        if self.max_size < 1:
            raise PoolConfigurationError("max_size must be >= 1")
        if self.min_size > self.max_size:
            raise PoolConfigurationError("min_size cannot be greater than max_size")
        if self.wait_timeout < 0:
            raise PoolConfigurationError("wait_timeout must be >= 0")
        if self.poll_interval <= 0:
            raise PoolConfigurationError("poll_interval must be > 0")
        if self.algorithm not in POOL_ALGORITHMS:
            raise PoolConfigurationError(
                f"Invalid algorithm '{self.algorithm}'. Supported: {', '.join(POOL_ALGORITHMS)}"
            )


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Everything needed to talk to one Service Layer company database.

    Parameters
    ----------
    base_url : str
        Service Layer host, e.g. "https://sap.example.com:50000"
    company_db : str
        Company database (tenant) to log into
    username, password : str
        Service Layer credentials
    name : str
        Logical connection name used as the storage key
    language : int
        Login language code
    verify : bool or str
        SSL verification (True, False, or path to CA bundle)
    timeout : float
        Total request timeout in seconds
    connect_timeout : float
        Connect timeout in seconds
    api_path : str
        Path of the Service Layer root below ``base_url``

    Examples
    --------
    >>> cfg = ConnectionConfig(
    ...     base_url="https://sap.example.com:50000",
    ...     company_db="SBODEMOUS",
    ...     username="manager",
    ...     password="secret",
    ...     pool=PoolConfig(enabled=True, max_size=5),
    ... )
    >>> cfg.service_root
    'https://sap.example.com:50000/b1s/v1/'
    """
    base_url: str
    company_db: str
    username: str
    password: str
    name: str = "default"
    language: int = 23
    verify: Union[bool, str] = True
    timeout: float = 30.0
    connect_timeout: float = 10.0
    user_agent: str = "sap-b1-sdk/0.1"
    api_path: str = "/b1s/v1"
    session: SessionConfig = field(default_factory=SessionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)

    def __post_init__(self) -> None:
        if not self.base_url or self.base_url.strip("/") == "":
            raise ValueError(
                "Missing base_url. Set SAP_B1_URL environment variable "
                "or pass base_url parameter."
            )
        if not (self.company_db and self.username and self.password):
            raise ValueError(
                "Missing credentials. Set SAP_B1_COMPANY_DB/SAP_B1_USERNAME/SAP_B1_PASSWORD "
                "environment variables, or pass company_db/username/password parameters."
            )

    @property
    def service_root(self) -> str:
        """Absolute URL of the Service Layer root, with trailing slash."""
        return self.base_url.rstrip("/") + self.service_path + "/"

    @property
    def service_path(self) -> str:
        """Path of the service root, used inside batch parts and next links."""
        return "/" + self.api_path.strip("/")

    @classmethod
    def from_env(cls, name: str = "default", **overrides) -> "ConnectionConfig":
        """
        Build a configuration from ``SAP_B1_*`` environment variables.

        Explicit keyword arguments win over the environment.
        """
        env = os.environ
        pool = PoolConfig(
            enabled=_env_bool("SAP_B1_POOL_ENABLED", False),
            min_size=int(env.get("SAP_B1_POOL_MIN_SIZE", "2")),
            max_size=int(env.get("SAP_B1_POOL_MAX_SIZE", "10")),
            wait_timeout=float(env.get("SAP_B1_POOL_WAIT_TIMEOUT", "30")),
            algorithm=env.get("SAP_B1_POOL_ALGORITHM", "round_robin"),
        )
        values = dict(
            name=name,
            base_url=env.get("SAP_B1_URL", ""),
            company_db=env.get("SAP_B1_COMPANY_DB", ""),
            username=env.get("SAP_B1_USERNAME", ""),
            password=env.get("SAP_B1_PASSWORD", ""),
            language=int(env.get("SAP_B1_LANGUAGE", "23")),
            verify=_env_bool("SAP_B1_VERIFY_SSL", True),
            timeout=float(env.get("SAP_B1_TIMEOUT", "30")),
            connect_timeout=float(env.get("SAP_B1_CONNECT_TIMEOUT", "10")),
            api_path=env.get("SAP_B1_API_PATH", "/b1s/v1"),
            pool=pool,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _env_bool(key: str, default: bool) -> bool:
    raw: Optional[str] = os.environ.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")
