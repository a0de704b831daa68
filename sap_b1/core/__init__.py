"""
sap_b1.core - Core connection and dispatch functionality
"""

from sap_b1.core.config import (
    CircuitBreakerConfig,
    ConnectionConfig,
    PoolConfig,
    RetryConfig,
    SessionConfig,
)
from sap_b1.core.errors import (
    AuthenticationError,
    BatchError,
    BatchPartialFailureError,
    CircuitOpenError,
    ClientError,
    ConnectionFailure,
    PoolConfigurationError,
    PoolExhaustedError,
    RetryExhaustedError,
    SapB1Error,
    ServerError,
    ServiceLayerError,
    SessionExpiredError,
)
from sap_b1.core.events import EventDispatcher
from sap_b1.core.transport import HttpTransport, TransportResponse
from sap_b1.core.client import ServiceLayerClient
from sap_b1.core.health import HealthCheck, HealthCheckResult
from sap_b1.core.connection import ConnectionContext

__all__ = [
    "SessionConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "PoolConfig",
    "ConnectionConfig",
    "SapB1Error",
    "ConnectionFailure",
    "ServiceLayerError",
    "ClientError",
    "ServerError",
    "SessionExpiredError",
    "AuthenticationError",
    "PoolConfigurationError",
    "PoolExhaustedError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "BatchError",
    "BatchPartialFailureError",
    "EventDispatcher",
    "HttpTransport",
    "TransportResponse",
    "ServiceLayerClient",
    "HealthCheck",
    "HealthCheckResult",
    "ConnectionContext",
]
