"""
SAP Business One Service Layer Python SDK (sap_b1)
==================================================

A resilience engine for SAP Business One Service Layer integrations:
shared sessions with race-safe refresh, a concurrency-safe session pool,
a circuit breaker, retries with backoff, and OData $batch encoding.

Usage
-----
>>> from sap_b1 import ConnectionContext
>>>
>>> with ConnectionContext() as conn:
...     items = conn.client.get("Items", params={"$top": 10})
...
...     batch = conn.client.batch()
...     batch.get("Items('A001')")
...     with batch.changeset():
...         batch.post("Orders", {"CardCode": "C001", "DocumentLines": [...]})
...     results = batch.execute()

Subpackages
-----------
- sap_b1.core: Configuration, errors, transport, client and connection
- sap_b1.session: Session data, storage and lifecycle management
- sap_b1.pool: Session pool, distribution algorithms and pool storage
- sap_b1.resilience: Circuit breaker and retry executor
- sap_b1.batch: $batch multipart encoder and decoder
- sap_b1.storage: Memory and Redis key-value backends
- sap_b1.api: Optional FastAPI diagnostics gateway

"""

__version__ = "0.1.0"

# Core exports - available at package root
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
from sap_b1.core.connection import ConnectionContext
from sap_b1.core.client import ServiceLayerClient

# Convenience re-exports
from sap_b1.batch import BatchRequest, BatchResponse
from sap_b1.pool import SessionPool
from sap_b1.resilience import CircuitBreaker, RetryExecutor
from sap_b1.session import SessionData, SessionManager

__all__ = [
    # Version
    "__version__",
    # Config
    "SessionConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "PoolConfig",
    "ConnectionConfig",
    # Errors
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
    # Engine
    "ConnectionContext",
    "ServiceLayerClient",
    "SessionData",
    "SessionManager",
    "SessionPool",
    "CircuitBreaker",
    "RetryExecutor",
    "BatchRequest",
    "BatchResponse",
]
