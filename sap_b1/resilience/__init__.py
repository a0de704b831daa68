"""
sap_b1.resilience - Failure handling around Service Layer calls
===============================================================

- CircuitBreaker: stops calling an unhealthy scope, probes for recovery
- RetryExecutor: bounded exponential backoff with jitter
"""

from sap_b1.resilience.circuit_breaker import CircuitBreaker, CircuitState, CircuitStats
from sap_b1.resilience.retry import RetryExecutor, parse_retry_after

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    "RetryExecutor",
    "parse_retry_after",
]
