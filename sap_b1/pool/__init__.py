"""
sap_b1.pool - Session pooling
=============================

- PooledSession / PoolStatus: session plus pool bookkeeping
- RoundRobinAlgorithm, LeastConnectionsAlgorithm, LifoAlgorithm: idle selection
- PoolStore: shared storage with atomic take-and-activate
- SessionPool: acquire / release / warm-up / drain / cleanup / stats
"""

from sap_b1.pool.pooled import PooledSession, PoolStatus
from sap_b1.pool.algorithms import (
    DistributionAlgorithm,
    LeastConnectionsAlgorithm,
    LifoAlgorithm,
    RoundRobinAlgorithm,
    get_algorithm,
)
from sap_b1.pool.store import PoolStore
from sap_b1.pool.pool import PoolStats, SessionPool

__all__ = [
    "PooledSession",
    "PoolStatus",
    "DistributionAlgorithm",
    "RoundRobinAlgorithm",
    "LeastConnectionsAlgorithm",
    "LifoAlgorithm",
    "get_algorithm",
    "PoolStore",
    "PoolStats",
    "SessionPool",
]
