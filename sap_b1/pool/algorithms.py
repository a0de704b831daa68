"""
sap_b1.pool.algorithms - Idle session selection
===============================================

A closed set of strategies choosing which idle session to hand out next.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence, Type

from sap_b1.core.errors import PoolConfigurationError
from sap_b1.pool.pooled import PooledSession


def _released(s: PooledSession) -> float:
    return s.released_at or 0.0


class DistributionAlgorithm(ABC):
    """Picks one session out of the current idle set."""

    name: str = ""

    @abstractmethod
    def select(self, sessions: Sequence[PooledSession]) -> Optional[PooledSession]:
        """Selected session, or None if ``sessions`` is empty."""


class RoundRobinAlgorithm(DistributionAlgorithm):
    """
    Least recently released first, so every session takes its turn.
    Ties resolve by pool creation time, then id, to keep the rotation stable.
    """

    name = "round_robin"

    def select(self, sessions: Sequence[PooledSession]) -> Optional[PooledSession]:
        if not sessions:
            return None
        return min(sessions, key=lambda s: (_released(s), s.created_at, s.session_id))


class LeastConnectionsAlgorithm(DistributionAlgorithm):
    """Lowest use count first."""

    name = "least_connections"

    def select(self, sessions: Sequence[PooledSession]) -> Optional[PooledSession]:
        if not sessions:
            return None
        return min(sessions, key=lambda s: (s.use_count, _released(s), s.session_id))


class LifoAlgorithm(DistributionAlgorithm):
    """Most recently released first; keeps few sessions warm."""

    name = "lifo"

    def select(self, sessions: Sequence[PooledSession]) -> Optional[PooledSession]:
        if not sessions:
            return None
        return max(sessions, key=lambda s: (_released(s), s.created_at, s.session_id))


ALGORITHMS: Dict[str, Type[DistributionAlgorithm]] = {
    RoundRobinAlgorithm.name: RoundRobinAlgorithm,
    LeastConnectionsAlgorithm.name: LeastConnectionsAlgorithm,
    LifoAlgorithm.name: LifoAlgorithm,
}


def get_algorithm(name: str) -> DistributionAlgorithm:
    try:
        return ALGORITHMS[name]()
    except KeyError:
        raise PoolConfigurationError(
            f"Invalid algorithm '{name}'. Supported: {', '.join(ALGORITHMS)}"
        ) from None
