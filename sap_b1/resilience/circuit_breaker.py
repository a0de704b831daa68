"""
sap_b1.resilience.circuit_breaker - Failure gate per scope
==========================================================

Closed -> Open after ``failure_threshold`` consecutive failures.
Open -> HalfOpen lazily, on the first read after ``open_duration``.
HalfOpen -> Closed after ``half_open_max_attempts`` successes in a row,
HalfOpen -> Open on any failure.

Only genuine service failures (connect errors, timeouts, 5xx) are
recorded as failures. A 4xx is the caller's mistake and counts as a
success.

State lives in the shared backend as one hash per scope, so every worker
process sees the same circuit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging
import time

from sap_b1.core.config import CircuitBreakerConfig
from sap_b1.core.events import CircuitBreakerStateChanged, EventDispatcher
from sap_b1.storage.backend import StorageBackend

logger = logging.getLogger("sap_b1.circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitStats:
    scope: str
    state: str
    failures: int = 0
    half_open_successes: int = 0
    total_successes: int = 0
    total_failures: int = 0
    opened_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_failure_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _float(value: Optional[str]) -> Optional[float]:
    return float(value) if value not in (None, "") else None


class CircuitBreaker:
    """
    Parameters
    ----------
    backend : StorageBackend
        Shared state
    config : CircuitBreakerConfig
        Thresholds and durations
    name : str
        Connection name; scopes are tracked per connection
    events : EventDispatcher, optional
        Receives ``CircuitBreakerStateChanged``
    clock : callable
        Wall clock in epoch seconds

    Examples
    --------
    >>> breaker = CircuitBreaker(MemoryBackend(), CircuitBreakerConfig(failure_threshold=2))
    >>> breaker.record_failure(); breaker.record_failure()
    >>> breaker.is_available()
    False
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "default",
        events: Optional[EventDispatcher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self.events = events or EventDispatcher()
        self._clock = clock

    def _key(self, scope: str) -> str:
        return f"{self.config.prefix}{self.name}:{scope}"

    def _data(self, scope: str) -> Dict[str, str]:
        return self.backend.hgetall(self._key(scope))

    def _touch(self, scope: str) -> None:
        self.backend.expire(self._key(scope), self.config.state_ttl)

    # ---------------- reads ----------------

    def get_state(self, scope: str = "*") -> CircuitState:
        data = self._data(scope)
        state = CircuitState(data.get("state", CircuitState.CLOSED.value))
        if state is CircuitState.OPEN:
            opened_at = _float(data.get("opened_at")) or 0.0
            if self._clock() - opened_at >= self.config.open_duration:
                self._transition(scope, state, CircuitState.HALF_OPEN, int(data.get("failures", 0)))
                return CircuitState.HALF_OPEN
        return state

    def is_available(self, scope: str = "*") -> bool:
        """False only while the circuit is Open."""
        if not self.config.enabled:
            return True
        return self.get_state(scope) is not CircuitState.OPEN

    def retry_after(self, scope: str = "*") -> float:
        """Seconds until an Open circuit will let a probe through."""
        opened_at = _float(self.backend.hget(self._key(scope), "opened_at"))
        if opened_at is None:
            return 0.0
        return max(0.0, self.config.open_duration - (self._clock() - opened_at))

    def stats(self, scope: str = "*") -> CircuitStats:
        state = self.get_state(scope)
        data = self._data(scope)
        return CircuitStats(
            scope=scope,
            state=state.value,
            failures=int(data.get("failures", 0)),
            half_open_successes=int(data.get("half_open_successes", 0)),
            total_successes=int(data.get("total_successes", 0)),
            total_failures=int(data.get("total_failures", 0)),
            opened_at=_float(data.get("opened_at")),
            last_success_at=_float(data.get("last_success_at")),
            last_failure_at=_float(data.get("last_failure_at")),
        )

    # ---------------- outcomes ----------------

    def record_success(self, scope: str = "*") -> None:
        """Record a successful (or 4xx) response, however slow it was."""
        if not self.config.enabled:
            return
        key = self._key(scope)
        state = self.get_state(scope)
        self.backend.hincrby(key, "total_successes")
        self.backend.hset(key, "last_success_at", str(self._clock()))

        if state is CircuitState.HALF_OPEN:
            successes = self.backend.hincrby(key, "half_open_successes")
            if successes >= self.config.half_open_max_attempts:
                self._transition(scope, state, CircuitState.CLOSED, 0)
        elif state is CircuitState.CLOSED:
            self.backend.hset(key, "failures", "0")
        self._touch(scope)

    def record_failure(self, scope: str = "*") -> None:
        """Record a connect failure, timeout or 5xx response."""
        if not self.config.enabled:
            return
        key = self._key(scope)
        state = self.get_state(scope)
        failures = self.backend.hincrby(key, "failures")
        self.backend.hincrby(key, "total_failures")
        self.backend.hset(key, "last_failure_at", str(self._clock()))

        if state is CircuitState.CLOSED and failures >= self.config.failure_threshold:
            self._transition(scope, state, CircuitState.OPEN, failures)
        elif state is CircuitState.HALF_OPEN:
            self._transition(scope, state, CircuitState.OPEN, failures)
        self._touch(scope)

    def reset(self, scope: str = "*") -> None:
        """Force the circuit closed, keeping the lifetime totals."""
        state = CircuitState(self.backend.hget(self._key(scope), "state") or CircuitState.CLOSED.value)
        self._transition(scope, state, CircuitState.CLOSED, 0)
        self._touch(scope)

    # ---------------- transitions ----------------

    def _transition(self, scope: str, previous: CircuitState, new: CircuitState, failures: int) -> None:
        key = self._key(scope)
        if new is CircuitState.OPEN:
            self.backend.hset_many(key, {
                "state": new.value,
                "opened_at": str(self._clock()),
                "half_open_successes": "0",
            })
        elif new is CircuitState.HALF_OPEN:
            self.backend.hset_many(key, {"state": new.value, "half_open_successes": "0"})
        else:
            self.backend.hset_many(key, {"state": new.value, "failures": "0", "half_open_successes": "0"})
            self.backend.hdel(key, "opened_at")
        self._touch(scope)

        if previous is new:
            return
        logger.warning(
            "circuit %s:%s %s -> %s (failures=%s)",
            self.name, scope, previous.value, new.value, failures,
        )
        self.events.dispatch(CircuitBreakerStateChanged(scope, previous.value, new.value, failures))
