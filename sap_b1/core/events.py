"""
sap_b1.core.events - Engine notifications
=========================================

Fire-and-forget notifications emitted by the session manager, pool and
circuit breaker. Observers subscribe on an ``EventDispatcher``; the engine
never depends on a particular event bus.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Type
import logging
import threading

logger = logging.getLogger("sap_b1.events")


@dataclass(frozen=True)
class CircuitBreakerStateChanged:
    scope: str
    previous_state: str
    new_state: str
    failure_count: int


@dataclass(frozen=True)
class PoolWarmedUp:
    connection: str
    count: int


@dataclass(frozen=True)
class SessionAcquired:
    connection: str
    session_id: str


@dataclass(frozen=True)
class SessionReleased:
    connection: str
    session_id: str
    invalidated: bool = False


@dataclass(frozen=True)
class PoolSessionExpired:
    connection: str
    session_id: str


@dataclass(frozen=True)
class SessionCreated:
    connection: str
    session_id: str
    company_db: str


@dataclass(frozen=True)
class SessionExpired:
    connection: str
    session_id: str


Listener = Callable[[object], None]


class EventDispatcher:
    """
    Synchronous observer list.

    Listeners run in the emitting thread. A failing listener is logged and
    skipped; it never breaks the operation that emitted the event.

    Examples
    --------
    >>> events = EventDispatcher()
    >>> events.subscribe(print, CircuitBreakerStateChanged)
    >>> events.dispatch(CircuitBreakerStateChanged("*", "closed", "open", 5))
    CircuitBreakerStateChanged(scope='*', previous_state='closed', new_state='open', failure_count=5)
    """

    def __init__(self) -> None:
        self._listeners: List[Tuple[Optional[Type], Listener]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener, event_type: Optional[Type] = None) -> None:
        """Register ``listener`` for ``event_type``, or for every event if None."""
        with self._lock:
            self._listeners.append((event_type, listener))

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = [(t, l) for (t, l) in self._listeners if l is not listener]

    def dispatch(self, event: object) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for event_type, listener in listeners:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("listener %r failed for %s", listener, type(event).__name__)
